from __future__ import annotations

from datetime import datetime, timedelta

import jwt
from fastapi.testclient import TestClient

from backend.app.main import create_app


def _token(secret: str, subject: str, roles: list[str], email: str | None = None) -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=1),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, secret, algorithm="HS256")


def _auth_client(monkeypatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("MAILER_TRANSPORT", "memory")
    return TestClient(create_app())


def test_auth_blocks_missing_token_when_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)

    response = client.post(
        "/ajax/email/send-batch",
        json={"id": "eml_1", "pending": 10, "batchlimit": 5},
    )
    assert response.status_code == 401


def test_auth_rejects_token_signed_with_other_secret(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("other-secret", "marketer-1", ["marketer"])

    response = client.post(
        "/emails",
        headers={"Authorization": f"Bearer {token}"},
        json={"name": "Auth test", "subject": "Hi", "list_ids": ["newsletter"]},
    )
    assert response.status_code == 401


def test_auth_allows_marketer_token(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "marketer-1", ["marketer"])

    response = client.post(
        "/emails",
        headers={"Authorization": f"Bearer {token}"},
        json={"name": "Auth test", "subject": "Hi", "list_ids": ["newsletter"]},
    )
    assert response.status_code == 200


def test_transport_check_requires_admin(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    marketer = _token("test-secret", "marketer-1", ["marketer"])
    admin = _token("test-secret", "admin-1", ["admin"])

    denied = client.post(
        "/ajax/email/test-transport",
        headers={"Authorization": f"Bearer {marketer}"},
        json={"transport": "memory"},
    )
    assert denied.status_code == 403

    allowed = client.post(
        "/ajax/email/test-transport",
        headers={"Authorization": f"Bearer {admin}"},
        json={"transport": "memory"},
    )
    assert allowed.status_code == 200
    assert allowed.json()["success"] == 1


def test_unknown_roles_are_forbidden(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "someone", ["viewer"])

    response = client.get(
        "/ajax/email/count-stats",
        headers={"Authorization": f"Bearer {token}"},
        params={"id": "eml_1"},
    )
    assert response.status_code == 403


def test_send_test_email_defaults_to_token_email(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "marketer-1", ["marketer"], email="me@example.com")

    response = client.post(
        "/ajax/email/send-test",
        headers={"Authorization": f"Bearer {token}"},
        json={},
    )
    assert response.json() == {"success": 1, "message": "success"}
    assert client.app.state.transport.sent_messages[-1]["To"] == "me@example.com"


def test_read_tracking_is_public_even_when_auth_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)

    response = client.post("/emails/stats/stat_missing/read")
    assert response.status_code == 404
