from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.persistence import SqlPersistence


def _new_client(monkeypatch, db_path: Path) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "true")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("MAILER_TRANSPORT", "memory")
    return TestClient(create_app())


def _seed(client: TestClient, contacts: int) -> str:
    for index in range(contacts):
        created = client.post(
            "/contacts",
            json={"email": f"reader{index}@example.com", "list_ids": ["newsletter"]},
        )
        assert created.status_code == 200
    email = client.post(
        "/emails",
        json={"name": "Persisted", "subject": "Hi", "list_ids": ["newsletter"]},
    )
    assert email.status_code == 200
    return email.json()["email_id"]


def test_send_progress_survives_restart(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "campaign_sender.sqlite3"
    first_client = _new_client(monkeypatch, db_path)
    email_id = _seed(first_client, contacts=4)
    first_client.post(f"/emails/{email_id}/send")
    first = first_client.post(
        "/ajax/email/send-batch",
        json={"id": email_id, "pending": 4, "batchlimit": 3},
    )
    assert first.json()["progress"] == [3, 4]
    session_id = first_client.cookies.get("campaign_session")
    assert session_id

    restarted_client = _new_client(monkeypatch, db_path)
    restarted_client.cookies.set("campaign_session", session_id)
    second = restarted_client.post(
        "/ajax/email/send-batch",
        json={"id": email_id, "pending": 4, "batchlimit": 3},
    )
    body = second.json()
    assert body["progress"] == [4, 4]
    assert body["percent"] == 100
    assert body["stats"]["sent"] == 4

    item = restarted_client.get(f"/emails/{email_id}").json()
    assert item["sent_count"] == 4
    assert item["pending_count"] == 0


def test_unknown_session_cookie_starts_fresh(monkeypatch, tmp_path) -> None:
    client = _new_client(monkeypatch, tmp_path / "campaign_sender.sqlite3")
    email_id = _seed(client, contacts=1)

    response = client.post(
        "/ajax/email/send-batch",
        json={"id": email_id, "pending": 1},
        headers={"Cookie": f"campaign_session={'0' * 32}"},
    )
    assert response.json()["progress"] == [1, 1]
    issued = response.cookies.get("campaign_session")
    assert issued
    assert issued != "0" * 32


def test_session_values_round_trip(tmp_path) -> None:
    persistence = SqlPersistence(f"sqlite:///{(tmp_path / 'sessions.sqlite3').as_posix()}")
    persistence.set_session_value("abc", "campaign.email.send.progress", [1, 2])
    persistence.set_session_value("abc", "campaign.email.send.progress", [2, 2])
    persistence.set_session_value("abc", "campaign.email.send.active", False)

    assert persistence.load_session("abc") == {
        "campaign.email.send.progress": [2, 2],
        "campaign.email.send.active": False,
    }
    assert persistence.load_session("missing") is None


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "campaign_sender.sqlite3"
    persistence = SqlPersistence(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert persistence.ping()


def test_idle_sessions_are_deleted(tmp_path) -> None:
    persistence = SqlPersistence(f"sqlite:///{(tmp_path / 'sessions.sqlite3').as_posix()}")
    start = datetime(2026, 10, 1, 12, 0, 0)
    persistence.set_session_value("old", "a", 1, updated_at=start)
    persistence.set_session_value("old", "b", 2, updated_at=start)
    persistence.set_session_value("busy", "a", 1, updated_at=start)
    persistence.touch_session("busy", start + timedelta(hours=2))

    assert persistence.session_last_seen("busy") == start + timedelta(hours=2)
    assert persistence.delete_idle_sessions(start + timedelta(hours=1)) == 1
    assert persistence.load_session("old") is None
    assert persistence.load_session("busy") == {"a": 1}
    assert persistence.session_last_seen("old") is None
