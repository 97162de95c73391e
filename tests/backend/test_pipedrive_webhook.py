from __future__ import annotations

import base64

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app

WEBHOOK_PATH = "/plugin/pipedrive/webhook"


def _basic(user: str, password: str) -> dict[str, str]:
    token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {token}"}


AUTH = _basic("pipedrive", "hook-secret")


@pytest.fixture()
def crm_client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("MAILER_TRANSPORT", "memory")
    monkeypatch.setenv("PIPEDRIVE_ENABLED", "true")
    monkeypatch.setenv("PIPEDRIVE_USER", "pipedrive")
    monkeypatch.setenv("PIPEDRIVE_PASSWORD", "hook-secret")
    return TestClient(create_app())


def person_payload(person_id: int = 7, **overrides) -> dict:
    current = {
        "id": person_id,
        "first_name": "Dana",
        "last_name": "Lopez",
        "email": [
            {"value": "dana.work@example.com", "primary": False},
            {"value": "Dana@Example.com", "primary": True},
        ],
        "org_id": None,
        "owner_id": None,
    }
    current.update(overrides)
    return {"event": "updated.person", "current": current, "previous": None}


def test_disabled_integration_short_circuits(client) -> None:
    response = client.post(WEBHOOK_PATH, json={"event": "updated.person"})
    assert response.status_code == 200
    assert response.json() == {"status": "Integration turned off"}


def test_rejects_missing_or_wrong_credentials(crm_client) -> None:
    missing = crm_client.post(WEBHOOK_PATH, json=person_payload())
    assert missing.status_code == 401
    assert missing.headers["www-authenticate"] == "Basic"

    wrong = crm_client.post(WEBHOOK_PATH, json=person_payload(), headers=_basic("pipedrive", "nope"))
    assert wrong.status_code == 401


def test_rejects_invalid_json(crm_client) -> None:
    response = crm_client.post(
        WEBHOOK_PATH,
        content=b"{not-json",
        headers={**AUTH, "Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_person_update_creates_then_updates_contact(crm_client) -> None:
    created = crm_client.post(WEBHOOK_PATH, json=person_payload(), headers=AUTH)
    assert created.status_code == 200
    assert created.json() == {"status": "ok"}

    store = crm_client.app.state.store
    (contact,) = store.contacts.values()
    assert contact.email == "dana@example.com"
    assert contact.crm_person_id == "7"

    renamed = crm_client.post(
        WEBHOOK_PATH, json=person_payload(last_name="Lopez-Ruiz"), headers=AUTH
    )
    assert renamed.status_code == 200
    assert len(store.contacts) == 1
    assert store.get_contact(contact.id).last_name == "Lopez-Ruiz"


def test_person_without_email_is_unprocessable(crm_client) -> None:
    response = crm_client.post(WEBHOOK_PATH, json=person_payload(email=[]), headers=AUTH)
    assert response.status_code == 422
    assert response.json()["status"] == "error"


def test_person_delete_removes_contact(crm_client) -> None:
    crm_client.post(WEBHOOK_PATH, json=person_payload(), headers=AUTH)

    response = crm_client.post(
        WEBHOOK_PATH,
        json={"event": "deleted.person", "current": None, "previous": {"id": 7}},
        headers=AUTH,
    )
    assert response.json() == {"status": "ok"}
    assert crm_client.app.state.store.contacts == {}

    malformed = crm_client.post(
        WEBHOOK_PATH,
        json={"event": "deleted.person", "current": None, "previous": None},
        headers=AUTH,
    )
    assert malformed.status_code == 400


def test_organization_and_owner_link_to_contacts(crm_client) -> None:
    owner = crm_client.post(
        WEBHOOK_PATH,
        json={
            "event": "updated.user",
            "current": [{"id": 3, "email": "Rep@Example.com", "name": "Sales Rep"}],
        },
        headers=AUTH,
    )
    assert owner.json() == {"status": "ok"}

    org = crm_client.post(
        WEBHOOK_PATH,
        json={"event": "updated.organization", "current": {"id": 11, "name": "Acme", "owner_id": 3}},
        headers=AUTH,
    )
    assert org.json() == {"status": "ok"}

    crm_client.post(
        WEBHOOK_PATH,
        json=person_payload(org_id={"value": 11, "name": "Acme"}, owner_id={"value": 3}),
        headers=AUTH,
    )

    store = crm_client.app.state.store
    (company,) = store.companies.values()
    (contact,) = store.contacts.values()
    (rep,) = store.owners.values()
    assert rep.email == "rep@example.com"
    assert company.owner_id == rep.id
    assert contact.company_id == company.id
    assert contact.owner_id == rep.id

    deleted = crm_client.post(
        WEBHOOK_PATH,
        json={"event": "deleted.organization", "previous": {"id": 11}},
        headers=AUTH,
    )
    assert deleted.json() == {"status": "ok"}
    assert store.companies == {}
    assert store.get_contact(contact.id).company_id is None


def test_unsupported_event_is_acknowledged(crm_client) -> None:
    response = crm_client.post(
        WEBHOOK_PATH,
        json={"event": "added.deal", "current": {"id": 1}},
        headers=AUTH,
    )
    assert response.status_code == 200
    assert response.json() == {"status": "unsupported event"}
