from __future__ import annotations

import logging
from typing import Any

from backend.app.models import PipedriveWebhookRequest
from backend.app.store import InMemoryStore, StoreConflictError

logger = logging.getLogger("campaign_sender")

LEAD_UPDATE_EVENT = "updated.person"
LEAD_DELETE_EVENT = "deleted.person"
COMPANY_UPDATE_EVENT = "updated.organization"
COMPANY_DELETE_EVENT = "deleted.organization"
USER_UPDATE_EVENT = "updated.user"


class CrmImportError(Exception):
    def __init__(self, message: str, code: int = 500) -> None:
        super().__init__(message)
        self.code = code


def error_status_code(exc: Exception) -> int:
    code = getattr(exc, "code", None)
    if isinstance(code, int) and 400 <= code < 600:
        return code
    return 500


def _require_dict(value: Any, label: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise CrmImportError(f"{label} payload must be an object", code=400)
    return value


def _require_id(value: Any, label: str) -> str:
    data = _require_dict(value, label)
    crm_id = data.get("id")
    if crm_id is None or str(crm_id).strip() == "":
        raise CrmImportError(f"{label} payload missing id", code=400)
    return str(crm_id).strip()


def process_pipedrive_event(*, store: InMemoryStore, payload: PipedriveWebhookRequest) -> str:
    """Apply one Pipedrive webhook event to the local CRM records.

    Returns ``"ok"`` when the event was handled and ``"unsupported event"``
    otherwise. Raises ``CrmImportError`` when the payload cannot be imported.
    """
    event = payload.event.strip().lower()
    try:
        if event == LEAD_UPDATE_EVENT:
            contact = store.upsert_contact_from_crm(_require_dict(payload.current, "person"))
            logger.info("crm_person_upserted contact_id=%s", contact.id)
        elif event == LEAD_DELETE_EVENT:
            crm_id = _require_id(payload.previous, "person")
            deleted = store.delete_contact_by_crm_id(crm_id)
            logger.info("crm_person_deleted crm_id=%s found=%s", crm_id, deleted)
        elif event == COMPANY_UPDATE_EVENT:
            company = store.upsert_company_from_crm(
                _require_dict(payload.current, "organization")
            )
            logger.info("crm_company_upserted company_id=%s", company.id)
        elif event == COMPANY_DELETE_EVENT:
            crm_id = _require_id(payload.previous, "organization")
            deleted = store.delete_company_by_crm_id(crm_id)
            logger.info("crm_company_deleted crm_id=%s found=%s", crm_id, deleted)
        elif event == USER_UPDATE_EVENT:
            # user events carry a list of users; only the first is imported
            users = payload.current if isinstance(payload.current, list) else []
            if not users:
                raise CrmImportError("user payload must be a non-empty list", code=400)
            owner = store.create_owner_from_crm(_require_dict(users[0], "user"))
            logger.info("crm_owner_imported owner_id=%s", owner.id)
        else:
            logger.info("crm_event_unsupported event=%s", payload.event)
            return "unsupported event"
    except StoreConflictError as exc:
        raise CrmImportError(str(exc), code=422) from exc
    return "ok"
