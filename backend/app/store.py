from __future__ import annotations

from threading import RLock
from typing import TYPE_CHECKING, Any, Optional
from uuid import uuid4

from backend.app.models import (
    CompanyRecord,
    ContactCreateRequest,
    ContactRecord,
    EmailCreateRequest,
    EmailRecord,
    EmailStatRecord,
    OwnerRecord,
    utc_now,
)

if TYPE_CHECKING:
    from backend.app.persistence import SqlPersistence


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class InMemoryStore:
    def __init__(self, persistence: Optional["SqlPersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.contacts: dict[str, ContactRecord] = {}
        self.companies: dict[str, CompanyRecord] = {}
        self.owners: dict[str, OwnerRecord] = {}
        self.emails: dict[str, EmailRecord] = {}
        self.email_stats: dict[str, EmailStatRecord] = {}

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)

    def create_contact(self, request: ContactCreateRequest) -> ContactRecord:
        with self._lock:
            for contact in self.contacts.values():
                if contact.email == request.email:
                    raise StoreConflictError(f"contact already exists: {request.email}")
            now = utc_now()
            contact = ContactRecord(
                id=new_id("con"),
                email=request.email,
                first_name=request.first_name,
                last_name=request.last_name,
                list_ids=[item.strip() for item in request.list_ids if item.strip()],
                do_not_contact=request.do_not_contact,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.contacts[contact.id] = contact
            self._persist_state()
            return contact

    def get_contact(self, contact_id: str) -> ContactRecord:
        contact = self.contacts.get(contact_id)
        if not contact:
            raise StoreNotFoundError(f"contact not found: {contact_id}")
        return contact

    def create_email(self, request: EmailCreateRequest) -> EmailRecord:
        with self._lock:
            now = utc_now()
            email = EmailRecord(
                id=new_id("eml"),
                name=request.name.strip(),
                subject=request.subject.strip(),
                custom_html=request.custom_html,
                plain_text=request.plain_text,
                email_type=request.email_type,
                is_published=request.is_published,
                list_ids=[item.strip() for item in request.list_ids if item.strip()],
                from_address=request.from_address,
                from_name=request.from_name,
                created_at_utc=now,
                updated_at_utc=now,
            )
            self.emails[email.id] = email
            self._persist_state()
            return email

    def get_email(self, email_id: str) -> EmailRecord:
        email = self.emails.get(email_id)
        if not email:
            raise StoreNotFoundError(f"email not found: {email_id}")
        return email

    def find_email(self, email_id: str) -> Optional[EmailRecord]:
        with self._lock:
            return self.emails.get(email_id)

    def pending_contacts(self, email: EmailRecord, limit: Optional[int] = None) -> list[ContactRecord]:
        with self._lock:
            list_ids = set(email.list_ids)
            already_sent = {
                stat.contact_id for stat in self.email_stats.values() if stat.email_id == email.id
            }
            pending = [
                contact
                for contact in self.contacts.values()
                if contact.email
                and not contact.do_not_contact
                and contact.id not in already_sent
                and list_ids.intersection(contact.list_ids)
            ]
        pending.sort(key=lambda item: (item.created_at_utc, item.id))
        if limit is not None:
            return pending[: max(limit, 0)]
        return pending

    def pending_count(self, email: EmailRecord) -> int:
        return len(self.pending_contacts(email))

    def record_send(
        self,
        *,
        email_id: str,
        contact: ContactRecord,
        failed: bool,
    ) -> EmailStatRecord:
        with self._lock:
            email = self.get_email(email_id)
            stat = EmailStatRecord(
                id=new_id("stat"),
                email_id=email.id,
                contact_id=contact.id,
                email_address=contact.email,
                date_sent_utc=utc_now(),
                is_failed=failed,
            )
            self.email_stats[stat.id] = stat
            if not failed:
                self.emails[email.id] = email.model_copy(
                    update={"sent_count": email.sent_count + 1, "updated_at_utc": utc_now()}
                )
            self._persist_state()
            return stat

    def mark_read(self, stat_id: str) -> EmailStatRecord:
        with self._lock:
            stat = self.email_stats.get(stat_id)
            if not stat:
                raise StoreNotFoundError(f"email stat not found: {stat_id}")
            if stat.is_failed:
                raise StoreConflictError(f"email was not delivered: {stat_id}")
            if stat.is_read:
                return stat
            now = utc_now()
            updated = stat.model_copy(update={"is_read": True, "date_read_utc": now})
            self.email_stats[stat_id] = updated
            email = self.emails.get(stat.email_id)
            if email:
                self.emails[email.id] = email.model_copy(
                    update={"read_count": email.read_count + 1, "updated_at_utc": now}
                )
            self._persist_state()
            return updated

    def read_percentage(self, email: EmailRecord) -> float:
        if not email.sent_count:
            return 0.0
        return round((email.read_count / email.sent_count) * 100, 2)

    def upsert_contact_from_crm(self, data: dict[str, Any]) -> ContactRecord:
        crm_id = _crm_id(data)
        address = _primary_value(data.get("email"))
        if not crm_id:
            raise StoreConflictError("person payload missing id")
        with self._lock:
            existing = self._find_contact_by_crm_id(crm_id)
            if existing is None and address:
                existing = next(
                    (item for item in self.contacts.values() if item.email == address.lower()),
                    None,
                )
            now = utc_now()
            updates = {
                "crm_person_id": crm_id,
                "first_name": data.get("first_name") or None,
                "last_name": data.get("last_name") or None,
                "updated_at_utc": now,
            }
            if address:
                updates["email"] = address.strip().lower()
            org_id = _nested_id(data.get("org_id"))
            if org_id:
                company = self._find_company_by_crm_id(org_id)
                updates["company_id"] = company.id if company else None
            owner_id = _nested_id(data.get("owner_id"))
            if owner_id:
                owner = self._find_owner_by_crm_id(owner_id)
                updates["owner_id"] = owner.id if owner else None

            if existing:
                contact = existing.model_copy(update=updates)
            else:
                if not address:
                    raise StoreConflictError(f"person {crm_id} has no email address")
                contact = ContactRecord(
                    id=new_id("con"),
                    email=updates.pop("email"),
                    created_at_utc=now,
                    **updates,
                )
            self.contacts[contact.id] = contact
            self._persist_state()
            return contact

    def delete_contact_by_crm_id(self, crm_id: str) -> bool:
        with self._lock:
            contact = self._find_contact_by_crm_id(crm_id)
            if not contact:
                return False
            del self.contacts[contact.id]
            self._persist_state()
            return True

    def upsert_company_from_crm(self, data: dict[str, Any]) -> CompanyRecord:
        crm_id = _crm_id(data)
        name = str(data.get("name") or "").strip()
        if not crm_id:
            raise StoreConflictError("organization payload missing id")
        if not name:
            raise StoreConflictError(f"organization {crm_id} has no name")
        with self._lock:
            existing = self._find_company_by_crm_id(crm_id)
            owner = self._find_owner_by_crm_id(_nested_id(data.get("owner_id")) or "")
            now = utc_now()
            if existing:
                company = existing.model_copy(
                    update={
                        "name": name,
                        "owner_id": owner.id if owner else existing.owner_id,
                        "updated_at_utc": now,
                    }
                )
            else:
                company = CompanyRecord(
                    id=new_id("cmp"),
                    name=name,
                    crm_org_id=crm_id,
                    owner_id=owner.id if owner else None,
                    created_at_utc=now,
                    updated_at_utc=now,
                )
            self.companies[company.id] = company
            self._persist_state()
            return company

    def delete_company_by_crm_id(self, crm_id: str) -> bool:
        with self._lock:
            company = self._find_company_by_crm_id(crm_id)
            if not company:
                return False
            del self.companies[company.id]
            for contact in list(self.contacts.values()):
                if contact.company_id == company.id:
                    self.contacts[contact.id] = contact.model_copy(
                        update={"company_id": None, "updated_at_utc": utc_now()}
                    )
            self._persist_state()
            return True

    def create_owner_from_crm(self, data: dict[str, Any]) -> OwnerRecord:
        crm_id = _crm_id(data)
        address = str(data.get("email") or "").strip().lower()
        if not crm_id or not address:
            raise StoreConflictError("user payload requires id and email")
        with self._lock:
            existing = self._find_owner_by_crm_id(crm_id)
            if existing:
                return existing
            owner = OwnerRecord(
                id=new_id("own"),
                email=address,
                name=str(data.get("name") or "").strip() or None,
                crm_user_id=crm_id,
                created_at_utc=utc_now(),
            )
            self.owners[owner.id] = owner
            self._persist_state()
            return owner

    def _find_contact_by_crm_id(self, crm_id: str) -> Optional[ContactRecord]:
        return next(
            (item for item in self.contacts.values() if item.crm_person_id == crm_id),
            None,
        )

    def _find_company_by_crm_id(self, crm_id: str) -> Optional[CompanyRecord]:
        return next(
            (item for item in self.companies.values() if item.crm_org_id == crm_id),
            None,
        )

    def _find_owner_by_crm_id(self, crm_id: str) -> Optional[OwnerRecord]:
        return next(
            (item for item in self.owners.values() if item.crm_user_id == crm_id),
            None,
        )

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "contacts": [record.model_dump(mode="json") for record in self.contacts.values()],
            "companies": [record.model_dump(mode="json") for record in self.companies.values()],
            "owners": [record.model_dump(mode="json") for record in self.owners.values()],
            "emails": [record.model_dump(mode="json") for record in self.emails.values()],
            "email_stats": [
                record.model_dump(mode="json") for record in self.email_stats.values()
            ],
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self.contacts = {
            record["id"]: ContactRecord.model_validate(record)
            for record in snapshot.get("contacts", [])
        }
        self.companies = {
            record["id"]: CompanyRecord.model_validate(record)
            for record in snapshot.get("companies", [])
        }
        self.owners = {
            record["id"]: OwnerRecord.model_validate(record)
            for record in snapshot.get("owners", [])
        }
        self.emails = {
            record["id"]: EmailRecord.model_validate(record)
            for record in snapshot.get("emails", [])
        }
        self.email_stats = {
            record["id"]: EmailStatRecord.model_validate(record)
            for record in snapshot.get("email_stats", [])
        }


def _crm_id(data: dict[str, Any]) -> str:
    value = data.get("id")
    if value is None or isinstance(value, bool):
        return ""
    return str(value).strip()


def _nested_id(value: Any) -> Optional[str]:
    # Pipedrive sends either a bare id or an object with a "value" key.
    if isinstance(value, dict):
        value = value.get("value") or value.get("id")
    if value is None or isinstance(value, bool) or value == "":
        return None
    return str(value).strip() or None


def _primary_value(value: Any) -> Optional[str]:
    # Person emails arrive as [{"value": ..., "primary": true}, ...] or a plain string.
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        entries = [item for item in value if isinstance(item, dict) and item.get("value")]
        primary = next((item for item in entries if item.get("primary")), None)
        chosen = primary or (entries[0] if entries else None)
        if chosen:
            return str(chosen["value"]).strip() or None
    return None
