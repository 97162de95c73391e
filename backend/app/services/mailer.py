from __future__ import annotations

import logging
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional

from backend.app.models import ContactRecord, EmailRecord
from backend.app.services.plaintext import html_to_text
from backend.app.services.transports import DeliveryError, Transport, TransportError
from backend.app.store import InMemoryStore

logger = logging.getLogger("campaign_sender")

# {email_id: {address: name}}; the progress tracker also accepts a flat {address: name}
FailedRecipients = dict[str, dict[str, str]]


class BatchInterruptedError(TransportError):
    """The transport failed mid-batch. Carries what was processed before the failure."""

    def __init__(
        self,
        message: str,
        *,
        sent: int = 0,
        failed: int = 0,
        failed_recipients: Optional[FailedRecipients] = None,
    ) -> None:
        super().__init__(message)
        self.sent = sent
        self.failed = failed
        self.failed_recipients = failed_recipients or {}


def build_message(
    *,
    subject: str,
    html: str,
    text: Optional[str],
    from_email: str,
    from_name: Optional[str],
    to_address: str,
    to_name: Optional[str],
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = formataddr((from_name or "", from_email))
    msg["To"] = formataddr((to_name or "", to_address))
    domain = from_email.split("@", 1)[1].strip().lower() if "@" in from_email else None
    msg["Message-ID"] = make_msgid(domain=domain)
    msg.set_content(text or html_to_text(html) or "(HTML email)")
    if html:
        msg.add_alternative(html, subtype="html")
    return msg


TEST_SUBJECT = "Mail transport test"
TEST_BODY = "<p>This message confirms the configured mail transport can deliver email.</p>"


def send_test_message(
    *,
    transport: Transport,
    from_email: str,
    from_name: Optional[str],
    to_address: str,
    to_name: Optional[str] = None,
) -> None:
    message = build_message(
        subject=TEST_SUBJECT,
        html=TEST_BODY,
        text=None,
        from_email=from_email,
        from_name=from_name,
        to_address=to_address,
        to_name=to_name,
    )
    with transport.connect() as connection:
        connection.send(message)


class EmailBatchSender:
    def __init__(
        self,
        *,
        store: InMemoryStore,
        transport: Transport,
        from_email: str,
        from_name: Optional[str] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.from_email = from_email
        self.from_name = from_name

    def send_batch(
        self,
        email: EmailRecord,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> tuple[int, int, FailedRecipients]:
        if cursor:
            contacts = self.store.pending_contacts(email)
            ids = [contact.id for contact in contacts]
            if cursor in ids:
                contacts = contacts[ids.index(cursor) + 1 :]
            if limit is not None:
                contacts = contacts[: max(limit, 0)]
        else:
            contacts = self.store.pending_contacts(email, limit=limit)
        if not contacts:
            return 0, 0, {}

        sent = 0
        failed = 0
        failed_recipients: FailedRecipients = {}
        try:
            with self.transport.connect() as connection:
                for contact in contacts:
                    message = self._message_for(email, contact)
                    try:
                        connection.send(message)
                    except DeliveryError as exc:
                        failed += 1
                        failed_recipients.setdefault(email.id, {})[contact.email] = (
                            contact.full_name() or contact.email
                        )
                        self.store.record_send(email_id=email.id, contact=contact, failed=True)
                        logger.warning(
                            "email_delivery_rejected email_id=%s contact_id=%s error=%s",
                            email.id,
                            contact.id,
                            exc,
                        )
                        continue
                    sent += 1
                    self.store.record_send(email_id=email.id, contact=contact, failed=False)
        except TransportError as exc:
            logger.error(
                "email_batch_interrupted email_id=%s sent=%s failed=%s error=%s",
                email.id,
                sent,
                failed,
                exc,
            )
            raise BatchInterruptedError(
                str(exc),
                sent=sent,
                failed=failed,
                failed_recipients=failed_recipients,
            ) from exc

        logger.info(
            "email_batch_sent email_id=%s sent=%s failed=%s",
            email.id,
            sent,
            failed,
        )
        return sent, failed, failed_recipients

    def _message_for(self, email: EmailRecord, contact: ContactRecord) -> EmailMessage:
        return build_message(
            subject=email.subject,
            html=email.custom_html,
            text=email.plain_text,
            from_email=email.from_address or self.from_email,
            from_name=email.from_name or self.from_name,
            to_address=contact.email,
            to_name=contact.full_name(),
        )
