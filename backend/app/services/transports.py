from __future__ import annotations

import logging
import smtplib
import ssl
from contextlib import contextmanager
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, ContextManager, Iterator, Optional

logger = logging.getLogger("campaign_sender")


class TransportError(Exception):
    pass


class DeliveryError(TransportError):
    """A single message was rejected; the connection is still usable."""


class UnknownTransportError(Exception):
    pass


@dataclass(frozen=True)
class TransportCheckResult:
    success: bool
    message: str


class TransportConnection:
    def send(self, message: EmailMessage) -> None:
        raise NotImplementedError


class Transport:
    name = ""

    def configure(self, settings: dict[str, Any]) -> None:
        raise NotImplementedError

    def connect(self) -> ContextManager[TransportConnection]:
        raise NotImplementedError

    def verify(self) -> TransportCheckResult:
        try:
            with self.connect():
                pass
        except TransportError as exc:
            return TransportCheckResult(success=False, message=str(exc))
        return TransportCheckResult(success=True, message="success")


class _SmtpConnection(TransportConnection):
    def __init__(self, server: smtplib.SMTP) -> None:
        self.server = server

    def send(self, message: EmailMessage) -> None:
        try:
            self.server.send_message(message)
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused, smtplib.SMTPDataError) as exc:
            raise DeliveryError(f"message rejected: {exc}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(f"smtp send failed: {exc}") from exc


class SmtpTransport(Transport):
    name = "smtp"
    default_port = 25

    def __init__(self) -> None:
        self.host = "localhost"
        self.port = self.default_port
        self.encryption = "none"
        self.user = ""
        self.password = ""
        self.timeout = 20

    def configure(self, settings: dict[str, Any]) -> None:
        self.host = str(settings.get("host") or self.host).strip()
        self.port = int(settings.get("port") or self.port)
        self.encryption = str(settings.get("encryption") or self.encryption).strip().lower()
        self.user = str(settings.get("user") or "").strip()
        self.password = str(settings.get("password") or "")
        self.timeout = int(settings.get("timeout") or self.timeout)

    def _open(self) -> smtplib.SMTP:
        if self.encryption == "ssl":
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                self.host,
                self.port,
                timeout=self.timeout,
                context=ssl.create_default_context(),
            )
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        server.ehlo()
        if self.encryption == "tls":
            server.starttls(context=ssl.create_default_context())
            server.ehlo()
        if self.user:
            server.login(self.user, self.password)
        return server

    @contextmanager
    def connect(self) -> Iterator[TransportConnection]:
        try:
            server = self._open()
        except (smtplib.SMTPException, OSError) as exc:
            raise TransportError(
                f"could not connect to {self.host}:{self.port}: {exc}"
            ) from exc
        try:
            yield _SmtpConnection(server)
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                logger.warning("smtp_quit_failed host=%s port=%s", self.host, self.port)


class GmailTransport(SmtpTransport):
    name = "gmail"

    def configure(self, settings: dict[str, Any]) -> None:
        super().configure(settings)
        self.host = "smtp.gmail.com"
        self.port = 465
        self.encryption = "ssl"


class AmazonSmtpTransport(SmtpTransport):
    name = "amazon"
    default_port = 587

    def configure(self, settings: dict[str, Any]) -> None:
        super().configure(settings)
        self.host = self.build_host(
            str(settings.get("amazon_region") or ""),
            str(settings.get("amazon_other_region") or ""),
        )
        self.port = int(settings.get("port") or self.default_port)
        self.encryption = "tls"

    @staticmethod
    def build_host(region: str, other_region: str = "") -> str:
        region = region.strip()
        if region == "other":
            region = other_region.strip()
        if not region:
            region = "us-east-1"
        return f"email-smtp.{region}.amazonaws.com"


class _MemoryConnection(TransportConnection):
    def __init__(self, transport: "MemoryTransport") -> None:
        self.transport = transport

    def send(self, message: EmailMessage) -> None:
        if self.transport.fail_after is not None and (
            len(self.transport.sent_messages) >= self.transport.fail_after
        ):
            raise TransportError("memory transport connection dropped")
        recipient = str(message.get("To", "")).lower()
        if any(address in recipient for address in self.transport.reject_addresses):
            raise DeliveryError(f"recipient rejected: {recipient}")
        self.transport.sent_messages.append(message)


class MemoryTransport(Transport):
    """Keeps messages in memory. Used by local development and tests."""

    name = "memory"

    def __init__(self) -> None:
        self.sent_messages: list[EmailMessage] = []
        self.reject_addresses: set[str] = set()
        self.available = True
        self.fail_after: Optional[int] = None

    def configure(self, settings: dict[str, Any]) -> None:
        raw = settings.get("reject_addresses") or ""
        if isinstance(raw, str):
            raw = raw.split(",")
        self.reject_addresses = {str(item).strip().lower() for item in raw if str(item).strip()}

    @contextmanager
    def connect(self) -> Iterator[TransportConnection]:
        if not self.available:
            raise TransportError("memory transport unavailable")
        yield _MemoryConnection(self)


TRANSPORTS: dict[str, type[Transport]] = {
    SmtpTransport.name: SmtpTransport,
    GmailTransport.name: GmailTransport,
    AmazonSmtpTransport.name: AmazonSmtpTransport,
    MemoryTransport.name: MemoryTransport,
}


def build_transport(name: str, settings: dict[str, Any]) -> Transport:
    transport_cls = TRANSPORTS.get((name or "").strip().lower())
    if transport_cls is None:
        raise UnknownTransportError(f"unknown mail transport: {name}")
    transport = transport_cls()
    transport.configure(settings)
    return transport
