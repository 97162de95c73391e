from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.utcnow()


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            try:
                value = float(text)
            except ValueError:
                return None
    if isinstance(value, float):
        # inf and nan have no integer form
        return int(value) if math.isfinite(value) else None
    return None


class EmailType(str, Enum):
    list = "list"
    template = "template"


class TransportEncryption(str, Enum):
    none = "none"
    ssl = "ssl"
    tls = "tls"


class ContactCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    first_name: Optional[str] = Field(default=None, max_length=120)
    last_name: Optional[str] = Field(default=None, max_length=120)
    list_ids: list[str] = Field(default_factory=list)
    do_not_contact: bool = False

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("email must be a valid address")
        return value


class ContactCreateResponse(BaseModel):
    contact_id: str


class EmailCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=190)
    subject: str = Field(min_length=1, max_length=255)
    custom_html: str = ""
    plain_text: Optional[str] = None
    email_type: EmailType = EmailType.list
    is_published: bool = True
    list_ids: list[str] = Field(default_factory=list)
    from_address: Optional[str] = None
    from_name: Optional[str] = None


class EmailItem(BaseModel):
    email_id: str
    name: str
    subject: str
    email_type: EmailType
    is_published: bool
    list_ids: list[str]
    sent_count: int
    read_count: int
    pending_count: int


class SendStartResponse(BaseModel):
    email_id: str
    pending: int
    batchlimit: int


class SendStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sent: int = 0
    failed: int = 0
    failed_recipients: dict[str, Any] = Field(
        default_factory=dict,
        alias="failedRecipients",
    )


class BatchSendRequest(BaseModel):
    """Polling payload sent by the browser while a list email goes out.

    Values arrive loosely typed from the UI, so anything unusable is
    normalised instead of rejected.
    """

    id: Optional[str] = None
    pending: int = 0
    batchlimit: Optional[int] = None

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, bool):
            return None
        text = str(value).strip()
        if not text or text == "0":
            return None
        return text

    @field_validator("pending", mode="before")
    @classmethod
    def normalize_pending(cls, value: Any) -> int:
        parsed = _coerce_int(value)
        if parsed is None or parsed < 0:
            return 0
        return parsed

    @field_validator("batchlimit", mode="before")
    @classmethod
    def normalize_batchlimit(cls, value: Any) -> Optional[int]:
        parsed = _coerce_int(value)
        if parsed is None or parsed < 1:
            return None
        return parsed


class BatchSendResponse(BaseModel):
    success: int
    percent: Optional[int] = None
    progress: Optional[list[int]] = None
    stats: Optional[SendStats] = None
    error: Optional[str] = None


class EmailCountStatsItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    pending: int
    sent_count: int = Field(alias="sentCount")
    read_count: int = Field(alias="readCount")
    read_percent: float = Field(alias="readPercent")


class PlainTextRequest(BaseModel):
    custom: str = ""
    id: Optional[str] = None


class PlainTextResult(BaseModel):
    text: str


class TransportTestRequest(BaseModel):
    transport: str = Field(min_length=1, max_length=80)
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    encryption: TransportEncryption = TransportEncryption.none
    user: Optional[str] = None
    password: Optional[str] = None
    amazon_region: Optional[str] = None
    amazon_other_region: Optional[str] = None


class TransportTestResponse(BaseModel):
    success: int
    message: str


class SendTestEmailRequest(BaseModel):
    to_address: Optional[str] = Field(default=None, min_length=3, max_length=320)
    to_name: Optional[str] = Field(default=None, max_length=240)


class ReadTrackingResponse(BaseModel):
    stat_id: str
    is_read: bool
    date_read_utc: Optional[datetime]


class PipedriveWebhookRequest(BaseModel):
    event: str = ""
    current: Any = None
    previous: Any = None


class ContactRecord(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    list_ids: list[str] = Field(default_factory=list)
    do_not_contact: bool = False
    crm_person_id: Optional[str] = None
    company_id: Optional[str] = None
    owner_id: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime

    def full_name(self) -> Optional[str]:
        name = " ".join(
            part.strip() for part in (self.first_name, self.last_name) if part and part.strip()
        )
        return name or None


class CompanyRecord(BaseModel):
    id: str
    name: str
    crm_org_id: str
    owner_id: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class OwnerRecord(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    crm_user_id: str
    created_at_utc: datetime


class EmailRecord(BaseModel):
    id: str
    name: str
    subject: str
    custom_html: str
    plain_text: Optional[str] = None
    email_type: EmailType
    is_published: bool
    list_ids: list[str] = Field(default_factory=list)
    from_address: Optional[str] = None
    from_name: Optional[str] = None
    sent_count: int = 0
    read_count: int = 0
    created_at_utc: datetime
    updated_at_utc: datetime

    def is_enabled(self) -> bool:
        return self.is_published


class EmailStatRecord(BaseModel):
    id: str
    email_id: str
    contact_id: str
    email_address: str
    date_sent_utc: datetime
    is_failed: bool = False
    is_read: bool = False
    date_read_utc: Optional[datetime] = None
