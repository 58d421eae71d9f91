from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from ipaddress import ip_address
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DealStatus(str, Enum):
    prospecting = "prospecting"
    won = "won"
    lost = "lost"


class BookingStatus(str, Enum):
    confirmed = "confirmed"
    cancelled = "cancelled"


class FollowupStatus(str, Enum):
    scheduled = "scheduled"
    sent = "sent"
    cancelled = "cancelled"
    failed = "failed"


class StopReason(str, Enum):
    user_dismissed = "user_dismissed"
    booking_made = "booking_made"
    user_cancelled = "user_cancelled"
    timer_reset = "timer_reset"


class TimerAction(str, Enum):
    created = "created"
    updated = "updated"


class BookingEvent(BaseModel):
    """Normalized booking event handed to the ledger by the webhook ingestor."""

    external_event_id: str
    status: BookingStatus
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    local_start: Optional[str] = None
    local_end: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_company_name: Optional[str] = None
    guest_comment: Optional[str] = None
    calendar_name: Optional[str] = None
    document_id: Optional[str] = None
    created_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class BookingRecord(BaseModel):
    external_event_id: str
    status: BookingStatus
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    local_start: Optional[str] = None
    local_end: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_company_name: Optional[str] = None
    guest_comment: Optional[str] = None
    calendar_name: Optional[str] = None
    document_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class BookingLedger(BaseModel):
    confirmed_count: int = 0
    cancelled_count: int = 0
    # insertion-ordered, keyed by external_event_id
    records: dict[str, BookingRecord] = Field(default_factory=dict)


class LeadRecord(BaseModel):
    id: str
    name: str
    contact_email: Optional[str] = None
    deal_status: DealStatus = DealStatus.prospecting
    booking_link: Optional[str] = None
    booking_ledger: BookingLedger = Field(default_factory=BookingLedger)
    created_at_utc: datetime


class DocumentRecord(BaseModel):
    id: str
    lead_id: Optional[str] = None
    title: str
    created_at_utc: datetime


class FollowupTaskRecord(BaseModel):
    id: str
    lead_id: str
    document_id: str
    viewer_identity: str
    triggered_at: datetime
    scheduled_for: datetime
    status: FollowupStatus = FollowupStatus.scheduled
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    failure_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


def _normalize_ip(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("viewer identity must be an IP address")
    try:
        return str(ip_address(value.strip()))
    except ValueError as exc:
        raise ValueError("viewer identity must be an IP address") from exc


class FollowupStartRequest(BaseModel):
    viewer_identity: str = Field(
        validation_alias=AliasChoices("viewer_identity", "viewerIdentity", "viewer_ip")
    )

    @field_validator("viewer_identity", mode="before")
    @classmethod
    def validate_viewer_identity(cls, value: Any) -> str:
        return _normalize_ip(value)


class FollowupStopRequest(BaseModel):
    viewer_identity: str = Field(
        validation_alias=AliasChoices("viewer_identity", "viewerIdentity", "viewer_ip")
    )
    reason: StopReason

    @field_validator("viewer_identity", mode="before")
    @classmethod
    def validate_viewer_identity(cls, value: Any) -> str:
        return _normalize_ip(value)


class ApiResponse(BaseModel):
    success: bool
    message: str
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class WebhookResponse(BaseModel):
    status: str
    message: str
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class SweepSummary(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class FollowupTaskItem(BaseModel):
    followup_id: str
    document_id: str
    viewer_identity: str
    status: FollowupStatus
    triggered_at: datetime
    scheduled_for: datetime
    cancellation_reason: Optional[str]
    failure_message: Optional[str]
    sent_at: Optional[datetime]


class BookingLedgerResponse(BaseModel):
    lead_id: str
    confirmed_count: int
    cancelled_count: int
    bookings: list[BookingRecord]


# Inbound provider payload. Only webhook_type and event.id are mandatory;
# everything else is optional and extra keys are tolerated.


class BookingFormEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    field_type: Optional[str] = None
    value: Any = None


class BookingEventPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    start_datetime: Optional[datetime] = None
    end_datetime: Optional[datetime] = None
    local_start_datetime: Optional[str] = None
    local_end_datetime: Optional[str] = None
    created_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("canceled_at", "cancelled_at"),
    )
    cancellation_reason: Optional[str] = None
    form: list[BookingFormEntry] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("start_datetime", "end_datetime", "created_at", "canceled_at")
    @classmethod
    def normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @field_validator("form", mode="before")
    @classmethod
    def default_form(cls, value: Any) -> Any:
        return [] if value is None else value


class BookingWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    webhook_type: Literal["event_confirmed", "event_cancelled"]
    event: BookingEventPayload
    calendar_url: Optional[str] = None
    calendar_name: Optional[str] = None
