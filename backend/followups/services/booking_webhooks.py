from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlsplit

from pydantic import ValidationError

from backend.followups.errors import (
    FollowupError,
    NotFoundError,
    OperationResult,
    UnresolvedIdentifierError,
    WebhookValidationError,
)
from backend.followups.models import (
    BookingEvent,
    BookingStatus,
    BookingWebhookPayload,
    utc_now,
)
from backend.followups.services.sweep import cancel_for_recent_booking
from backend.followups.store import InMemoryStore

logger = logging.getLogger("followup_engine.webhooks")

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

FORM_FIELD_MAP = {
    "guest_name": "guest_name",
    "guest_email": "guest_email",
    "company_name": "guest_company_name",
    "guest_comment": "guest_comment",
}

IdExtractor = Callable[[BookingWebhookPayload], Optional[str]]


def parse_webhook_payload(raw: object) -> BookingWebhookPayload:
    if not isinstance(raw, dict):
        raise WebhookValidationError("webhook payload must be a JSON object")
    try:
        return BookingWebhookPayload.model_validate(raw)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise WebhookValidationError(
            f"invalid booking webhook payload: {', '.join(fields)}"
        ) from exc


def _query_param(url: Optional[str], name: str) -> Optional[str]:
    if not url:
        return None
    values = parse_qs(urlsplit(url).query).get(name, [])
    for value in values:
        if value.strip():
            return value.strip()
    return None


def _lead_id_from_calendar_url(payload: BookingWebhookPayload) -> Optional[str]:
    return _query_param(payload.calendar_url, "company_id")


def _lead_id_from_guest_comment(payload: BookingWebhookPayload) -> Optional[str]:
    for entry in payload.event.form:
        if entry.field_type != "guest_comment" or not isinstance(entry.value, str):
            continue
        value = entry.value.strip()
        if UUID_PATTERN.match(value):
            return value
    return None


def _document_id_from_calendar_url(payload: BookingWebhookPayload) -> Optional[str]:
    return _query_param(payload.calendar_url, "document_id")


LEAD_ID_EXTRACTORS: tuple[IdExtractor, ...] = (
    _lead_id_from_calendar_url,
    _lead_id_from_guest_comment,
)
DOCUMENT_ID_EXTRACTORS: tuple[IdExtractor, ...] = (_document_id_from_calendar_url,)


def resolve_identifier(
    payload: BookingWebhookPayload, extractors: tuple[IdExtractor, ...]
) -> Optional[str]:
    for extractor in extractors:
        value = extractor(payload)
        if value:
            return value
    return None


def _form_values(payload: BookingWebhookPayload) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for entry in payload.event.form:
        target = FORM_FIELD_MAP.get(entry.field_type or "")
        if target and entry.value is not None:
            values[target] = entry.value if isinstance(entry.value, str) else str(entry.value)
    return values


def build_booking_event(
    payload: BookingWebhookPayload,
    *,
    document_id: Optional[str],
    now: datetime,
) -> BookingEvent:
    event = payload.event
    status = (
        BookingStatus.confirmed
        if payload.webhook_type == "event_confirmed"
        else BookingStatus.cancelled
    )
    cancelled = status == BookingStatus.cancelled
    return BookingEvent(
        external_event_id=event.id,
        status=status,
        scheduled_start=event.start_datetime,
        scheduled_end=event.end_datetime,
        local_start=event.local_start_datetime,
        local_end=event.local_end_datetime,
        calendar_name=payload.calendar_name,
        document_id=document_id,
        created_at=event.created_at,
        cancelled_at=(event.canceled_at or now) if cancelled else None,
        cancellation_reason=event.cancellation_reason if cancelled else None,
        **_form_values(payload),
    )


def process_booking_webhook(
    *,
    store: InMemoryStore,
    raw_payload: object,
    now: Optional[datetime] = None,
) -> OperationResult:
    now = now or utc_now()
    try:
        payload = parse_webhook_payload(raw_payload)
        lead_id = resolve_identifier(payload, LEAD_ID_EXTRACTORS)
        if not lead_id:
            raise UnresolvedIdentifierError("could not resolve lead id from booking webhook")
        if store.find_lead(lead_id) is None:
            raise NotFoundError("lead", lead_id)

        document_id = resolve_identifier(payload, DOCUMENT_ID_EXTRACTORS)
        event = build_booking_event(payload, document_id=document_id, now=now)
        record = store.apply_booking_event(lead_id, event, now=now)

        cancelled_followups = 0
        if record.status == BookingStatus.confirmed:
            cancelled_followups = (
                cancel_for_recent_booking(store=store, lead_id=lead_id, now=now) or 0
            )
    except FollowupError as exc:
        logger.warning("booking_webhook_rejected kind=%s error=%s", exc.kind.value, exc)
        return OperationResult.from_error(exc)
    except Exception as exc:
        logger.exception("booking_webhook_failed")
        return OperationResult.internal("failed to process booking webhook", exc)

    logger.info(
        "booking_webhook_processed lead_id=%s event_id=%s status=%s cancelled_followups=%s",
        lead_id,
        record.external_event_id,
        record.status.value,
        cancelled_followups,
    )
    return OperationResult.ok(
        "booking webhook processed",
        {
            "lead_id": lead_id,
            "external_event_id": record.external_event_id,
            "status": record.status.value,
            "cancelled_followups": cancelled_followups,
        },
    )
