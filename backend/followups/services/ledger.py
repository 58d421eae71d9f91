from __future__ import annotations

from datetime import datetime
from typing import Optional

from backend.followups.models import BookingEvent, BookingLedger, BookingRecord, BookingStatus


def _increment(ledger: BookingLedger, status: BookingStatus, delta: int) -> None:
    if status == BookingStatus.confirmed:
        ledger.confirmed_count += delta
    else:
        ledger.cancelled_count += delta


def apply_booking_event(
    ledger: BookingLedger,
    event: BookingEvent,
    *,
    now: datetime,
) -> BookingRecord:
    """
    Reconcile one provider event into the ledger, in place.

    Counters only move when the stored status differs from the incoming one, so
    re-delivering the same (event id, status) pair is a no-op for the counts.
    Callers must hold the owning lead's lock.
    """
    existing = ledger.records.get(event.external_event_id)
    cancelled = event.status == BookingStatus.cancelled

    if existing is None:
        record = BookingRecord(
            external_event_id=event.external_event_id,
            status=event.status,
            created_at=event.created_at or now,
            updated_at=now,
        )
        _increment(ledger, event.status, 1)
    else:
        record = existing
        if record.status != event.status:
            _increment(ledger, record.status, -1)
            _increment(ledger, event.status, 1)
        record.status = event.status
        record.updated_at = now
        if event.created_at is not None:
            record.created_at = event.created_at

    record.scheduled_start = event.scheduled_start
    record.scheduled_end = event.scheduled_end
    record.local_start = event.local_start
    record.local_end = event.local_end
    record.guest_name = event.guest_name
    record.guest_email = event.guest_email
    record.guest_company_name = event.guest_company_name
    record.guest_comment = event.guest_comment
    record.calendar_name = event.calendar_name
    record.document_id = event.document_id
    record.cancelled_at = (event.cancelled_at or now) if cancelled else None
    record.cancellation_reason = event.cancellation_reason if cancelled else None

    ledger.records[record.external_event_id] = record
    return record


def ledger_counts(ledger: BookingLedger) -> tuple[int, int]:
    confirmed = sum(1 for r in ledger.records.values() if r.status == BookingStatus.confirmed)
    cancelled = sum(1 for r in ledger.records.values() if r.status == BookingStatus.cancelled)
    return confirmed, cancelled


def latest_booking(ledger: BookingLedger) -> Optional[BookingRecord]:
    # Equal created_at values resolve to the later-inserted record.
    latest: Optional[BookingRecord] = None
    for record in ledger.records.values():
        if latest is None or record.created_at >= latest.created_at:
            latest = record
    return latest
