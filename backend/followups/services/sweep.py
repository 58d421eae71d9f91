from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from backend.followups.errors import (
    DispatchError,
    FollowupError,
    NotFoundError,
    OperationResult,
)
from backend.followups.models import (
    BookingStatus,
    DealStatus,
    DocumentRecord,
    FollowupStatus,
    FollowupTaskRecord,
    LeadRecord,
    SweepSummary,
    utc_now,
)
from backend.followups.services.notifications import (
    NotificationDispatcher,
    build_followup_message,
)
from backend.followups.settings import FollowupConfig
from backend.followups.store import InMemoryStore, StoreConflictError

logger = logging.getLogger("followup_engine.sweep")

RECENT_BOOKING_WINDOW = timedelta(minutes=30)
REASON_BOOKING_CONFIRMED = "booking_confirmed"
REASON_DEAL_WON = "deal_won"


def cancel_for_recent_booking(
    *,
    store: InMemoryStore,
    lead_id: str,
    now: datetime,
) -> Optional[int]:
    """
    Cancel every scheduled followup of the lead when its latest booking is a
    confirmed one created within the recent-booking window.

    Returns the number of cancelled tasks, or None when there is no recent
    confirmed booking. Raises StoreNotFoundError for an unknown lead.
    """
    latest = store.latest_booking(lead_id)
    if latest is None or latest.status != BookingStatus.confirmed:
        return None
    if now - latest.created_at > RECENT_BOOKING_WINDOW:
        return None
    cancelled = store.cancel_scheduled_tasks(
        lead_id=lead_id,
        reason=REASON_BOOKING_CONFIRMED,
        now=now,
    )
    logger.info(
        "followups_cancelled_for_booking lead_id=%s event_id=%s booked_at=%s cancelled=%s",
        lead_id,
        latest.external_event_id,
        latest.created_at.isoformat(),
        len(cancelled),
    )
    return len(cancelled)


def check_recent_booking(
    *,
    store: InMemoryStore,
    lead_id: str,
    now: Optional[datetime] = None,
) -> OperationResult:
    try:
        if store.find_lead(lead_id) is None:
            raise NotFoundError("lead", lead_id)
        cancelled = cancel_for_recent_booking(store=store, lead_id=lead_id, now=now or utc_now())
    except FollowupError as exc:
        return OperationResult.from_error(exc)
    except Exception as exc:
        logger.exception("booking_check_failed lead_id=%s", lead_id)
        return OperationResult.internal("failed to check recent bookings", exc)

    if cancelled is None:
        return OperationResult.ok(
            "no recent confirmed booking",
            {"has_recent_booking": False, "cancelled_count": 0},
        )
    return OperationResult.ok(
        "followups cancelled due to a recent booking",
        {"has_recent_booking": True, "cancelled_count": cancelled},
    )


def _dispatch(
    *,
    task: FollowupTaskRecord,
    lead: Optional[LeadRecord],
    document: Optional[DocumentRecord],
    config: FollowupConfig,
    dispatcher: NotificationDispatcher,
) -> None:
    if lead is None:
        raise DispatchError(f"lead not found: {task.lead_id}")
    if document is None:
        raise DispatchError(f"document not found: {task.document_id}")
    message = build_followup_message(
        lead=lead,
        document=document,
        subject_template=config.subject_template,
    )
    dispatcher.send(message)


def run_sweep(
    *,
    store: InMemoryStore,
    config: FollowupConfig,
    dispatcher: NotificationDispatcher,
    now: Optional[datetime] = None,
) -> SweepSummary:
    """
    Process every scheduled followup that is due.

    Precedence per task: deal won, then a recent confirmed booking, then
    dispatch. One task's failure never stops the remaining tasks.
    """
    now = now or utc_now()
    due = store.list_due_tasks(now)
    leads = store.get_leads(task.lead_id for task in due)
    documents = store.get_documents(task.document_id for task in due)
    summary = SweepSummary()

    for task in due:
        summary.processed += 1
        lead = leads.get(task.lead_id)
        try:
            current = store.get_task(task.id)
            if current.status != FollowupStatus.scheduled:
                summary.skipped += 1
                continue

            if lead is not None and lead.deal_status == DealStatus.won:
                store.cancel_task(task.id, REASON_DEAL_WON, now=now)
                summary.skipped += 1
                logger.info(
                    "followup_skipped_deal_won followup_id=%s lead_id=%s",
                    task.id,
                    task.lead_id,
                )
                continue

            if lead is not None:
                cancelled = cancel_for_recent_booking(store=store, lead_id=task.lead_id, now=now)
                if cancelled is not None:
                    summary.skipped += 1
                    continue

            _dispatch(
                task=task,
                lead=lead,
                document=documents.get(task.document_id),
                config=config,
                dispatcher=dispatcher,
            )
        except StoreConflictError as exc:
            # Task left the scheduled state underneath us (e.g. a concurrent stop).
            logger.warning("followup_transition_conflict followup_id=%s error=%s", task.id, exc)
            summary.skipped += 1
            continue
        except Exception as exc:
            logger.error(
                "followup_dispatch_failed followup_id=%s lead_id=%s error=%s",
                task.id,
                task.lead_id,
                exc,
            )
            try:
                store.mark_task_failed(task.id, str(exc) or type(exc).__name__, now=now)
            except StoreConflictError:
                logger.warning("followup_already_terminal followup_id=%s", task.id)
            summary.failed += 1
            continue

        try:
            store.mark_task_sent(task.id, now=now)
        except StoreConflictError:
            # Cancelled while sending; the message still went out, so it counts as sent.
            logger.warning("followup_sent_after_terminal followup_id=%s", task.id)
        summary.sent += 1
        logger.info(
            "followup_sent followup_id=%s lead_id=%s document_id=%s",
            task.id,
            task.lead_id,
            task.document_id,
        )

    logger.info(
        "followup_sweep_complete processed=%s sent=%s failed=%s skipped=%s",
        summary.processed,
        summary.sent,
        summary.failed,
        summary.skipped,
    )
    return summary
