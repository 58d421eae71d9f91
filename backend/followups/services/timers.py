from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from backend.followups.errors import (
    FollowupError,
    NotFoundError,
    OperationResult,
    PreconditionError,
)
from backend.followups.models import DealStatus, utc_now
from backend.followups.settings import FollowupConfig
from backend.followups.store import InMemoryStore

logger = logging.getLogger("followup_engine.timers")


def _check_start_preconditions(
    *,
    store: InMemoryStore,
    config: FollowupConfig,
    lead_id: str,
    document_id: str,
) -> None:
    if not config.enabled:
        raise PreconditionError("feature_disabled", "followup notifications are disabled")
    lead = store.find_lead(lead_id)
    if lead is None:
        raise NotFoundError("lead", lead_id)
    if not (lead.contact_email or "").strip():
        raise PreconditionError("no_contact_email", "lead has no contact email")
    if lead.deal_status == DealStatus.won:
        raise PreconditionError("deal_already_won", "deal already won; no followup needed")
    if store.find_document(document_id) is None:
        raise NotFoundError("document", document_id)


def start_timer(
    *,
    store: InMemoryStore,
    config: FollowupConfig,
    lead_id: str,
    document_id: str,
    viewer_identity: str,
    now: Optional[datetime] = None,
) -> OperationResult:
    now = now or utc_now()
    try:
        _check_start_preconditions(
            store=store, config=config, lead_id=lead_id, document_id=document_id
        )
        scheduled_for = now + timedelta(minutes=config.delay_minutes)
        task, action = store.upsert_scheduled_task(
            lead_id=lead_id,
            document_id=document_id,
            viewer_identity=viewer_identity,
            scheduled_for=scheduled_for,
            now=now,
        )
    except FollowupError as exc:
        logger.info(
            "followup_timer_rejected lead_id=%s document_id=%s reason=%s",
            lead_id,
            document_id,
            exc,
        )
        return OperationResult.from_error(exc)
    except Exception as exc:
        logger.exception(
            "followup_timer_start_failed lead_id=%s document_id=%s viewer=%s",
            lead_id,
            document_id,
            viewer_identity,
        )
        return OperationResult.internal("failed to start followup timer", exc)

    logger.info(
        "followup_timer_started followup_id=%s lead_id=%s document_id=%s viewer=%s "
        "scheduled_for=%s action=%s",
        task.id,
        lead_id,
        document_id,
        viewer_identity,
        scheduled_for.isoformat(),
        action.value,
    )
    return OperationResult.ok(
        "followup timer started",
        {
            "followup_id": task.id,
            "scheduled_for": scheduled_for,
            "delay_minutes": config.delay_minutes,
            "action": action.value,
        },
    )


def stop_timer(
    *,
    store: InMemoryStore,
    lead_id: str,
    document_id: str,
    viewer_identity: str,
    reason: str,
    now: Optional[datetime] = None,
) -> OperationResult:
    try:
        cancelled = store.cancel_scheduled_tasks(
            lead_id=lead_id,
            document_id=document_id,
            viewer_identity=viewer_identity,
            reason=reason,
            now=now or utc_now(),
        )
    except Exception as exc:
        logger.exception(
            "followup_timer_stop_failed lead_id=%s document_id=%s viewer=%s",
            lead_id,
            document_id,
            viewer_identity,
        )
        return OperationResult.internal("failed to stop followup timer", exc)

    logger.info(
        "followup_timer_stopped lead_id=%s document_id=%s viewer=%s reason=%s cancelled=%s",
        lead_id,
        document_id,
        viewer_identity,
        reason,
        len(cancelled),
    )
    return OperationResult.ok("followup timer stopped", {"cancelled_count": len(cancelled)})
