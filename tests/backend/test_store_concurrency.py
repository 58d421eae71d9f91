from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from backend.followups.models import BookingStatus, FollowupStatus
from backend.followups.services.booking_webhooks import process_booking_webhook
from backend.followups.services.ledger import ledger_counts
from backend.followups.services.timers import start_timer, stop_timer


def test_concurrent_webhooks_for_same_lead_keep_counters_consistent(store, lead_id) -> None:
    errors: list[str] = []

    def deliver(index: int) -> None:
        webhook_type = "event_confirmed" if index % 3 else "event_cancelled"
        result = process_booking_webhook(
            store=store,
            raw_payload={
                "webhook_type": webhook_type,
                "calendar_url": f"https://calendar.example.com/acme?company_id={lead_id}",
                "event": {"id": f"evt-{index % 25}"},
            },
        )
        if not result.success:
            errors.append(result.message)

    with ThreadPoolExecutor(max_workers=12) as executor:
        futures = [executor.submit(deliver, i) for i in range(400)]
        for future in futures:
            future.result()

    assert not errors
    ledger = store.get_booking_ledger(lead_id)
    assert len(ledger.records) == 25
    assert (ledger.confirmed_count, ledger.cancelled_count) == ledger_counts(ledger)
    assert ledger.confirmed_count + ledger.cancelled_count == 25
    assert all(
        record.status in (BookingStatus.confirmed, BookingStatus.cancelled)
        for record in ledger.records.values()
    )


def test_concurrent_starts_keep_one_scheduled_task_per_key(
    store, config, lead_id, document_id
) -> None:
    viewers = ["10.0.0.1", "10.0.0.2", "10.0.0.3"]

    def start(index: int) -> None:
        viewer = viewers[index % len(viewers)]
        if index % 7 == 0:
            stop_timer(
                store=store,
                lead_id=lead_id,
                document_id=document_id,
                viewer_identity=viewer,
                reason="timer_reset",
            )
        result = start_timer(
            store=store,
            config=config,
            lead_id=lead_id,
            document_id=document_id,
            viewer_identity=viewer,
        )
        assert result.success

    with ThreadPoolExecutor(max_workers=12) as executor:
        futures = [executor.submit(start, i) for i in range(300)]
        for future in futures:
            future.result()

    for viewer in viewers:
        scheduled = store.find_scheduled_tasks(
            lead_id=lead_id, document_id=document_id, viewer_identity=viewer
        )
        assert len(scheduled) == 1
    cancelled = [
        task for task in store.followup_tasks.values() if task.status == FollowupStatus.cancelled
    ]
    assert all(task.cancellation_reason == "timer_reset" for task in cancelled)
