from __future__ import annotations

from datetime import datetime, timedelta

from backend.followups.models import DealStatus
from backend.followups.store import SETTING_FOLLOWUP_DELAY_MINUTES, SETTING_FOLLOWUP_ENABLED


def test_start_and_stop_followup_flow(client, app_store, lead_id, document_id) -> None:
    start = client.post(
        f"/followups/{lead_id}/{document_id}/start",
        json={"viewerIdentity": "198.51.100.23"},
    )
    assert start.status_code == 200
    body = start.json()
    assert body["success"] is True
    assert body["data"]["action"] == "created"
    assert body["data"]["delay_minutes"] == 15
    scheduled_for = datetime.fromisoformat(body["data"]["scheduled_for"].replace("Z", "+00:00"))
    assert scheduled_for.tzinfo is not None

    again = client.post(
        f"/followups/{lead_id}/{document_id}/start",
        json={"viewer_identity": "198.51.100.23"},
    )
    assert again.json()["data"]["action"] == "updated"
    assert again.json()["data"]["followup_id"] == body["data"]["followup_id"]

    stop = client.post(
        f"/followups/{lead_id}/{document_id}/stop",
        json={"viewer_ip": "198.51.100.23", "reason": "user_dismissed"},
    )
    assert stop.status_code == 200
    assert stop.json()["data"] == {"cancelled_count": 1}

    stop_again = client.post(
        f"/followups/{lead_id}/{document_id}/stop",
        json={"viewerIdentity": "198.51.100.23", "reason": "user_dismissed"},
    )
    assert stop_again.status_code == 200
    assert stop_again.json()["data"] == {"cancelled_count": 0}


def test_start_rejects_non_ip_viewer(client, app_store, lead_id, document_id) -> None:
    response = client.post(
        f"/followups/{lead_id}/{document_id}/start",
        json={"viewerIdentity": "not-an-ip"},
    )
    assert response.status_code == 422


def test_stop_rejects_unknown_reason(client, app_store, lead_id, document_id) -> None:
    response = client.post(
        f"/followups/{lead_id}/{document_id}/stop",
        json={"viewerIdentity": "198.51.100.23", "reason": "bored"},
    )
    assert response.status_code == 422


def test_start_precondition_failures_return_400(client, app_store, lead_id, document_id) -> None:
    missing = client.post(
        f"/followups/{lead_id}/missing-doc/start",
        json={"viewerIdentity": "198.51.100.23"},
    )
    assert missing.status_code == 400
    assert missing.json() == {
        "success": False,
        "message": "document not found: missing-doc",
        "data": None,
        "error": "not_found",
    }

    app_store.set_deal_status(lead_id, DealStatus.won)
    won = client.post(
        f"/followups/{lead_id}/{document_id}/start",
        json={"viewerIdentity": "198.51.100.23"},
    )
    assert won.status_code == 400
    assert won.json()["error"] == "precondition_failed"


def test_runtime_settings_override_environment(client, app_store, lead_id, document_id) -> None:
    app_store.set_app_setting(SETTING_FOLLOWUP_DELAY_MINUTES, 45)
    start = client.post(
        f"/followups/{lead_id}/{document_id}/start",
        json={"viewerIdentity": "198.51.100.23"},
    )
    assert start.json()["data"]["delay_minutes"] == 45

    app_store.set_app_setting(SETTING_FOLLOWUP_ENABLED, False)
    disabled = client.post(
        f"/followups/{lead_id}/{document_id}/start",
        json={"viewerIdentity": "198.51.100.24"},
    )
    assert disabled.status_code == 400
    assert disabled.json()["message"] == "followup notifications are disabled"


def test_booking_check_endpoint(client, app_store, lead_id) -> None:
    response = client.get(f"/followups/{lead_id}/booking-check")
    assert response.status_code == 200
    assert response.json()["data"] == {"has_recent_booking": False, "cancelled_count": 0}

    missing = client.get("/followups/missing-lead/booking-check")
    assert missing.status_code == 400
    assert missing.json()["error"] == "not_found"


def test_sweep_endpoint_dispatches_due_tasks(
    client, app_store, dispatcher, lead_id, document_id
) -> None:
    client.post(
        f"/followups/{lead_id}/{document_id}/start",
        json={"viewerIdentity": "198.51.100.23"},
    )
    task = next(iter(app_store.followup_tasks.values()))
    app_store.followup_tasks[task.id] = task.model_copy(
        update={"scheduled_for": task.scheduled_for - timedelta(minutes=16)}
    )

    response = client.post("/followups/sweep")
    assert response.status_code == 200
    assert response.json() == {"processed": 1, "sent": 1, "failed": 0, "skipped": 0}
    assert dispatcher.sent[0].to_address == "buyer@example.com"

    tasks = client.get(f"/followups/{lead_id}/tasks")
    assert tasks.status_code == 200
    assert tasks.json()[0]["status"] == "sent"

    metrics = client.get("/metrics").text
    assert "followup_engine_sweeps_total 1" in metrics
    assert 'followup_engine_sweep_tasks_total{outcome="sent"} 1' in metrics


def test_lead_bookings_endpoint(client, app_store, lead_id) -> None:
    client.post(
        "/webhooks/booking",
        json={
            "webhook_type": "event_confirmed",
            "calendar_url": f"https://calendar.example.com/acme?company_id={lead_id}",
            "event": {"id": 4411},
        },
    )
    response = client.get(f"/leads/{lead_id}/bookings")
    assert response.status_code == 200
    body = response.json()
    assert body["confirmed_count"] == 1
    assert body["bookings"][0]["external_event_id"] == "4411"

    assert client.get("/leads/missing-lead/bookings").status_code == 404
    assert client.get("/followups/missing-lead/tasks").status_code == 404
