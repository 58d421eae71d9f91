from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone
from typing import Optional


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def build_payload(
    *,
    lead_id: str,
    event_id: str,
    webhook_type: str,
    document_id: Optional[str],
    via_comment: bool,
) -> dict:
    start = datetime.now(timezone.utc) + timedelta(days=2)
    calendar_url = "https://calendar.example.com/book/demo"
    form = [
        {"field_type": "guest_name", "value": "Mock Guest"},
        {"field_type": "guest_email", "value": "mock.guest@example.com"},
        {"field_type": "company_name", "value": "Mock Co"},
    ]
    if via_comment:
        form.append({"field_type": "guest_comment", "value": lead_id})
    else:
        calendar_url += f"?company_id={lead_id}"
        if document_id:
            calendar_url += f"&document_id={document_id}"

    event: dict = {
        "id": event_id,
        "start_datetime": start.isoformat(),
        "end_datetime": (start + timedelta(minutes=30)).isoformat(),
        "created_at": datetime.now(timezone.utc).isoformat(),
        "form": form,
    }
    if webhook_type == "event_cancelled":
        event["canceled_at"] = datetime.now(timezone.utc).isoformat()
        event["cancellation_reason"] = "mock cancellation"
    return {
        "webhook_type": webhook_type,
        "calendar_url": calendar_url,
        "calendar_name": "Mock intro call",
        "event": event,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock booking webhooks to local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--lead-id", required=True)
    parser.add_argument("--document-id", default=None)
    parser.add_argument(
        "--webhook-type",
        choices=["event_confirmed", "event_cancelled"],
        default="event_confirmed",
    )
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument("--event-id", default=None, help="Reuse one event id to test redelivery.")
    parser.add_argument("--via-comment", action="store_true")
    parser.add_argument("--token", default="")
    args = parser.parse_args()

    endpoint = f"{args.base_url.rstrip('/')}/webhooks/booking"
    headers: dict[str, str] = {}
    if args.token:
        headers["x-booking-authorization"] = args.token

    for index in range(1, args.count + 1):
        event_id = args.event_id or f"evt_mock_booking_{index}"
        payload = build_payload(
            lead_id=args.lead_id,
            event_id=event_id,
            webhook_type=args.webhook_type,
            document_id=args.document_id,
            via_comment=args.via_comment,
        )
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        status_code, response = post_json(endpoint, body, headers)
        print(f"{status_code} {event_id} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
