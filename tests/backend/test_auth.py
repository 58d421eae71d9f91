from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from fastapi.testclient import TestClient

from backend.followups.main import create_app


def _token(secret: str, subject: str, roles: list[str]) -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _client(monkeypatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("BOOKING_WEBHOOK_AUTH_ENABLED", "false")
    return TestClient(create_app())


def test_sweep_blocks_missing_token_when_enabled(monkeypatch) -> None:
    client = _client(monkeypatch)
    response = client.post("/followups/sweep")
    assert response.status_code == 401


def test_sweep_allows_service_token(monkeypatch) -> None:
    client = _client(monkeypatch)
    token = _token("test-secret", "scheduler", ["service"])
    response = client.post("/followups/sweep", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["processed"] == 0


def test_sweep_rejects_sales_role(monkeypatch) -> None:
    client = _client(monkeypatch)
    token = _token("test-secret", "rep-1", ["sales"])
    response = client.post("/followups/sweep", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403


def test_tasks_listing_rejects_token_signed_with_other_secret(monkeypatch) -> None:
    client = _client(monkeypatch)
    token = _token("wrong-secret", "rep-1", ["sales"])
    response = client.get(
        "/followups/some-lead/tasks", headers={"Authorization": f"Bearer {token}"}
    )
    assert response.status_code == 401


def test_viewer_endpoints_are_public_even_when_auth_enabled(monkeypatch, seed, lead_id) -> None:
    client = _client(monkeypatch)
    seed(client.app.state.store)

    response = client.get(f"/followups/{lead_id}/booking-check")
    assert response.status_code == 200
    assert client.get("/webhooks/booking/health").status_code == 200


def test_expired_token_is_rejected(monkeypatch) -> None:
    client = _client(monkeypatch)
    token = jwt.encode(
        {
            "sub": "scheduler",
            "roles": ["service"],
            "exp": datetime.now(timezone.utc) - timedelta(minutes=5),
        },
        "test-secret",
        algorithm="HS256",
    )
    response = client.post("/followups/sweep", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "auth token expired"
