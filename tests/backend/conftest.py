from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.followups.errors import DispatchError
from backend.followups.main import create_app
from backend.followups.services.notifications import FollowupMessage
from backend.followups.settings import FollowupConfig
from backend.followups.store import InMemoryStore

LEAD_ID = "0b7c2f4e-6a51-4d2b-9a3e-1f2d3c4b5a69"
DOCUMENT_ID = "d6f1c8a2-3b4e-4f5a-8c9d-0e1f2a3b4c5d"


class RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: list[FollowupMessage] = []
        self.fail_for: set[str] = set()

    def send(self, message: FollowupMessage) -> None:
        if message.to_address in self.fail_for:
            raise DispatchError(f"mailbox unavailable: {message.to_address}")
        self.sent.append(message)


@pytest.fixture()
def app(monkeypatch: pytest.MonkeyPatch) -> FastAPI:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("BOOKING_WEBHOOK_AUTH_ENABLED", "false")
    monkeypatch.delenv("SMTP_HOST", raising=False)
    monkeypatch.delenv("FOLLOWUP_ENABLED", raising=False)
    monkeypatch.delenv("FOLLOWUP_DELAY_MINUTES", raising=False)
    return create_app()


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def dispatcher(app: FastAPI) -> RecordingDispatcher:
    recorder = RecordingDispatcher()
    app.state.dispatcher = recorder
    return recorder


@pytest.fixture()
def now() -> datetime:
    return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def lead_id() -> str:
    return LEAD_ID


@pytest.fixture()
def document_id() -> str:
    return DOCUMENT_ID


@pytest.fixture()
def config() -> FollowupConfig:
    return FollowupConfig(
        enabled=True,
        delay_minutes=15,
        subject_template="Following up on {document_title}",
    )


@pytest.fixture()
def seed() -> Callable[..., None]:
    def _seed(
        store: InMemoryStore,
        *,
        lead_id: str = LEAD_ID,
        document_id: str = DOCUMENT_ID,
        contact_email: Optional[str] = "buyer@example.com",
        **lead_fields,
    ) -> None:
        store.create_lead(
            name="Acme Buyer",
            contact_email=contact_email,
            booking_link="https://booking.example.com/acme",
            lead_id=lead_id,
            **lead_fields,
        )
        store.create_document(title="Acme Proposal", lead_id=lead_id, document_id=document_id)

    return _seed


@pytest.fixture()
def store(seed) -> InMemoryStore:
    seeded = InMemoryStore()
    seed(seeded)
    return seeded


@pytest.fixture()
def app_store(app: FastAPI, seed) -> InMemoryStore:
    seed(app.state.store)
    return app.state.store
