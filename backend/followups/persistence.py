from __future__ import annotations

import json
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.followups.models import (
    FollowupStatus,
    FollowupTaskRecord,
    ensure_utc,
    utc_now,
)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    Snapshot store for the engine state. Uses SQLAlchemy and supports both SQLite
    and PostgreSQL URLs. Follow-up tasks are additionally written row-by-row so
    their history stays queryable outside the snapshot.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime(timezone=True), nullable=False),
        )
        self.followup_tasks = Table(
            "followup_tasks",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("lead_id", String(64), nullable=False, index=True),
            Column("document_id", String(64), nullable=False),
            Column("viewer_identity", String(64), nullable=False),
            Column("status", String(20), nullable=False, index=True),
            Column("triggered_at", DateTime(timezone=True), nullable=False),
            Column("scheduled_for", DateTime(timezone=True), nullable=False),
            Column("cancellation_reason", String(120), nullable=True),
            Column("cancelled_at", DateTime(timezone=True), nullable=True),
            Column("failure_message", Text, nullable=True),
            Column("sent_at", DateTime(timezone=True), nullable=True),
            Column("created_at_utc", DateTime(timezone=True), nullable=False),
            Column("updated_at_utc", DateTime(timezone=True), nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict) -> None:
        with self._lock:
            serialized = json.dumps(payload)
            now = utc_now()
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.state_snapshots.c.id).where(self.state_snapshots.c.id == "default")
                ).first()
                if existing:
                    conn.execute(
                        self.state_snapshots.update()
                        .where(self.state_snapshots.c.id == "default")
                        .values(payload_json=serialized, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        self.state_snapshots.insert().values(
                            id="default",
                            payload_json=serialized,
                            updated_at_utc=now,
                        )
                    )

    def load_snapshot(self) -> Optional[dict]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.state_snapshots.c.payload_json).where(
                        self.state_snapshots.c.id == "default"
                    )
                ).first()
            if not row:
                return None
            return json.loads(row[0])

    def upsert_followup_task(self, record: FollowupTaskRecord) -> None:
        with self._lock:
            payload = {
                "lead_id": record.lead_id,
                "document_id": record.document_id,
                "viewer_identity": record.viewer_identity,
                "status": record.status.value,
                "triggered_at": record.triggered_at,
                "scheduled_for": record.scheduled_for,
                "cancellation_reason": record.cancellation_reason,
                "cancelled_at": record.cancelled_at,
                "failure_message": record.failure_message,
                "sent_at": record.sent_at,
                "created_at_utc": record.created_at_utc,
                "updated_at_utc": record.updated_at_utc,
            }
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.followup_tasks.c.id).where(self.followup_tasks.c.id == record.id)
                ).first()
                if existing:
                    conn.execute(
                        self.followup_tasks.update()
                        .where(self.followup_tasks.c.id == record.id)
                        .values(**payload)
                    )
                else:
                    conn.execute(self.followup_tasks.insert().values(id=record.id, **payload))

    def list_followup_tasks(self, lead_id: Optional[str] = None) -> list[FollowupTaskRecord]:
        query = select(self.followup_tasks).order_by(self.followup_tasks.c.created_at_utc)
        if lead_id is not None:
            query = query.where(self.followup_tasks.c.lead_id == lead_id)
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()

        output: list[FollowupTaskRecord] = []
        for row in rows:
            # SQLite drops tzinfo on the way back out.
            output.append(
                FollowupTaskRecord(
                    id=row.id,
                    lead_id=row.lead_id,
                    document_id=row.document_id,
                    viewer_identity=row.viewer_identity,
                    status=FollowupStatus(row.status),
                    triggered_at=ensure_utc(row.triggered_at),
                    scheduled_for=ensure_utc(row.scheduled_for),
                    cancellation_reason=row.cancellation_reason,
                    cancelled_at=ensure_utc(row.cancelled_at),
                    failure_message=row.failure_message,
                    sent_at=ensure_utc(row.sent_at),
                    created_at_utc=ensure_utc(row.created_at_utc) or utc_now(),
                    updated_at_utc=ensure_utc(row.updated_at_utc) or utc_now(),
                )
            )
        return output
