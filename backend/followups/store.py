from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import TYPE_CHECKING, Any, Iterable, Optional
from uuid import uuid4

from backend.followups.models import (
    BookingEvent,
    BookingLedger,
    BookingRecord,
    DealStatus,
    DocumentRecord,
    FollowupStatus,
    FollowupTaskRecord,
    LeadRecord,
    TimerAction,
    utc_now,
)
from backend.followups.services.ledger import apply_booking_event, latest_booking
from backend.followups.services.workflow import ALLOWED_TRANSITIONS
from backend.followups.settings import FollowupConfig, clamp_delay_minutes, parse_bool

if TYPE_CHECKING:
    from backend.followups.persistence import SqlitePersistence

SETTING_FOLLOWUP_ENABLED = "followup.enabled"
SETTING_FOLLOWUP_DELAY_MINUTES = "followup.delay_minutes"
SETTING_FOLLOWUP_SUBJECT = "followup.subject"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class InMemoryStore:
    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.leads: dict[str, LeadRecord] = {}
        self.documents: dict[str, DocumentRecord] = {}
        self.followup_tasks: dict[str, FollowupTaskRecord] = {}
        self.app_settings: dict[str, Any] = {}

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)
            else:
                for task in self.persistence.list_followup_tasks():
                    self.followup_tasks[task.id] = task

    # Leads and documents are owned elsewhere; these exist so the engine can be
    # seeded and so tests can set up state.

    def create_lead(
        self,
        *,
        name: str,
        contact_email: Optional[str] = None,
        deal_status: DealStatus = DealStatus.prospecting,
        booking_link: Optional[str] = None,
        lead_id: Optional[str] = None,
    ) -> LeadRecord:
        with self._lock:
            lead = LeadRecord(
                id=lead_id or str(uuid4()),
                name=name.strip(),
                contact_email=contact_email,
                deal_status=deal_status,
                booking_link=booking_link,
                created_at_utc=utc_now(),
            )
            if lead.id in self.leads:
                raise StoreConflictError(f"lead already exists: {lead.id}")
            self.leads[lead.id] = lead
            self._persist_state()
            return lead

    def set_deal_status(self, lead_id: str, deal_status: DealStatus) -> LeadRecord:
        with self._lock:
            lead = self.get_lead(lead_id)
            lead.deal_status = deal_status
            self._persist_state()
            return lead

    def find_lead(self, lead_id: str) -> Optional[LeadRecord]:
        return self.leads.get(lead_id)

    def get_lead(self, lead_id: str) -> LeadRecord:
        lead = self.leads.get(lead_id)
        if not lead:
            raise StoreNotFoundError(f"lead not found: {lead_id}")
        return lead

    def get_leads(self, lead_ids: Iterable[str]) -> dict[str, LeadRecord]:
        with self._lock:
            return {
                lead_id: self.leads[lead_id].model_copy(deep=True)
                for lead_id in set(lead_ids)
                if lead_id in self.leads
            }

    def create_document(
        self,
        *,
        title: str,
        lead_id: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> DocumentRecord:
        with self._lock:
            document = DocumentRecord(
                id=document_id or str(uuid4()),
                lead_id=lead_id,
                title=title.strip(),
                created_at_utc=utc_now(),
            )
            if document.id in self.documents:
                raise StoreConflictError(f"document already exists: {document.id}")
            self.documents[document.id] = document
            self._persist_state()
            return document

    def find_document(self, document_id: str) -> Optional[DocumentRecord]:
        return self.documents.get(document_id)

    def get_documents(self, document_ids: Iterable[str]) -> dict[str, DocumentRecord]:
        with self._lock:
            return {
                document_id: self.documents[document_id].model_copy()
                for document_id in set(document_ids)
                if document_id in self.documents
            }

    def set_app_setting(self, key: str, value: Any) -> None:
        with self._lock:
            self.app_settings[key] = value
            self._persist_state()

    def followup_config(self, defaults: FollowupConfig) -> FollowupConfig:
        with self._lock:
            enabled = self.app_settings.get(SETTING_FOLLOWUP_ENABLED, defaults.enabled)
            delay = self.app_settings.get(SETTING_FOLLOWUP_DELAY_MINUTES, defaults.delay_minutes)
            subject = self.app_settings.get(SETTING_FOLLOWUP_SUBJECT, defaults.subject_template)
        try:
            delay_minutes = clamp_delay_minutes(int(delay))
        except (TypeError, ValueError):
            delay_minutes = defaults.delay_minutes
        return FollowupConfig(
            enabled=parse_bool(enabled, defaults.enabled),
            delay_minutes=delay_minutes,
            subject_template=str(subject or defaults.subject_template),
        )

    def apply_booking_event(
        self, lead_id: str, event: BookingEvent, *, now: Optional[datetime] = None
    ) -> BookingRecord:
        with self._lock:
            lead = self.get_lead(lead_id)
            record = apply_booking_event(lead.booking_ledger, event, now=now or utc_now())
            self._persist_state()
            return record.model_copy()

    def get_booking_ledger(self, lead_id: str) -> BookingLedger:
        with self._lock:
            return self.get_lead(lead_id).booking_ledger.model_copy(deep=True)

    def latest_booking(self, lead_id: str) -> Optional[BookingRecord]:
        with self._lock:
            record = latest_booking(self.get_lead(lead_id).booking_ledger)
            return record.model_copy() if record else None

    def find_scheduled_tasks(
        self,
        *,
        lead_id: str,
        document_id: Optional[str] = None,
        viewer_identity: Optional[str] = None,
    ) -> list[FollowupTaskRecord]:
        with self._lock:
            return [
                task
                for task in self.followup_tasks.values()
                if task.status == FollowupStatus.scheduled
                and task.lead_id == lead_id
                and (document_id is None or task.document_id == document_id)
                and (viewer_identity is None or task.viewer_identity == viewer_identity)
            ]

    def upsert_scheduled_task(
        self,
        *,
        lead_id: str,
        document_id: str,
        viewer_identity: str,
        scheduled_for: datetime,
        now: Optional[datetime] = None,
    ) -> tuple[FollowupTaskRecord, TimerAction]:
        with self._lock:
            now = now or utc_now()
            existing = self.find_scheduled_tasks(
                lead_id=lead_id,
                document_id=document_id,
                viewer_identity=viewer_identity,
            )
            if existing:
                task = existing[0].model_copy(
                    update={
                        "triggered_at": now,
                        "scheduled_for": scheduled_for,
                        "cancellation_reason": None,
                        "failure_message": None,
                        "updated_at_utc": now,
                    }
                )
                action = TimerAction.updated
            else:
                task = FollowupTaskRecord(
                    id=new_id("fup"),
                    lead_id=lead_id,
                    document_id=document_id,
                    viewer_identity=viewer_identity,
                    triggered_at=now,
                    scheduled_for=scheduled_for,
                    status=FollowupStatus.scheduled,
                    created_at_utc=now,
                    updated_at_utc=now,
                )
                action = TimerAction.created
            self.followup_tasks[task.id] = task
            self._persist_task(task)
            self._persist_state()
            return task, action

    def cancel_scheduled_tasks(
        self,
        *,
        lead_id: str,
        reason: str,
        document_id: Optional[str] = None,
        viewer_identity: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[FollowupTaskRecord]:
        with self._lock:
            now = now or utc_now()
            cancelled = [
                self._transition(task.id, FollowupStatus.cancelled, now=now, reason=reason)
                for task in self.find_scheduled_tasks(
                    lead_id=lead_id,
                    document_id=document_id,
                    viewer_identity=viewer_identity,
                )
            ]
            if cancelled:
                self._persist_state()
            return cancelled

    def list_due_tasks(self, now: Optional[datetime] = None) -> list[FollowupTaskRecord]:
        now = now or utc_now()
        with self._lock:
            due = [
                task
                for task in self.followup_tasks.values()
                if task.status == FollowupStatus.scheduled and task.scheduled_for <= now
            ]
        return sorted(due, key=lambda task: task.scheduled_for)

    def list_lead_tasks(self, lead_id: str) -> list[FollowupTaskRecord]:
        with self._lock:
            tasks = [task for task in self.followup_tasks.values() if task.lead_id == lead_id]
        return sorted(tasks, key=lambda task: task.created_at_utc)

    def get_task(self, task_id: str) -> FollowupTaskRecord:
        task = self.followup_tasks.get(task_id)
        if not task:
            raise StoreNotFoundError(f"followup task not found: {task_id}")
        return task

    def mark_task_sent(
        self, task_id: str, *, now: Optional[datetime] = None
    ) -> FollowupTaskRecord:
        with self._lock:
            task = self._transition(task_id, FollowupStatus.sent, now=now or utc_now())
            self._persist_state()
            return task

    def mark_task_failed(
        self, task_id: str, message: str, *, now: Optional[datetime] = None
    ) -> FollowupTaskRecord:
        with self._lock:
            task = self._transition(
                task_id, FollowupStatus.failed, now=now or utc_now(), message=message
            )
            self._persist_state()
            return task

    def cancel_task(
        self, task_id: str, reason: str, *, now: Optional[datetime] = None
    ) -> FollowupTaskRecord:
        with self._lock:
            task = self._transition(
                task_id, FollowupStatus.cancelled, now=now or utc_now(), reason=reason
            )
            self._persist_state()
            return task

    def _transition(
        self,
        task_id: str,
        to_status: FollowupStatus,
        *,
        now: datetime,
        reason: Optional[str] = None,
        message: Optional[str] = None,
    ) -> FollowupTaskRecord:
        task = self.get_task(task_id)
        if to_status not in ALLOWED_TRANSITIONS[task.status]:
            raise StoreConflictError(
                f"invalid followup transition {task.status.value} -> {to_status.value}"
            )
        update: dict[str, Any] = {"status": to_status, "updated_at_utc": now}
        if to_status == FollowupStatus.cancelled:
            update["cancellation_reason"] = reason
            update["cancelled_at"] = now
        elif to_status == FollowupStatus.failed:
            update["failure_message"] = message or "unknown dispatch error"
        elif to_status == FollowupStatus.sent:
            update["sent_at"] = now
        updated = task.model_copy(update=update)
        self.followup_tasks[task_id] = updated
        self._persist_task(updated)
        return updated

    def _persist_task(self, record: FollowupTaskRecord) -> None:
        if self.persistence:
            self.persistence.upsert_followup_task(record)

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "leads": [record.model_dump(mode="json") for record in self.leads.values()],
            "documents": [record.model_dump(mode="json") for record in self.documents.values()],
            "followup_tasks": [
                record.model_dump(mode="json") for record in self.followup_tasks.values()
            ],
            "app_settings": dict(self.app_settings),
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self.leads = {
            record["id"]: LeadRecord.model_validate(record)
            for record in snapshot.get("leads", [])
        }
        self.documents = {
            record["id"]: DocumentRecord.model_validate(record)
            for record in snapshot.get("documents", [])
        }
        self.followup_tasks = {
            record["id"]: FollowupTaskRecord.model_validate(record)
            for record in snapshot.get("followup_tasks", [])
        }
        self.app_settings = dict(snapshot.get("app_settings", {}))
