from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from backend.followups.auth import AuthContext, require_booking_webhook_token, require_roles
from backend.followups.errors import ErrorKind, OperationResult
from backend.followups.models import (
    ApiResponse,
    BookingLedgerResponse,
    FollowupStartRequest,
    FollowupStopRequest,
    FollowupTaskItem,
    SweepSummary,
    WebhookResponse,
    utc_now,
)
from backend.followups.observability import MetricsRegistry, configure_logging, observe_request
from backend.followups.persistence import SqlitePersistence
from backend.followups.services.booking_webhooks import process_booking_webhook
from backend.followups.services.notifications import NotificationDispatcher, build_dispatcher
from backend.followups.services.sweep import check_recent_booking, run_sweep
from backend.followups.services.timers import start_timer, stop_timer
from backend.followups.settings import FollowupConfig, Settings, load_settings
from backend.followups.store import InMemoryStore, StoreNotFoundError

logger = logging.getLogger("followup_engine")


def create_app() -> FastAPI:
    app = FastAPI(title="Followup Scheduling & Booking Reconciliation API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    app.state.store = InMemoryStore(persistence=persistence)
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.dispatcher = build_dispatcher(settings)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_followup_config(request: Request) -> FollowupConfig:
    return get_store(request).followup_config(get_settings(request).followup_defaults())


def _status_code_for(result: OperationResult) -> int:
    if result.success:
        return status.HTTP_200_OK
    if result.error == ErrorKind.internal_error:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


def result_response(result: OperationResult, settings: Settings) -> JSONResponse:
    body = ApiResponse(
        success=result.success,
        message=result.public_message(expose_detail=not settings.is_production),
        data=result.data,
        error=result.error.value if result.error else None,
    )
    return JSONResponse(status_code=_status_code_for(result), content=body.model_dump(mode="json"))


def webhook_response(result: OperationResult, settings: Settings) -> JSONResponse:
    body = WebhookResponse(
        status="success" if result.success else "error",
        message=result.public_message(expose_detail=not settings.is_production),
        data=result.data,
        error=result.error.value if result.error else None,
    )
    return JSONResponse(status_code=_status_code_for(result), content=body.model_dump(mode="json"))


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/followups/sweep", response_model=SweepSummary)
    def trigger_sweep(
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> SweepSummary:
        summary = run_sweep(
            store=get_store(request),
            config=get_followup_config(request),
            dispatcher=get_dispatcher(request),
        )
        get_metrics(request).record_sweep(summary)
        return summary

    @router.post("/followups/{lead_id}/{document_id}/start", response_model=ApiResponse)
    def start_followup_timer(
        lead_id: str,
        document_id: str,
        payload: FollowupStartRequest,
        request: Request,
    ) -> JSONResponse:
        result = start_timer(
            store=get_store(request),
            config=get_followup_config(request),
            lead_id=lead_id,
            document_id=document_id,
            viewer_identity=payload.viewer_identity,
        )
        return result_response(result, get_settings(request))

    @router.post("/followups/{lead_id}/{document_id}/stop", response_model=ApiResponse)
    def stop_followup_timer(
        lead_id: str,
        document_id: str,
        payload: FollowupStopRequest,
        request: Request,
    ) -> JSONResponse:
        result = stop_timer(
            store=get_store(request),
            lead_id=lead_id,
            document_id=document_id,
            viewer_identity=payload.viewer_identity,
            reason=payload.reason.value,
        )
        return result_response(result, get_settings(request))

    @router.get("/followups/{lead_id}/booking-check", response_model=ApiResponse)
    def booking_check(lead_id: str, request: Request) -> JSONResponse:
        result = check_recent_booking(store=get_store(request), lead_id=lead_id)
        return result_response(result, get_settings(request))

    @router.get("/followups/{lead_id}/tasks", response_model=list[FollowupTaskItem])
    def list_followup_tasks(
        lead_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles("sales", "admin")),
    ) -> list[FollowupTaskItem]:
        store = get_store(request)
        try:
            store.get_lead(lead_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return [
            FollowupTaskItem(
                followup_id=task.id,
                document_id=task.document_id,
                viewer_identity=task.viewer_identity,
                status=task.status,
                triggered_at=task.triggered_at,
                scheduled_for=task.scheduled_for,
                cancellation_reason=task.cancellation_reason,
                failure_message=task.failure_message,
                sent_at=task.sent_at,
            )
            for task in store.list_lead_tasks(lead_id)
        ]

    @router.get("/leads/{lead_id}/bookings", response_model=BookingLedgerResponse)
    def lead_bookings(
        lead_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles("sales", "admin")),
    ) -> BookingLedgerResponse:
        try:
            ledger = get_store(request).get_booking_ledger(lead_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return BookingLedgerResponse(
            lead_id=lead_id,
            confirmed_count=ledger.confirmed_count,
            cancelled_count=ledger.cancelled_count,
            bookings=list(ledger.records.values()),
        )

    @router.post(
        "/webhooks/booking",
        response_model=WebhookResponse,
        dependencies=[Depends(require_booking_webhook_token)],
    )
    async def booking_webhook(request: Request) -> JSONResponse:
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            raw_payload = json.loads(raw_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=WebhookResponse(
                    status="error",
                    message="invalid json payload",
                    error=ErrorKind.validation_error.value,
                ).model_dump(mode="json"),
            )

        webhook_type = (
            raw_payload.get("webhook_type") if isinstance(raw_payload, dict) else None
        )
        logger.info(
            "booking_webhook_received webhook_type=%s ip=%s",
            webhook_type or "unknown",
            request.client.host if request.client else None,
        )
        result = process_booking_webhook(store=get_store(request), raw_payload=raw_payload)
        return webhook_response(result, settings)

    @router.get("/webhooks/booking/health")
    def booking_webhook_health() -> dict[str, str]:
        return {
            "status": "ok",
            "message": "booking webhook endpoint is healthy",
            "timestamp": utc_now().isoformat(),
        }

    return router
