from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock

from fastapi import Request

from backend.followups.models import SweepSummary

logger = logging.getLogger("followup_engine")

SWEEP_OUTCOMES = ("sent", "failed", "skipped")


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float
    sweeps_total: int


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._sweeps_total = 0
        self._sweep_outcomes: dict[str, int] = {outcome: 0 for outcome in SWEEP_OUTCOMES}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def record_sweep(self, summary: SweepSummary) -> None:
        with self._lock:
            self._sweeps_total += 1
            self._sweep_outcomes["sent"] += summary.sent
            self._sweep_outcomes["failed"] += summary.failed
            self._sweep_outcomes["skipped"] += summary.skipped

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
                sweeps_total=self._sweeps_total,
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            "# HELP followup_engine_requests_total Total HTTP requests",
            "# TYPE followup_engine_requests_total counter",
            f"followup_engine_requests_total {snap.requests_total}",
            "# HELP followup_engine_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE followup_engine_requests_5xx_total counter",
            f"followup_engine_requests_5xx_total {snap.requests_5xx}",
            "# HELP followup_engine_request_avg_latency_ms Average request latency ms",
            "# TYPE followup_engine_request_avg_latency_ms gauge",
            f"followup_engine_request_avg_latency_ms {avg_latency:.2f}",
            "# HELP followup_engine_sweeps_total Completed dispatch sweeps",
            "# TYPE followup_engine_sweeps_total counter",
            f"followup_engine_sweeps_total {snap.sweeps_total}",
            "# HELP followup_engine_sweep_tasks_total Due followups by sweep outcome",
            "# TYPE followup_engine_sweep_tasks_total counter",
        ]
        with self._lock:
            for outcome in SWEEP_OUTCOMES:
                lines.append(
                    f'followup_engine_sweep_tasks_total{{outcome="{outcome}"}} '
                    f"{self._sweep_outcomes[outcome]}"
                )
            for (route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    'followup_engine_route_requests_total'
                    f'{{route="{route}",status="{status_code}"}} {count}'
                )
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=response.status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            path,
            latency_ms,
        )
        raise
