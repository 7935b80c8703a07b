"""Prometheus metrics for the job lifecycle."""

from __future__ import annotations

import threading
from typing import Final

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from webmmb.config.logging_config import get_logger

logger = get_logger(__name__)

JOBS_SUBMITTED_TOTAL: Final[Counter] = Counter(
    "webmmb_jobs_submitted_total",
    "Total number of simulation jobs submitted",
    labelnames=("backend",),
)

JOB_TRANSITIONS_TOTAL: Final[Counter] = Counter(
    "webmmb_job_transitions_total",
    "Job status transitions by target status",
    labelnames=("to_status",),
)

BACKEND_CALL_TIMEOUTS_TOTAL: Final[Counter] = Counter(
    "webmmb_backend_call_timeouts_total",
    "Backend calls that exceeded their time budget",
    labelnames=("operation",),
)

SWEEP_DURATION_SECONDS: Final[Histogram] = Histogram(
    "webmmb_sweep_duration_seconds",
    "Duration of reconciliation sweeps in seconds",
)

ACTIVE_JOBS: Final[Gauge] = Gauge(
    "webmmb_active_jobs",
    "Jobs currently holding a concurrency slot",
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False


def ensure_metrics_exporter(port: int) -> None:
    """Start Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        try:
            start_http_server(port)
        except OSError as exc:
            logger.error(
                "metrics_exporter_start_failed",
                port=port,
                error=str(exc),
            )
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=port)


__all__ = [
    "ACTIVE_JOBS",
    "BACKEND_CALL_TIMEOUTS_TOTAL",
    "JOBS_SUBMITTED_TOTAL",
    "JOB_TRANSITIONS_TOTAL",
    "SWEEP_DURATION_SECONDS",
    "ensure_metrics_exporter",
]
