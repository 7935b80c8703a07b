"""Background reconciliation worker.

Runs the lifecycle sweep at a fixed interval, independently of request
handling, until shutdown is requested.
"""

from __future__ import annotations

import threading
from typing import Final, Protocol

from webmmb.config.logging_config import get_logger
from webmmb.observability.tracing import correlation_scope
from webmmb.use_cases.job_controller import SweepResult

logger = get_logger(__name__)

_MIN_INTERVAL_SECONDS: Final[float] = 0.1
_JOIN_TIMEOUT_SECONDS: Final[float] = 10.0


class Sweeper(Protocol):
    def sweep(self) -> SweepResult: ...


class ReconcilerWorker:
    """Drives ``sweep()`` on a daemon thread."""

    def __init__(
        self,
        sweeper: Sweeper,
        *,
        interval_seconds: float,
        stop_event: threading.Event | None = None,
    ) -> None:
        if interval_seconds <= 0:
            msg = "interval_seconds must be positive"
            raise ValueError(msg)

        self._sweeper = sweeper
        self._interval = max(_MIN_INTERVAL_SECONDS, interval_seconds)
        self._stop_event = stop_event or threading.Event()
        self._thread: threading.Thread | None = None
        self.iterations = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> SweepResult:
        """Execute a single sweep under its own correlation id."""

        self.iterations += 1
        with correlation_scope(sweep=self.iterations):
            result = self._sweeper.sweep()
        if result.completed or result.failed or result.started or result.reclaimed:
            logger.info(
                "reconciler_sweep_changed_jobs",
                iteration=self.iterations,
                completed=result.completed,
                failed=result.failed,
                started=result.started,
                reclaimed=result.reclaimed,
            )
        return result

    def run_forever(self) -> None:
        logger.info("reconciler_started", interval=self._interval)
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                logger.exception("reconciler_iteration_failed", iteration=self.iterations)
            self._stop_event.wait(self._interval)
        logger.info("reconciler_stopped", iterations=self.iterations)

    def start(self) -> None:
        if self.is_running:
            raise RuntimeError("Reconciler is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever, name="webmmb-reconciler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = _JOIN_TIMEOUT_SECONDS) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


__all__ = ["ReconcilerWorker", "Sweeper"]
