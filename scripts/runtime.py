from __future__ import annotations

"""Common runtime helpers for service scripts."""

import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass
from types import FrameType
from typing import Protocol

from webmmb.config.logging_config import get_logger, setup_logging
from webmmb.config.settings import Settings

logger = get_logger(__name__)


class ShutdownSignal(Protocol):
    def is_set(self) -> bool: ...

    def wait(self, timeout: float) -> bool: ...


@dataclass
class _ShutdownController:
    """Mutable shutdown state shared across signal handlers and loops."""

    _event: threading.Event

    @property
    def event(self) -> threading.Event:
        return self._event

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def request(self, signum: int, frame: FrameType | None) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("shutdown_signal_received", signal=sig_name)
        self._event.set()


def create_shutdown_controller() -> _ShutdownController:
    return _ShutdownController(threading.Event())


def install_signal_handlers(
    controller: _ShutdownController,
    *,
    on_shutdown: Callable[[], None] | None = None,
) -> None:
    """Register SIGTERM/SIGINT handlers for graceful shutdown."""

    def _handler(signum: int, frame: FrameType | None) -> None:
        controller.request(signum, frame)
        if on_shutdown is not None:
            on_shutdown()

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def initialize_logging(settings: Settings, *, json_logs: bool = False) -> None:
    """Initialize structlog-based logging for scripts."""

    json_logs = json_logs or settings.json_logs
    setup_logging(log_level=settings.log_level, json_logs=json_logs)
    logger.info("logging_initialized", level=settings.log_level, json_logs=json_logs)


def run_scheduler_loop(
    *,
    controller: ShutdownSignal,
    interval_seconds: float,
    run_once: bool,
    action: Callable[[], object],
) -> None:
    """Execute a callback at a fixed interval until shutdown."""

    interval_seconds = max(0.1, interval_seconds)
    logger.info("scheduler_loop_started", interval=interval_seconds, run_once=run_once)
    iteration = 0
    while not controller.is_set():
        iteration += 1
        try:
            action()
        except Exception:  # noqa: BLE001
            logger.exception("scheduler_iteration_failed", iteration=iteration)
            if run_once:
                raise
        if run_once:
            break
        controller.wait(interval_seconds)

    logger.info("scheduler_loop_stopped", iterations=iteration)


__all__ = [
    "ShutdownSignal",
    "create_shutdown_controller",
    "initialize_logging",
    "install_signal_handlers",
    "run_scheduler_loop",
]
