"""Factory and process-wide holder for the execution backend."""

from __future__ import annotations

import threading

from webmmb.adapters.command_line import SimulationCommand
from webmmb.adapters.local_backend import LocalExecutionBackend
from webmmb.adapters.pbs_backend import PbsExecutionBackend
from webmmb.config.logging_config import get_logger
from webmmb.config.settings import Settings
from webmmb.ports.execution_backend import ExecutionBackendPort

logger = get_logger(__name__)

_BACKEND: ExecutionBackendPort | None = None
_BACKEND_LOCK = threading.Lock()


class BackendNotInitializedError(RuntimeError):
    """Raised when the backend is used before initialize_backend()."""


def create_execution_backend(settings: Settings) -> ExecutionBackendPort:
    """Create the backend selected by settings.

    Raises:
        ValueError: If the backend name is not supported
    """
    command = SimulationCommand.from_settings(
        settings.executable_path, settings.executable_args
    )

    if settings.backend == "local":
        logger.info("backend_local_selected", executable=settings.executable_path)
        return LocalExecutionBackend(
            command,
            terminate_timeout_seconds=settings.terminate_timeout_seconds,
        )

    if settings.backend == "pbs":
        logger.info(
            "backend_pbs_selected",
            executable=settings.executable_path,
            qsub=settings.pbs_qsub_command,
        )
        return PbsExecutionBackend(
            command,
            qsub_command=settings.pbs_qsub_command,
            qstat_command=settings.pbs_qstat_command,
            qdel_command=settings.pbs_qdel_command,
        )

    raise ValueError(
        f"Unsupported backend: {settings.backend}. Must be 'local' or 'pbs'"
    )


def initialize_backend(settings: Settings) -> ExecutionBackendPort:
    """Select the backend once for the lifetime of the process."""

    global _BACKEND
    with _BACKEND_LOCK:
        if _BACKEND is not None:
            raise RuntimeError(
                "Attempted to initialize the execution backend after it has been already initialized"
            )
        _BACKEND = create_execution_backend(settings)
        return _BACKEND


def get_backend() -> ExecutionBackendPort:
    if _BACKEND is None:
        raise BackendNotInitializedError(
            "Execution backend was accessed before it was initialized"
        )
    return _BACKEND


def reset_backend() -> None:
    """Forget the process-wide backend (testing helper)."""

    global _BACKEND
    with _BACKEND_LOCK:
        _BACKEND = None


__all__ = [
    "BackendNotInitializedError",
    "create_execution_backend",
    "get_backend",
    "initialize_backend",
    "reset_backend",
]
