"""structlog setup for the job service.

Every entry carries ``app`` and ``pid``: the API server and the standalone
reconciler may log to the same sink, and job events must be attributable to
the process that owns the job database. Console output for development,
JSON for deployments.
"""

import logging
import os
import sys
from typing import Any, Final

import structlog
from structlog.types import EventDict, Processor

APP_NAME: Final[str] = "webmmb"

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS: Final[tuple[str, ...]] = ("httpx", "uvicorn.access", "multipart")


def add_process_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict["app"] = APP_NAME
    event_dict["pid"] = os.getpid()
    return event_dict


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog on top of the stdlib root logger.

    Args:
        log_level: Level name; unknown names fall back to INFO
        json_logs: Render JSON lines instead of the colored console format
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_process_context,
    ]

    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: Any) -> None:
    """Attach keys to every entry logged from the current context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
