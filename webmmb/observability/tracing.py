"""Correlation ids for HTTP requests and reconciliation sweeps.

A client-supplied id is reused only when it looks like an id; anything else
is replaced, so raw header contents never reach the logs.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Final
from uuid import uuid4

from webmmb.config.logging_config import bind_context, unbind_context

CORRELATION_ID_KEY: Final[str] = "correlation_id"

_ACCEPTED_ID: Final[re.Pattern[str]] = re.compile(r"^[0-9A-Za-z._\-]{1,64}$")


def accepted_correlation_id(candidate: str | None) -> str:
    if candidate and _ACCEPTED_ID.match(candidate):
        return candidate
    return str(uuid4())


@contextmanager
def correlation_scope(existing_id: str | None = None, **context: Any) -> Iterator[str]:
    """Bind a correlation id, plus any extra keys, for the enclosed block."""

    correlation_id = accepted_correlation_id(existing_id)
    bound = {CORRELATION_ID_KEY: correlation_id, **context}
    bind_context(**bound)
    try:
        yield correlation_id
    finally:
        unbind_context(*bound)


__all__ = ["CORRELATION_ID_KEY", "accepted_correlation_id", "correlation_scope"]
