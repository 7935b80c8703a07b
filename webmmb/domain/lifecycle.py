"""Job lifecycle graph."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Final

from webmmb.domain.exceptions import InvalidTransitionError
from webmmb.domain.models import JobStatus

ALLOWED_TRANSITIONS: Final[Mapping[JobStatus, frozenset[JobStatus]]] = {
    JobStatus.PENDING: frozenset({JobStatus.STARTING, JobStatus.CANCELLED}),
    JobStatus.STARTING: frozenset(
        {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


def ensure_transition(from_status: JobStatus, to_status: JobStatus) -> None:
    """Raise InvalidTransitionError unless the edge exists."""

    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status.value, to_status.value)


__all__ = ["ALLOWED_TRANSITIONS", "can_transition", "ensure_transition"]
