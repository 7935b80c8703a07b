"""Port definitions for job record storage."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from webmmb.domain.models import JobRecord, JobSnapshot, JobStatus


@runtime_checkable
class JobStorePort(Protocol):
    """Flat id -> record map shared by the controller and request handlers."""

    def insert(self, record: JobRecord) -> None:
        """Add a new record.

        Raises:
            DuplicateJobError: If the session already owns a job with that name.
        """

    def get(self, job_id: str) -> JobRecord:
        """Return the record or raise NotFoundError."""

    def find(self, job_id: str) -> JobRecord | None:
        """Return the record or None."""

    def list(self, statuses: Iterable[JobStatus] | None = None) -> list[JobRecord]:
        """Return records, oldest first, optionally filtered by status."""

    def save(self, record: JobRecord) -> None:
        """Persist the current state of a record (caller holds its lock)."""

    def remove(self, job_id: str) -> JobRecord | None:
        """Drop a record from the map and from persistence."""


@runtime_checkable
class JobRepositoryPort(Protocol):
    """Durable storage for job snapshots."""

    def upsert(self, snapshot: JobSnapshot) -> None:
        """Insert or replace a snapshot."""

    def delete(self, job_id: str) -> None:
        """Remove a snapshot."""

    def load_all(self) -> list[JobSnapshot]:
        """Return every stored snapshot."""


__all__ = ["JobRepositoryPort", "JobStorePort"]
