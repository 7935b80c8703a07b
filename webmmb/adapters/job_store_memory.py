"""In-memory job store with optional write-through persistence."""

from __future__ import annotations

import threading
from collections.abc import Iterable

from webmmb.config.logging_config import get_logger
from webmmb.domain.exceptions import DuplicateJobError, NotFoundError, RepositoryError
from webmmb.domain.models import JobRecord, JobStatus
from webmmb.ports.job_store import JobRepositoryPort, JobStorePort

logger = get_logger(__name__)


class InMemoryJobStore(JobStorePort):
    """Flat map of job records.

    The store lock is held only for map operations; record fields are
    guarded by each record's own lock.
    """

    def __init__(self, repository: JobRepositoryPort | None = None) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._lock = threading.Lock()
        self._repository = repository

    def load(self) -> list[JobRecord]:
        """Populate the map from the repository (service start)."""

        if self._repository is None:
            return []

        records = [
            JobRecord.from_snapshot(snapshot) for snapshot in self._repository.load_all()
        ]
        with self._lock:
            for record in records:
                self._jobs[record.job_id] = record
        logger.info("job_store_loaded", job_count=len(records))
        return records

    def insert(self, record: JobRecord) -> None:
        with self._lock:
            if record.job_id in self._jobs:
                raise ValueError(f"Job id {record.job_id} is already stored")
            owner_key = record.owner_key
            for existing in self._jobs.values():
                if existing.owner_key == owner_key and existing.name == record.name:
                    raise DuplicateJobError(record.name)
            self._jobs[record.job_id] = record
        self.save(record)

    def get(self, job_id: str) -> JobRecord:
        record = self.find(job_id)
        if record is None:
            raise NotFoundError(f"Job id {job_id} is unknown")
        return record

    def find(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list(self, statuses: Iterable[JobStatus] | None = None) -> list[JobRecord]:
        with self._lock:
            records = list(self._jobs.values())
        if statuses is not None:
            wanted = frozenset(statuses)
            records = [record for record in records if record.status in wanted]
        return sorted(records, key=lambda record: record.created_at)

    def save(self, record: JobRecord) -> None:
        if self._repository is None:
            return
        try:
            self._repository.upsert(record.to_snapshot())
        except RepositoryError as exc:
            # Memory stays authoritative; the next mutation writes again
            logger.error("job_persist_failed", job_id=record.job_id, error=str(exc))

    def remove(self, job_id: str) -> JobRecord | None:
        with self._lock:
            record = self._jobs.pop(job_id, None)
        if record is not None and self._repository is not None:
            try:
                self._repository.delete(job_id)
            except RepositoryError as exc:
                logger.error("job_delete_failed", job_id=job_id, error=str(exc))
        return record


__all__ = ["InMemoryJobStore"]
