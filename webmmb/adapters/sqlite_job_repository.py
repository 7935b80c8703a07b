"""SQLite persistence for job snapshots.

Each row holds the JSON snapshot of one job; the store writes through on
every mutation so a restarted service can pick its jobs up again.
"""

from __future__ import annotations

import fcntl
import os
import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Final

from pydantic import ValidationError as PydanticValidationError

from webmmb.config.logging_config import get_logger
from webmmb.domain.exceptions import DatabaseInUseError, RepositoryError
from webmmb.domain.models import JobSnapshot
from webmmb.ports.job_store import JobRepositoryPort

logger = get_logger(__name__)

JOBS_TABLE: Final[str] = "jobs"
_BUSY_TIMEOUT_SECONDS: Final[float] = 5.0
_LOCK_SUFFIX: Final[str] = ".lock"


class SQLiteJobRepository(JobRepositoryPort):
    """SQLite-based snapshot storage."""

    def __init__(self, db_path: str) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(self._get_connection()) as conn:
                with conn:
                    yield conn
        except sqlite3.Error as exc:
            raise RepositoryError(f"Job repository failure: {exc}") from exc

    def _create_schema(self) -> None:
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        with self._transaction() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {JOBS_TABLE} (
                    job_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    snapshot TEXT NOT NULL
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{JOBS_TABLE}_status ON {JOBS_TABLE} (status)"
            )

    def upsert(self, snapshot: JobSnapshot) -> None:
        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO {JOBS_TABLE} (job_id, session_id, status, updated_at, snapshot)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                    session_id=excluded.session_id,
                    status=excluded.status,
                    updated_at=excluded.updated_at,
                    snapshot=excluded.snapshot
                """,
                (
                    snapshot.job_id,
                    snapshot.session_id,
                    snapshot.status.value,
                    snapshot.updated_at.isoformat(),
                    snapshot.model_dump_json(),
                ),
            )

    def delete(self, job_id: str) -> None:
        with self._transaction() as conn:
            conn.execute(f"DELETE FROM {JOBS_TABLE} WHERE job_id = ?", (job_id,))

    def load_all(self) -> list[JobSnapshot]:
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT job_id, snapshot FROM {JOBS_TABLE} ORDER BY rowid"
            ).fetchall()

        snapshots = []
        for row in rows:
            try:
                snapshots.append(JobSnapshot.model_validate_json(row["snapshot"]))
            except PydanticValidationError as exc:
                logger.error(
                    "job_snapshot_invalid", job_id=row["job_id"], error=str(exc)
                )
        return snapshots


class DatabaseOwnerLock:
    """Exclusive advisory lock marking the process that owns a job database.

    Restart recovery and scheduling rewrite records, so only one process may
    drive a database at a time. The lock lives in ``<db_path>.lock`` and is
    dropped by the kernel if the owner dies.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self.lock_path = Path(f"{db_path}{_LOCK_SUFFIX}")
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock without waiting.

        Raises:
            DatabaseInUseError: If another process holds it
        """
        if self._fd is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise DatabaseInUseError(self.db_path) from exc

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        logger.info("job_database_claimed", db_path=self.db_path, pid=os.getpid())

    def release(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        logger.info("job_database_released", db_path=self.db_path)


__all__ = ["DatabaseOwnerLock", "SQLiteJobRepository"]
