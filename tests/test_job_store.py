from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from pytest_mock import MockerFixture

from webmmb.adapters.job_store_memory import InMemoryJobStore
from webmmb.adapters.sqlite_job_repository import DatabaseOwnerLock, SQLiteJobRepository
from webmmb.domain.exceptions import (
    DatabaseInUseError,
    DuplicateJobError,
    NotFoundError,
    RepositoryError,
)
from webmmb.domain.models import (
    BackendKind,
    ExecutionHandle,
    JobRecord,
    JobStatus,
    JobSummary,
)

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _record(
    job_id: str,
    name: str,
    *,
    session_id: str = "s1",
    principal: str | None = None,
    minutes: int = 0,
    status: JobStatus = JobStatus.PENDING,
) -> JobRecord:
    created = BASE_TIME + timedelta(minutes=minutes)
    return JobRecord(
        job_id=job_id,
        session_id=session_id,
        principal=principal,
        name=name,
        parameters="timesteps 1\n",
        backend=BackendKind.LOCAL,
        status=status,
        created_at=created,
        updated_at=created,
    )


def test_insert_rejects_duplicate_name_per_owner() -> None:
    store = InMemoryJobStore()
    store.insert(_record("a", "fold"))

    with pytest.raises(DuplicateJobError):
        store.insert(_record("b", "fold"))
    store.insert(_record("c", "fold", session_id="s2"))

    store.insert(_record("d", "dock", session_id="s3", principal="alice"))
    with pytest.raises(DuplicateJobError):
        store.insert(_record("e", "dock", session_id="s4", principal="alice"))


def test_insert_rejects_reused_id() -> None:
    store = InMemoryJobStore()
    store.insert(_record("a", "one"))

    with pytest.raises(ValueError):
        store.insert(_record("a", "two"))


def test_lookup_listing_and_removal() -> None:
    store = InMemoryJobStore()
    late = _record("late", "late", minutes=5, status=JobStatus.RUNNING)
    early = _record("early", "early", minutes=1)
    store.insert(late)
    store.insert(early)

    assert store.get("late") is late
    assert store.find("missing") is None
    with pytest.raises(NotFoundError):
        store.get("missing")
    assert store.list() == [early, late]
    assert store.list([JobStatus.RUNNING]) == [late]

    assert store.remove("late") is late
    assert store.remove("late") is None
    assert store.list() == [early]


def test_store_writes_through_to_repository(mocker: MockerFixture) -> None:
    repository = mocker.Mock()
    store = InMemoryJobStore(repository)
    record = _record("a", "one")

    store.insert(record)
    record.status = JobStatus.STARTING
    store.save(record)
    store.remove("a")

    assert repository.upsert.call_count == 2
    assert repository.upsert.call_args.args[0].status is JobStatus.STARTING
    repository.delete.assert_called_once_with("a")


def test_repository_failures_do_not_break_the_store(mocker: MockerFixture) -> None:
    repository = mocker.Mock()
    repository.upsert.side_effect = RepositoryError("disk full")
    store = InMemoryJobStore(repository)

    store.insert(_record("a", "one"))

    assert store.get("a").name == "one"


def test_sqlite_repository_round_trip(tmp_path: Path) -> None:
    repository = SQLiteJobRepository(str(tmp_path / "db" / "jobs.db"))
    record = _record("a", "one", principal="alice", status=JobStatus.COMPLETED)
    record.workspace_path = tmp_path / "jobs" / "a"
    record.handle = ExecutionHandle(backend=BackendKind.LOCAL, reference="4242")
    record.finished_at = BASE_TIME + timedelta(hours=1)
    record.summary = JobSummary(exit_code=0, artifacts=["last.pdb"])

    repository.upsert(record.to_snapshot())
    record.summary = JobSummary(exit_code=0, artifacts=["last.pdb", "trajectory.1.pdb"])
    repository.upsert(record.to_snapshot())
    repository.upsert(_record("b", "two").to_snapshot())

    store = InMemoryJobStore(repository)
    loaded = {item.job_id: item for item in store.load()}

    restored = loaded["a"]
    assert restored.principal == "alice"
    assert restored.status is JobStatus.COMPLETED
    assert restored.workspace_path == tmp_path / "jobs" / "a"
    assert restored.handle == record.handle
    assert restored.summary == record.summary
    assert restored.finished_at == record.finished_at
    assert store.get("b").status is JobStatus.PENDING

    repository.delete("a")
    assert [snapshot.job_id for snapshot in repository.load_all()] == ["b"]


def test_sqlite_repository_skips_corrupt_rows(tmp_path: Path) -> None:
    db_path = tmp_path / "jobs.db"
    repository = SQLiteJobRepository(str(db_path))
    repository.upsert(_record("a", "one").to_snapshot())

    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "INSERT INTO jobs (job_id, session_id, status, updated_at, snapshot) "
            "VALUES ('bad', 's1', 'pending', '', '{\"job_id\": \"bad\"}')"
        )
    conn.close()

    assert [snapshot.job_id for snapshot in repository.load_all()] == ["a"]


def test_sqlite_repository_errors_are_wrapped(tmp_path: Path) -> None:
    (tmp_path / "jobs.db").mkdir()

    with pytest.raises(RepositoryError):
        SQLiteJobRepository(str(tmp_path / "jobs.db"))


def test_database_owner_lock_is_exclusive(tmp_path: Path) -> None:
    db_path = str(tmp_path / "state" / "jobs.db")
    owner = DatabaseOwnerLock(db_path)
    contender = DatabaseOwnerLock(db_path)

    owner.acquire()
    assert owner.held
    assert owner.lock_path.read_text().strip().isdigit()
    with pytest.raises(DatabaseInUseError):
        contender.acquire()
    assert not contender.held

    owner.release()
    contender.acquire()
    assert contender.held
    contender.release()
    contender.release()
