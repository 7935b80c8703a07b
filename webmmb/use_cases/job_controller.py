"""Job lifecycle controller.

Owns the state machine ``Pending -> Starting -> Running -> Completed|Failed``
(with ``Cancelled`` reachable from every non-terminal state), the global
concurrency limit and the reconciliation sweep that folds backend-reported
status into the job records.

Locking: each record is mutated only under its own lock, the store lock is
held for map operations only, and the slot counter has its own short lock.
Backend calls never run under a record lock and are bounded by
``backend_call_timeout_seconds``; a call that overruns is treated as
``Unknown`` for that sweep.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from webmmb.adapters.workspace_manager import WorkspaceManager
from webmmb.config.logging_config import get_logger
from webmmb.config.settings import Settings
from webmmb.domain.exceptions import (
    BackendUnavailableError,
    JobStateError,
    ResourceError,
)
from webmmb.domain.lifecycle import ensure_transition
from webmmb.domain.models import (
    BackendKind,
    ExecutionHandle,
    JobRecord,
    JobStatus,
    JobSubmission,
    JobSummary,
    PollResult,
    PollState,
    Workspace,
    utc_now,
)
from webmmb.observability.metrics import (
    ACTIVE_JOBS,
    BACKEND_CALL_TIMEOUTS_TOTAL,
    JOB_TRANSITIONS_TOTAL,
    JOBS_SUBMITTED_TOTAL,
    SWEEP_DURATION_SECONDS,
)
from webmmb.ports.execution_backend import ExecutionBackendPort
from webmmb.ports.job_store import JobStorePort

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ControllerConfig:
    """Tunables of the lifecycle controller."""

    max_active_jobs: int = 4
    backend_call_timeout_seconds: float = 5.0
    backend_workers: int = 8
    vanished_grace_seconds: float = 300.0
    retention_seconds: float = 7 * 24 * 3600.0
    fetched_retention_seconds: float = 3600.0
    parameters_template_path: str | None = None

    def __post_init__(self) -> None:
        if self.max_active_jobs <= 0:
            msg = "max_active_jobs must be positive"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls, settings: Settings) -> ControllerConfig:
        return cls(
            max_active_jobs=settings.max_active_jobs,
            backend_call_timeout_seconds=settings.backend_call_timeout_seconds,
            backend_workers=settings.backend_workers,
            vanished_grace_seconds=settings.vanished_grace_seconds,
            retention_seconds=settings.retention_seconds,
            fetched_retention_seconds=settings.fetched_retention_seconds,
            parameters_template_path=settings.parameters_template_path,
        )


@dataclass(slots=True)
class SweepResult:
    """Summary of one reconciliation sweep."""

    polled: int = 0
    completed: int = 0
    failed: int = 0
    unknown: int = 0
    started: int = 0
    reclaimed: int = 0


class JobLifecycleController:
    """Drives jobs through their lifecycle on top of an execution backend."""

    def __init__(
        self,
        *,
        store: JobStorePort,
        backend: ExecutionBackendPort,
        workspaces: WorkspaceManager,
        config: ControllerConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        on_reclaim: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._backend = backend
        self._workspaces = workspaces
        self._config = config or ControllerConfig()
        self._clock = clock
        self._on_reclaim = on_reclaim
        self._call_timeout = self._config.backend_call_timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.backend_workers,
            thread_name_prefix="webmmb-backend",
        )
        self._slot_lock = threading.Lock()
        self._active = 0

    @property
    def backend(self) -> ExecutionBackendPort:
        return self._backend

    @property
    def workspaces(self) -> WorkspaceManager:
        return self._workspaces

    @property
    def active_count(self) -> int:
        with self._slot_lock:
            return self._active

    def set_reclaim_listener(self, listener: Callable[[str], None] | None) -> None:
        self._on_reclaim = listener

    # Requests -----------------------------------------------------------

    def create_job(
        self,
        session_id: str,
        submission: JobSubmission,
        *,
        principal: str | None = None,
    ) -> JobRecord:
        """Register a new Pending job; scheduling happens separately."""

        now = self._clock()
        record = JobRecord(
            job_id=str(uuid4()),
            session_id=session_id,
            principal=principal,
            name=submission.name,
            parameters=submission.parameters_text(),
            backend=self._backend.kind,
            created_at=now,
            updated_at=now,
        )
        self._store.insert(record)
        JOBS_SUBMITTED_TOTAL.labels(backend=self._backend.kind.value).inc()
        logger.info(
            "job_submitted",
            job_id=record.job_id,
            session_id=session_id,
            job_name=record.name,
            backend=self._backend.kind.value,
        )
        return record

    def discard(self, job_id: str) -> None:
        """Drop a job that never left Pending (submission rollback)."""

        record = self._store.find(job_id)
        if record is None:
            return
        with record.lock:
            if record.status is not JobStatus.PENDING:
                raise JobStateError(f"Job {job_id} already left the queue")
            self._store.remove(job_id)
        logger.info("job_discarded", job_id=job_id)

    def cancel(self, job_id: str) -> JobRecord:
        """Cancel a job; a no-op for jobs that already ended.

        The record is marked Cancelled at once. Physical termination runs in
        the background, so workspace files may still change for a while.
        """
        record = self._store.get(job_id)
        handle: ExecutionHandle | None = None
        with record.lock:
            if record.status.is_terminal:
                return record
            if record.status is JobStatus.RUNNING:
                handle = record.handle
            record.finished_at = self._clock()
            self._transition(record, JobStatus.CANCELLED)
            record.summary = JobSummary(artifacts=self._list_artifacts(record))
            self._store.save(record)

        if handle is not None:
            self._dispatch_cancel(record.job_id, handle)
        self.schedule_pending()
        return record

    def delete(self, job_id: str) -> None:
        """Reclaim a terminal job right away."""

        record = self._store.get(job_id)
        with record.lock:
            if not record.status.is_terminal:
                raise JobStateError("Job is still active; cancel it first")
            if record.start_future is not None:
                raise JobStateError("Job is still being torn down; try again shortly")
        self._reclaim(record)

    def mark_results_fetched(self, record: JobRecord) -> None:
        with record.lock:
            if record.results_fetched_at is None:
                record.results_fetched_at = self._clock()
                self._store.save(record)

    # Scheduling ---------------------------------------------------------

    def schedule_pending(self) -> int:
        """Start Pending jobs, oldest first, while slots are free.

        All start calls of one pass are issued together and share a single
        wait of ``backend_call_timeout_seconds``.
        """
        launches: list[tuple[JobRecord, Future[ExecutionHandle]]] = []
        for record in self._store.list([JobStatus.PENDING]):
            if not self._try_reserve_slot():
                break

            with record.lock:
                if record.status is not JobStatus.PENDING:
                    self._release_slot()
                    continue
                self._transition(record, JobStatus.STARTING)
                prepared = self._prepare_workspace(record)
                self._store.save(record)

            if prepared is None:
                continue
            workspace, parameters_file = prepared
            future = self._launch(record, workspace, parameters_file)
            if future is not None:
                launches.append((record, future))

        if not launches:
            return 0
        wait([future for _, future in launches], timeout=self._call_timeout)

        for record, future in launches:
            if future.done():
                self._complete_start(record, future)
                continue
            BACKEND_CALL_TIMEOUTS_TOTAL.labels(operation="start").inc()
            logger.warning(
                "backend_start_slow",
                job_id=record.job_id,
                timeout_seconds=self._call_timeout,
            )
        return len(launches)

    def _prepare_workspace(self, record: JobRecord) -> tuple[Workspace, Path] | None:
        try:
            workspace = self._workspaces.allocate(record.job_id)
            record.assign_workspace(workspace.path)
            parameters_file = self._workspaces.prepare(
                workspace,
                record.parameters,
                self._config.parameters_template_path,
            )
        except ResourceError as exc:
            logger.error("workspace_allocation_failed", job_id=record.job_id, error=str(exc))
            self._fail(record, str(exc))
            return None
        return workspace, parameters_file

    def _launch(
        self, record: JobRecord, workspace: Workspace, parameters_file: Path
    ) -> Future[ExecutionHandle] | None:
        with record.lock:
            if record.status is not JobStatus.STARTING:
                logger.info(
                    "job_start_skipped",
                    job_id=record.job_id,
                    status=record.status.value,
                )
                return None
            future = self._executor.submit(self._backend.start, workspace, parameters_file)
            record.start_future = future
        future.add_done_callback(lambda done: self._complete_start(record, done))
        return future

    def _complete_start(self, record: JobRecord, future: Future[ExecutionHandle]) -> None:
        late_handle: ExecutionHandle | None = None
        with record.lock:
            if record.start_future is not future:
                return
            record.start_future = None

            if future.cancelled():
                if record.status is JobStatus.STARTING:
                    self._fail(record, "Start was aborted during shutdown")
                    self._store.save(record)
                return

            error = future.exception()
            if record.status is JobStatus.CANCELLED:
                if error is None:
                    late_handle = future.result()
                    record.handle = late_handle
                    self._store.save(record)
            elif record.status is not JobStatus.STARTING:
                logger.error(
                    "job_start_completed_in_unexpected_state",
                    job_id=record.job_id,
                    status=record.status.value,
                )
            elif error is None:
                record.handle = future.result()
                record.started_at = self._clock()
                self._transition(record, JobStatus.RUNNING)
                self._store.save(record)
            else:
                if isinstance(error, BackendUnavailableError):
                    cause = str(error)
                else:
                    logger.error(
                        "backend_start_crashed",
                        job_id=record.job_id,
                        error=repr(error),
                    )
                    cause = f"Failed to start simulation: {error}"
                self._fail(record, cause)
                self._store.save(record)

        if late_handle is not None:
            logger.info("job_cancelled_during_start", job_id=record.job_id)
            self._dispatch_cancel(record.job_id, late_handle)

    def _dispatch_cancel(self, job_id: str, handle: ExecutionHandle) -> None:
        future = self._executor.submit(self._backend.cancel, handle)

        def _report(done: Future[None]) -> None:
            if done.cancelled():
                return
            error = done.exception()
            if error is not None:
                logger.warning(
                    "backend_cancel_failed",
                    job_id=job_id,
                    reference=handle.reference,
                    error=str(error),
                )

        future.add_done_callback(_report)

    # Reconciliation -----------------------------------------------------

    def sweep(self) -> SweepResult:
        """Poll active jobs, reclaim expired ones and fill free slots."""

        result = SweepResult()
        with SWEEP_DURATION_SECONDS.time():
            self._reconcile(result)
            result.reclaimed = len(self.reap_expired())
            result.started = self.schedule_pending()

        ACTIVE_JOBS.set(self.active_count)
        logger.debug(
            "sweep_completed",
            polled=result.polled,
            completed=result.completed,
            failed=result.failed,
            unknown=result.unknown,
            started=result.started,
            reclaimed=result.reclaimed,
        )
        return result

    def _reconcile(self, result: SweepResult) -> None:
        polls: list[tuple[JobRecord, Future[PollResult]]] = []
        for record in self._store.list([JobStatus.RUNNING]):
            with record.lock:
                if record.status is not JobStatus.RUNNING or record.handle is None:
                    continue
                future = record.poll_future
                if future is None or future.done():
                    future = self._executor.submit(self._backend.poll, record.handle)
                    record.poll_future = future
            polls.append((record, future))

        if not polls:
            return
        wait([future for _, future in polls], timeout=self._call_timeout)

        for record, future in polls:
            result.polled += 1
            poll_result = self._collect_poll(record, future)
            outcome = self._apply_poll(record, poll_result)
            if outcome is JobStatus.COMPLETED:
                result.completed += 1
            elif outcome is JobStatus.FAILED:
                result.failed += 1
            elif poll_result.state is PollState.UNKNOWN:
                result.unknown += 1

    def _collect_poll(self, record: JobRecord, future: Future[PollResult]) -> PollResult:
        if not future.done():
            BACKEND_CALL_TIMEOUTS_TOTAL.labels(operation="poll").inc()
            logger.warning(
                "backend_poll_timeout",
                job_id=record.job_id,
                timeout_seconds=self._call_timeout,
            )
            return PollResult.unknown(
                f"Status query exceeded {self._call_timeout:g}s"
            )

        with record.lock:
            if record.poll_future is future:
                record.poll_future = None
        try:
            return future.result()
        except Exception as exc:  # noqa: BLE001
            logger.warning("backend_poll_failed", job_id=record.job_id, error=str(exc))
            return PollResult.unknown(f"Status query failed: {exc}")

    def _apply_poll(self, record: JobRecord, poll: PollResult) -> JobStatus | None:
        now = self._clock()
        with record.lock:
            if record.status is not JobStatus.RUNNING:
                # Cancellation is authoritative over late poll results
                return None

            record.updated_at = now
            if poll.state is PollState.RUNNING:
                record.vanished_since = None
                self._store.save(record)
                return JobStatus.RUNNING

            if poll.state is PollState.UNKNOWN:
                if poll.vanished:
                    if record.vanished_since is None:
                        record.vanished_since = now
                    if now - record.vanished_since >= timedelta(
                        seconds=self._config.vanished_grace_seconds
                    ):
                        cause = "Job disappeared without reporting a result"
                        if poll.detail:
                            cause = f"{cause}: {poll.detail}"
                        self._fail(record, cause)
                        self._store.save(record)
                        return JobStatus.FAILED
                logger.debug(
                    "job_status_unknown",
                    job_id=record.job_id,
                    detail=poll.detail,
                    vanished=poll.vanished,
                )
                self._store.save(record)
                return None

            record.finished_at = now
            record.summary = JobSummary(
                exit_code=poll.exit_code,
                signal=poll.signal,
                artifacts=self._list_artifacts(record),
                error=None if poll.state is PollState.SUCCEEDED else poll.failure_cause(),
            )
            target = (
                JobStatus.COMPLETED
                if poll.state is PollState.SUCCEEDED
                else JobStatus.FAILED
            )
            if target is JobStatus.FAILED:
                logger.error(
                    "job_failed",
                    job_id=record.job_id,
                    error=record.summary.error,
                    exit_code=poll.exit_code,
                )
            self._transition(record, target)
            self._store.save(record)
            return target

    # Retention ----------------------------------------------------------

    def reap_expired(self) -> list[str]:
        """Reclaim terminal jobs whose retention window has passed."""

        now = self._clock()
        retention = timedelta(seconds=self._config.retention_seconds)
        fetched_retention = timedelta(seconds=self._config.fetched_retention_seconds)
        reclaimed = []
        for record in self._store.list(
            [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED]
        ):
            with record.lock:
                if record.start_future is not None:
                    continue
                ended_at = record.finished_at or record.updated_at
                deadline = ended_at + retention
                if record.results_fetched_at is not None:
                    deadline = min(deadline, record.results_fetched_at + fetched_retention)
                if now < deadline:
                    continue
            self._reclaim(record)
            reclaimed.append(record.job_id)
        return reclaimed

    def _reclaim(self, record: JobRecord) -> None:
        if record.workspace_path is not None:
            self._workspaces.release(record.job_id)
        self._store.remove(record.job_id)
        if self._on_reclaim is not None:
            self._on_reclaim(record.job_id)
        logger.info("job_reclaimed", job_id=record.job_id, status=record.status.value)

    # Restart ------------------------------------------------------------

    def recover(self) -> list[JobRecord]:
        """Reconcile records reloaded from persistence with this process.

        Local processes do not survive a restart; jobs that were starting
        have an unknown fate. Both are failed. Batch jobs keep their handles.
        """
        records = self._store.list()
        active = 0
        for record in records:
            with record.lock:
                if record.status is JobStatus.STARTING:
                    self._fail(record, "Service restarted while the job was starting")
                    self._store.save(record)
                elif record.status is JobStatus.RUNNING:
                    handle = record.handle
                    if handle is None or handle.backend is not self._backend.kind:
                        self._fail(record, "Job belongs to a different execution backend")
                        self._store.save(record)
                    elif not self._backend_survives_restart():
                        self._fail(record, "Simulation process was lost on service restart")
                        self._store.save(record)
                    else:
                        active += 1

        with self._slot_lock:
            self._active = active
        ACTIVE_JOBS.set(active)
        logger.info("jobs_recovered", job_count=len(records), active=active)
        return records

    def _backend_survives_restart(self) -> bool:
        return self._backend.kind is not BackendKind.LOCAL

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # Internal helpers ---------------------------------------------------

    def _transition(self, record: JobRecord, to_status: JobStatus) -> None:
        """Move a record along a lifecycle edge; caller holds the record lock."""

        from_status = record.status
        ensure_transition(from_status, to_status)
        record.status = to_status
        record.updated_at = self._clock()
        if from_status.holds_slot and not to_status.holds_slot:
            self._release_slot()
        JOB_TRANSITIONS_TOTAL.labels(to_status=to_status.value).inc()
        logger.info(
            "job_transition",
            job_id=record.job_id,
            from_status=from_status.value,
            to_status=to_status.value,
        )

    def _fail(self, record: JobRecord, cause: str) -> None:
        record.finished_at = self._clock()
        record.summary = JobSummary(
            artifacts=self._list_artifacts(record),
            error=cause or "Job failed",
        )
        self._transition(record, JobStatus.FAILED)

    def _list_artifacts(self, record: JobRecord) -> list[str]:
        workspace = record.workspace
        if workspace is None:
            return []
        return self._workspaces.enumerate_artifacts(workspace)

    def _try_reserve_slot(self) -> bool:
        with self._slot_lock:
            if self._active >= self._config.max_active_jobs:
                return False
            self._active += 1
            ACTIVE_JOBS.set(self._active)
            return True

    def _release_slot(self) -> None:
        with self._slot_lock:
            self._active = max(0, self._active - 1)
            ACTIVE_JOBS.set(self._active)


__all__ = ["ControllerConfig", "JobLifecycleController", "SweepResult"]
