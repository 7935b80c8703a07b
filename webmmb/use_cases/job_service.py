"""Session-scoped job operations.

Every operation that names a job first resolves the caller's session and
checks ownership in the session index; only then is the job record read or
mutated.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from webmmb.adapters.backend_factory import get_backend
from webmmb.adapters.job_store_memory import InMemoryJobStore
from webmmb.adapters.sqlite_job_repository import DatabaseOwnerLock, SQLiteJobRepository
from webmmb.adapters.workspace_manager import WorkspaceManager
from webmmb.config.logging_config import get_logger
from webmmb.config.settings import Settings
from webmmb.domain.exceptions import (
    JobStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from webmmb.domain.models import JobRecord, JobSubmission, JobView, SessionInfo, utc_now
from webmmb.ports.execution_backend import ExecutionBackendPort
from webmmb.use_cases.job_controller import (
    ControllerConfig,
    JobLifecycleController,
    SweepResult,
)
from webmmb.use_cases.session_index import SessionJobIndex

logger = get_logger(__name__)


class JobService:
    """Facade used by the HTTP layer and the runner scripts."""

    def __init__(
        self,
        *,
        store: InMemoryJobStore,
        controller: JobLifecycleController,
        index: SessionJobIndex,
        owner_lock: DatabaseOwnerLock | None = None,
    ) -> None:
        self._store = store
        self._owner_lock = owner_lock
        self._controller = controller
        self._index = index
        self._workspaces = controller.workspaces
        controller.set_reclaim_listener(index.unbind)

    @property
    def controller(self) -> JobLifecycleController:
        return self._controller

    # Sessions -----------------------------------------------------------

    def open_session(self, principal: str) -> SessionInfo:
        return self._index.open_session(principal)

    def close_session(self, session_id: str) -> None:
        self._index.close_session(session_id)

    # Jobs ---------------------------------------------------------------

    def submit(self, session_id: str, name: str, parameters: Any) -> JobView:
        """Create a job for the session and start it when a slot is free.

        Raises:
            NotFoundError: If the session is unknown
            ValidationError: If name or parameters are invalid
            DuplicateJobError: If the session already owns a job with that name
        """
        session = self._index.require_session(session_id)
        try:
            submission = JobSubmission(name=name, parameters=parameters)
        except PydanticValidationError as exc:
            raise ValidationError(_first_error(exc)) from exc

        record = self._controller.create_job(
            session_id, submission, principal=session.principal
        )
        try:
            self._index.bind(session_id, record.job_id)
        except NotFoundError:
            self._controller.discard(record.job_id)
            raise

        self._controller.schedule_pending()
        return self._view(record)

    def clone(self, session_id: str, job_id: str, name: str) -> JobView:
        """Submit a new job with the parameters of an existing one.

        Raises:
            JobStateError: If the source job is still starting or running
        """
        source = self._authorized(session_id, job_id)
        with source.lock:
            if source.status.holds_slot:
                raise JobStateError("Running jobs cannot be cloned")
            parameters = source.parameters
        view = self.submit(session_id, name, parameters)
        logger.info("job_cloned", job_id=view.job_id, source_job_id=job_id)
        return view

    def commands(self, session_id: str, job_id: str) -> str:
        """Parameters text the job was submitted with."""

        return self._authorized(session_id, job_id).parameters

    def status(self, session_id: str, job_id: str) -> JobView:
        return self._view(self._authorized(session_id, job_id))

    def cancel(self, session_id: str, job_id: str) -> JobView:
        self._authorized(session_id, job_id)
        record = self._controller.cancel(job_id)
        logger.info("job_cancel_requested", job_id=job_id, session_id=session_id)
        return self._view(record)

    def results(self, session_id: str, job_id: str) -> JobView:
        """Return the final view of a terminal job.

        Fetching results shortens the job's retention window.

        Raises:
            JobStateError: If the job has not finished yet
        """
        record = self._authorized(session_id, job_id)
        with record.lock:
            if not record.status.is_terminal:
                raise JobStateError(f"Job {job_id} has not finished yet")
        self._controller.mark_results_fetched(record)
        return self._view(record)

    def list_jobs(self, session_id: str) -> list[JobView]:
        self._index.require_session(session_id)
        records = []
        for job_id in self._index.list(session_id):
            record = self._store.find(job_id)
            if record is not None:
                records.append(record)
        records.sort(key=lambda record: record.created_at, reverse=True)
        return [self._view(record) for record in records]

    def delete(self, session_id: str, job_id: str) -> None:
        self._authorized(session_id, job_id)
        self._controller.delete(job_id)

    def diagnostics(self, session_id: str, job_id: str) -> str:
        workspace = self._authorized(session_id, job_id).workspace
        if workspace is None:
            return ""
        return self._workspaces.read_diagnostics(workspace)

    def artifact_path(self, session_id: str, job_id: str, name: str) -> Path:
        workspace = self._authorized(session_id, job_id).workspace
        if workspace is None:
            raise NotFoundError(f"No artifact named {name}")
        return self._workspaces.resolve_artifact(workspace, name)

    # Background ---------------------------------------------------------

    def sweep(self) -> SweepResult:
        """One reconciliation pass plus session expiry."""

        result = self._controller.sweep()
        self._index.expire_sessions()
        return result

    def recover(self) -> None:
        """Reload persisted jobs and re-park them under their principals."""

        self._store.load()
        records = self._controller.recover()
        for record in records:
            if record.principal is not None:
                self._index.park(record.principal, record.job_id)
        self._controller.schedule_pending()

    def shutdown(self) -> None:
        self._controller.shutdown()
        if self._owner_lock is not None:
            self._owner_lock.release()

    # Helpers ------------------------------------------------------------

    def _authorized(self, session_id: str, job_id: str) -> JobRecord:
        self._index.require_session(session_id)
        if not self._index.authorize(session_id, job_id):
            if self._store.find(job_id) is None:
                raise NotFoundError(f"Job id {job_id} is unknown")
            logger.warning("job_access_denied", job_id=job_id, session_id=session_id)
            raise UnauthorizedError(session_id, job_id)
        return self._store.get(job_id)

    def _view(self, record: JobRecord) -> JobView:
        with record.lock:
            workspace = record.workspace
        if workspace is None:
            return record.view()
        return record.view(
            progress=self._workspaces.read_progress(workspace),
            stages=self._workspaces.available_stages(workspace),
        )


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid job request"
    message = errors[0].get("msg", "Invalid job request")
    return message.removeprefix("Value error, ")


def build_service(
    settings: Settings,
    *,
    backend: ExecutionBackendPort | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> JobService:
    """Wire store, controller and session index from settings.

    The backend defaults to the process-wide one selected by
    ``initialize_backend``. With persistence enabled the job database is
    claimed for this process before any record is recovered.

    Raises:
        DatabaseInUseError: If another process owns the job database
    """
    owner_lock = None
    if settings.persistence_path:
        owner_lock = DatabaseOwnerLock(settings.persistence_path)
        owner_lock.acquire()

    try:
        repository = (
            SQLiteJobRepository(settings.persistence_path)
            if settings.persistence_path
            else None
        )
        store = InMemoryJobStore(repository)
        controller = JobLifecycleController(
            store=store,
            backend=backend or get_backend(),
            workspaces=WorkspaceManager(settings.jobs_root),
            config=ControllerConfig.from_settings(settings),
            clock=clock,
        )
        index = SessionJobIndex(ttl_seconds=settings.session_ttl_seconds, clock=clock)
        service = JobService(
            store=store, controller=controller, index=index, owner_lock=owner_lock
        )
        if repository is not None:
            service.recover()
    except Exception:
        if owner_lock is not None:
            owner_lock.release()
        raise
    return service


__all__ = ["JobService", "build_service"]
