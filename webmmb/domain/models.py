"""Domain models for the WebMMB job service.

Value objects use Pydantic v2 for validation and serialization; the mutable
job record is a dataclass guarded by its own lock.
"""

from __future__ import annotations

import json
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, field_validator

from webmmb.domain.exceptions import ResourceError

MAX_JOB_NAME_LENGTH: Final[int] = 128

COMMANDS_FILE_NAME: Final[str] = "commands.txt"
PARAMETERS_FILE_NAME: Final[str] = "parameters.csv"
PROGRESS_FILE_NAME: Final[str] = "progress.json"
DIAGNOSTICS_FILE_NAME: Final[str] = "doutput.txt"
STDOUT_FILE_NAME: Final[str] = "job_stdout.txt"
STDERR_FILE_NAME: Final[str] = "job_stderr.txt"
STARTER_FILE_NAME: Final[str] = "starter.sh"
TRAJECTORY_FILE_PREFIX: Final[str] = "trajectory"

BOOKKEEPING_FILE_NAMES: Final[frozenset[str]] = frozenset(
    {
        COMMANDS_FILE_NAME,
        PARAMETERS_FILE_NAME,
        PROGRESS_FILE_NAME,
        STARTER_FILE_NAME,
    }
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class JobStatus(StrEnum):
    """Lifecycle states of a job."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def holds_slot(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES: Final[frozenset[JobStatus]] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)
ACTIVE_STATUSES: Final[frozenset[JobStatus]] = frozenset(
    {JobStatus.STARTING, JobStatus.RUNNING}
)


class BackendKind(StrEnum):
    """Execution backend flavours."""

    LOCAL = "local"
    PBS = "pbs"


class PollState(StrEnum):
    """Four-way result of a backend poll."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"


class PollResult(BaseModel):
    """Outcome of a single non-blocking status query."""

    model_config = ConfigDict(frozen=True)

    state: PollState
    exit_code: int | None = None
    signal: int | None = None
    detail: str | None = None
    vanished: bool = Field(
        default=False,
        description="Unknown because the process/queue entry is gone without a terminal report",
    )

    @classmethod
    def running(cls) -> PollResult:
        return cls(state=PollState.RUNNING)

    @classmethod
    def succeeded(cls, exit_code: int = 0) -> PollResult:
        return cls(state=PollState.SUCCEEDED, exit_code=exit_code)

    @classmethod
    def failed(
        cls,
        exit_code: int | None = None,
        *,
        signal: int | None = None,
        detail: str | None = None,
    ) -> PollResult:
        return cls(
            state=PollState.FAILED, exit_code=exit_code, signal=signal, detail=detail
        )

    @classmethod
    def unknown(cls, detail: str | None = None, *, vanished: bool = False) -> PollResult:
        return cls(state=PollState.UNKNOWN, detail=detail, vanished=vanished)

    @property
    def is_terminal(self) -> bool:
        return self.state in (PollState.SUCCEEDED, PollState.FAILED)

    def failure_cause(self) -> str:
        """Human-readable reason for a failed poll."""

        if self.detail:
            return self.detail
        if self.signal is not None:
            return f"Simulation terminated by signal {self.signal}"
        if self.exit_code is not None:
            return f"Simulation exited with code {self.exit_code}"
        return "Simulation failed"


class ExecutionHandle(BaseModel):
    """Backend-specific reference to a launched unit of work."""

    model_config = ConfigDict(frozen=True)

    backend: BackendKind
    reference: str = Field(..., min_length=1, description="Process id or queue job id")


class JobSubmission(BaseModel):
    """Validated submit request."""

    name: str
    parameters: str | dict[str, Any] | list[Any]

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Job must have a name")
        if len(value) > MAX_JOB_NAME_LENGTH:
            raise ValueError(f"Job name longer than {MAX_JOB_NAME_LENGTH} characters")
        return value

    def parameters_text(self) -> str:
        """Render parameters as the content of the commands file."""

        if isinstance(self.parameters, str):
            return self.parameters
        return json.dumps(self.parameters, indent=2, ensure_ascii=False)


class JobProgress(BaseModel):
    """Progress as reported by the simulation program."""

    state: str
    step: int = 0
    total_steps: int = 0


class JobSummary(BaseModel):
    """Exit and result metadata recorded when a job ends."""

    exit_code: int | None = None
    signal: int | None = None
    artifacts: list[str] = Field(default_factory=list)
    error: str | None = None


class JobView(BaseModel):
    """Client-facing snapshot of a job."""

    job_id: str
    name: str
    status: JobStatus
    backend: BackendKind
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress: JobProgress | None = None
    stages: list[int] = Field(default_factory=list)
    summary: JobSummary | None = None


class JobSnapshot(BaseModel):
    """Persisted form of a job record."""

    job_id: str
    session_id: str
    principal: str | None = None
    name: str
    parameters: str
    backend: BackendKind
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    workspace_path: str | None = None
    handle: ExecutionHandle | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    results_fetched_at: datetime | None = None
    vanished_since: datetime | None = None
    summary: JobSummary | None = None


@dataclass(frozen=True, slots=True)
class Workspace:
    """Directory owned by exactly one job."""

    job_id: str
    path: Path

    @property
    def commands_path(self) -> Path:
        return self.path / COMMANDS_FILE_NAME

    @property
    def parameters_path(self) -> Path:
        return self.path / PARAMETERS_FILE_NAME

    @property
    def progress_path(self) -> Path:
        return self.path / PROGRESS_FILE_NAME

    @property
    def diagnostics_path(self) -> Path:
        return self.path / DIAGNOSTICS_FILE_NAME

    @property
    def stdout_path(self) -> Path:
        return self.path / STDOUT_FILE_NAME

    @property
    def stderr_path(self) -> Path:
        return self.path / STDERR_FILE_NAME

    @property
    def starter_path(self) -> Path:
        return self.path / STARTER_FILE_NAME


@dataclass(eq=False)
class JobRecord:
    """Authoritative mutable state of one job.

    All mutation happens while holding ``lock``; the store's own lock only
    guards the id map.
    """

    job_id: str
    session_id: str
    name: str
    parameters: str
    backend: BackendKind
    principal: str | None = None
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    workspace_path: Path | None = None
    handle: ExecutionHandle | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    results_fetched_at: datetime | None = None
    vanished_since: datetime | None = None
    summary: JobSummary | None = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    start_future: Future[ExecutionHandle] | None = field(default=None, repr=False)
    poll_future: Future[PollResult] | None = field(default=None, repr=False)

    @property
    def owner_key(self) -> str:
        """Identity that job names must be unique within."""

        return self.principal or self.session_id

    def assign_workspace(self, path: Path) -> None:
        """Attach the workspace; the path never changes afterwards."""

        if self.workspace_path is not None and self.workspace_path != path:
            raise ResourceError(
                f"Job {self.job_id} already owns workspace {self.workspace_path}"
            )
        self.workspace_path = path

    @property
    def workspace(self) -> Workspace | None:
        if self.workspace_path is None:
            return None
        return Workspace(job_id=self.job_id, path=self.workspace_path)

    def to_snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job_id=self.job_id,
            session_id=self.session_id,
            principal=self.principal,
            name=self.name,
            parameters=self.parameters,
            backend=self.backend,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
            workspace_path=str(self.workspace_path) if self.workspace_path else None,
            handle=self.handle,
            started_at=self.started_at,
            finished_at=self.finished_at,
            results_fetched_at=self.results_fetched_at,
            vanished_since=self.vanished_since,
            summary=self.summary,
        )

    @classmethod
    def from_snapshot(cls, snapshot: JobSnapshot) -> JobRecord:
        return cls(
            job_id=snapshot.job_id,
            session_id=snapshot.session_id,
            principal=snapshot.principal,
            name=snapshot.name,
            parameters=snapshot.parameters,
            backend=snapshot.backend,
            status=snapshot.status,
            created_at=snapshot.created_at,
            updated_at=snapshot.updated_at,
            workspace_path=Path(snapshot.workspace_path)
            if snapshot.workspace_path
            else None,
            handle=snapshot.handle,
            started_at=snapshot.started_at,
            finished_at=snapshot.finished_at,
            results_fetched_at=snapshot.results_fetched_at,
            vanished_since=snapshot.vanished_since,
            summary=snapshot.summary,
        )

    def view(
        self, *, progress: JobProgress | None = None, stages: list[int] | None = None
    ) -> JobView:
        return JobView(
            job_id=self.job_id,
            name=self.name,
            status=self.status,
            backend=self.backend,
            created_at=self.created_at,
            updated_at=self.updated_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            progress=progress,
            stages=stages or [],
            summary=self.summary,
        )


class SessionInfo(BaseModel):
    """Public view of a session."""

    session_id: str
    principal: str
    created_at: datetime
    expires_at: datetime
    job_ids: list[str] = Field(default_factory=list)


__all__ = [
    "ACTIVE_STATUSES",
    "BOOKKEEPING_FILE_NAMES",
    "BackendKind",
    "ExecutionHandle",
    "JobProgress",
    "JobRecord",
    "JobSnapshot",
    "JobStatus",
    "JobSubmission",
    "JobSummary",
    "JobView",
    "PollResult",
    "PollState",
    "SessionInfo",
    "TERMINAL_STATUSES",
    "Workspace",
    "utc_now",
]
