"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from webmmb.adapters import backend_factory
from webmmb.adapters.job_store_memory import InMemoryJobStore
from webmmb.adapters.workspace_manager import WorkspaceManager
from webmmb.config import settings as settings_module
from webmmb.config.settings import Settings
from webmmb.domain.models import (
    BackendKind,
    ExecutionHandle,
    JobRecord,
    JobSubmission,
    PollResult,
    Workspace,
)
from webmmb.use_cases.job_controller import ControllerConfig, JobLifecycleController


class ManualClock:
    """Deterministic clock advanced by the test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeExecutionBackend:
    """Scriptable in-memory execution backend.

    Polls return the scripted results for a job in order and ``Running``
    once the script is exhausted.
    """

    def __init__(self, kind: BackendKind = BackendKind.PBS) -> None:
        self.kind = kind
        self.started: list[str] = []
        self.cancelled: list[ExecutionHandle] = []
        self.polled: list[str] = []
        self.start_error: Exception | None = None
        self.start_gate: threading.Event | None = None
        self.poll_gate: threading.Event | None = None
        self._handles: dict[str, str] = {}
        self._scripts: dict[str, list[PollResult]] = {}
        self._lock = threading.Lock()

    def start(self, workspace: Workspace, parameters_file: Path) -> ExecutionHandle:
        if self.start_gate is not None:
            self.start_gate.wait(5)
        if self.start_error is not None:
            raise self.start_error
        assert parameters_file.is_file()
        with self._lock:
            reference = f"{len(self.started) + 1}.pbs-server"
            self.started.append(workspace.job_id)
            self._handles[workspace.job_id] = reference
        return ExecutionHandle(backend=self.kind, reference=reference)

    def script(self, job_id: str, *results: PollResult) -> None:
        with self._lock:
            reference = self._handles[job_id]
            self._scripts.setdefault(reference, []).extend(results)

    def poll(self, handle: ExecutionHandle) -> PollResult:
        if self.poll_gate is not None:
            self.poll_gate.wait(5)
        with self._lock:
            self.polled.append(handle.reference)
            queue = self._scripts.get(handle.reference)
            if queue:
                return queue.pop(0)
        return PollResult.running()

    def cancel(self, handle: ExecutionHandle) -> None:
        with self._lock:
            self.cancelled.append(handle)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it holds or the timeout elapses."""

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def submit_job(
    controller: JobLifecycleController,
    name: str,
    *,
    session_id: str = "session-1",
    principal: str | None = None,
    parameters: str = "timesteps 10\n",
) -> JobRecord:
    """Create a job the way the service does and run the scheduler."""

    record = controller.create_job(
        session_id,
        JobSubmission(name=name, parameters=parameters),
        principal=principal,
    )
    controller.schedule_pending()
    return record


@pytest.fixture(autouse=True)
def isolated_config(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> Generator[None, None, None]:
    """Keep the repository's config/ directory and globals out of tests."""

    monkeypatch.setenv("WEBMMB_CONFIG_DIR", str(tmp_path_factory.mktemp("no-config")))
    monkeypatch.setattr(settings_module, "_settings", None)
    backend_factory.reset_backend()
    yield
    backend_factory.reset_backend()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fake_backend() -> FakeExecutionBackend:
    return FakeExecutionBackend()


@pytest.fixture
def workspaces(tmp_path: Path) -> WorkspaceManager:
    return WorkspaceManager(tmp_path / "jobs")


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def controller_config() -> ControllerConfig:
    return ControllerConfig(
        max_active_jobs=2,
        backend_call_timeout_seconds=1.0,
        backend_workers=4,
        vanished_grace_seconds=60.0,
        retention_seconds=600.0,
        fetched_retention_seconds=120.0,
    )


@pytest.fixture
def controller(
    store: InMemoryJobStore,
    fake_backend: FakeExecutionBackend,
    workspaces: WorkspaceManager,
    controller_config: ControllerConfig,
    clock: ManualClock,
) -> Generator[JobLifecycleController, None, None]:
    controller = JobLifecycleController(
        store=store,
        backend=fake_backend,
        workspaces=workspaces,
        config=controller_config,
        clock=clock,
    )
    yield controller
    controller.shutdown()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing every path into the test's temporary directory."""

    executable = tmp_path / "bin" / "mmb"
    executable.parent.mkdir()
    executable.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    executable.chmod(0o755)
    return Settings(
        executable_path=str(executable),
        jobs_root=str(tmp_path / "jobs"),
        max_active_jobs=2,
        backend_call_timeout_seconds=1.0,
        retention_seconds=600.0,
        fetched_retention_seconds=120.0,
    )
