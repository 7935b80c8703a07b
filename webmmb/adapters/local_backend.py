"""Execution backend running the simulation as a child process."""

from __future__ import annotations

import os
import signal
import subprocess
import threading
from pathlib import Path

from webmmb.adapters.command_line import SimulationCommand
from webmmb.config.logging_config import get_logger
from webmmb.domain.exceptions import BackendUnavailableError
from webmmb.domain.models import BackendKind, ExecutionHandle, PollResult, Workspace
from webmmb.ports.execution_backend import ExecutionBackendPort

logger = get_logger(__name__)


class LocalExecutionBackend(ExecutionBackendPort):
    """Forks the configured executable inside the job workspace."""

    kind = BackendKind.LOCAL

    def __init__(
        self,
        command: SimulationCommand,
        *,
        terminate_timeout_seconds: float = 10.0,
    ) -> None:
        self._command = command
        self._terminate_timeout = terminate_timeout_seconds
        self._processes: dict[int, subprocess.Popen[bytes]] = {}
        self._lock = threading.Lock()

    def start(self, workspace: Workspace, parameters_file: Path) -> ExecutionHandle:
        argv = self._command.render(workspace, parameters_file)
        try:
            with (
                open(workspace.stdout_path, "wb") as stdout,
                open(workspace.stderr_path, "wb") as stderr,
            ):
                process = subprocess.Popen(
                    argv,
                    cwd=workspace.path,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=stderr,
                    start_new_session=True,
                )
        except OSError as exc:
            raise BackendUnavailableError(
                f"Failed to start {self._command.executable}: {exc}"
            ) from exc

        with self._lock:
            self._processes[process.pid] = process

        logger.info(
            "local_process_started",
            job_id=workspace.job_id,
            pid=process.pid,
            executable=self._command.executable,
        )
        return ExecutionHandle(backend=self.kind, reference=str(process.pid))

    def poll(self, handle: ExecutionHandle) -> PollResult:
        pid = _parse_pid(handle)
        if pid is None:
            return PollResult.unknown(f"Invalid process handle {handle.reference!r}")

        with self._lock:
            process = self._processes.get(pid)

        if process is None:
            return _probe_foreign_process(pid)

        return_code = process.poll()
        if return_code is None:
            return PollResult.running()

        with self._lock:
            self._processes.pop(pid, None)

        if return_code == 0:
            return PollResult.succeeded(0)
        if return_code < 0:
            return PollResult.failed(signal=-return_code)
        return PollResult.failed(return_code)

    def cancel(self, handle: ExecutionHandle) -> None:
        pid = _parse_pid(handle)
        if pid is None:
            return

        with self._lock:
            process = self._processes.get(pid)
        if process is None:
            # Not our child (or already reaped); never signal a possibly reused pid
            logger.debug("local_cancel_noop", pid=pid)
            return

        if process.poll() is None:
            self._terminate(process)

        with self._lock:
            self._processes.pop(pid, None)

    def _terminate(self, process: subprocess.Popen[bytes]) -> None:
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return

        try:
            process.wait(timeout=self._terminate_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("local_process_kill_escalated", pid=process.pid)
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                return
            process.wait()

        logger.info(
            "local_process_terminated", pid=process.pid, return_code=process.returncode
        )


def _parse_pid(handle: ExecutionHandle) -> int | None:
    try:
        return int(handle.reference)
    except ValueError:
        return None


def _probe_foreign_process(pid: int) -> PollResult:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return PollResult.unknown(
            f"Process {pid} is gone without an exit status", vanished=True
        )
    except PermissionError:
        return PollResult.running()
    return PollResult.running()


__all__ = ["LocalExecutionBackend"]
