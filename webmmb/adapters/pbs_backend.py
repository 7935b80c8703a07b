"""Execution backend offloading jobs to a PBS batch queue.

Submission goes through ``qsub`` with a generated starter script, status is
read from ``qstat -x -f -F json`` and cancellation uses ``qdel``.
"""

from __future__ import annotations

import json
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any, Final

from webmmb.adapters.command_line import SimulationCommand
from webmmb.config.logging_config import get_logger
from webmmb.domain.exceptions import BackendUnavailableError
from webmmb.domain.models import BackendKind, ExecutionHandle, PollResult, Workspace
from webmmb.ports.execution_backend import ExecutionBackendPort

logger = get_logger(__name__)

QUEUE_COMMAND_TIMEOUT_SECONDS: Final[float] = 30.0

_QUEUE_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\d+(\[\d*\])?\.[\w.\-]+$")
_VANISHED_MARKERS: Final[tuple[str, ...]] = ("Unknown Job Id", "Job has finished")

_RUNNING_STATES: Final[frozenset[str]] = frozenset({"Q", "W", "T", "R", "E", "B", "S", "U"})
_FINISHED_STATES: Final[frozenset[str]] = frozenset({"F", "X"})
_HELD_STATE: Final[str] = "H"
# PBS reports a job killed by signal N as Exit_status 256 + N
_SIGNAL_EXIT_OFFSET: Final[int] = 256


class PbsExecutionBackend(ExecutionBackendPort):
    """Submits a starter script to PBS and tracks it by queue id."""

    kind = BackendKind.PBS

    def __init__(
        self,
        command: SimulationCommand,
        *,
        qsub_command: str = "qsub",
        qstat_command: str = "qstat",
        qdel_command: str = "qdel",
        command_timeout_seconds: float = QUEUE_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self._command = command
        self._qsub = qsub_command
        self._qstat = qstat_command
        self._qdel = qdel_command
        self._command_timeout = command_timeout_seconds

    def start(self, workspace: Workspace, parameters_file: Path) -> ExecutionHandle:
        starter_path = self._write_starter_file(workspace, parameters_file)
        completed = self._run(
            [
                self._qsub,
                "-o",
                str(workspace.stdout_path),
                "-e",
                str(workspace.stderr_path),
                str(starter_path),
            ],
            cwd=workspace.path,
        )
        if completed.returncode != 0:
            raise BackendUnavailableError(
                f"Failed to enqueue job: {completed.stderr.strip() or completed.returncode}"
            )

        queue_id = completed.stdout.strip()
        if not _QUEUE_ID_PATTERN.match(queue_id):
            raise BackendUnavailableError(f"Invalid PBS job name {queue_id!r}")

        logger.info("pbs_job_submitted", job_id=workspace.job_id, queue_id=queue_id)
        return ExecutionHandle(backend=self.kind, reference=queue_id)

    def poll(self, handle: ExecutionHandle) -> PollResult:
        try:
            completed = self._run(
                [self._qstat, "-x", "-f", "-F", "json", handle.reference]
            )
        except BackendUnavailableError as exc:
            return PollResult.unknown(str(exc))

        if completed.returncode != 0:
            stderr = completed.stderr.strip()
            if any(marker in stderr for marker in _VANISHED_MARKERS):
                return PollResult.unknown(
                    f"Queue job {handle.reference} is no longer known to PBS",
                    vanished=True,
                )
            logger.warning(
                "pbs_status_query_failed",
                queue_id=handle.reference,
                return_code=completed.returncode,
                error=stderr,
            )
            return PollResult.unknown(f"Failed to execute {self._qstat}: {stderr}")

        try:
            payload = json.loads(completed.stdout)
        except ValueError as exc:
            return PollResult.unknown(f"{self._qstat} output is not valid JSON: {exc}")

        return parse_job_status(payload, handle.reference)

    def cancel(self, handle: ExecutionHandle) -> None:
        try:
            completed = self._run([self._qdel, handle.reference])
        except BackendUnavailableError as exc:
            logger.warning("pbs_cancel_failed", queue_id=handle.reference, error=str(exc))
            return

        if completed.returncode != 0:
            # qdel refuses finished or unknown jobs; nothing left to cancel
            logger.info(
                "pbs_cancel_noop",
                queue_id=handle.reference,
                error=completed.stderr.strip(),
            )
            return
        logger.info("pbs_job_cancelled", queue_id=handle.reference)

    def _write_starter_file(self, workspace: Workspace, parameters_file: Path) -> Path:
        argv = self._command.render(workspace, parameters_file)
        script = (
            "#!/bin/sh\n"
            'cd "$PBS_O_WORKDIR" || exit 1\n'
            f"{shlex.join(argv)}\n"
        )
        try:
            workspace.starter_path.write_text(script, encoding="utf-8")
            workspace.starter_path.chmod(0o755)
        except OSError as exc:
            raise BackendUnavailableError(
                f"Cannot write submission script: {exc}"
            ) from exc
        return workspace.starter_path

    def _run(
        self, argv: list[str], *, cwd: Path | None = None
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                argv,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self._command_timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise BackendUnavailableError(f"Cannot run {argv[0]}: {exc}") from exc


def parse_job_status(payload: dict[str, Any], queue_id: str) -> PollResult:
    """Map a ``qstat -F json`` document onto the four-way poll result."""

    jobs = payload.get("Jobs") or {}
    job = jobs.get(queue_id)
    if job is None:
        job_number = queue_id.split(".", 1)[0]
        job = next(
            (value for key, value in jobs.items() if key.split(".", 1)[0] == job_number),
            None,
        )
    if job is None:
        return PollResult.unknown(
            f"Queue job {queue_id} is missing from the status report", vanished=True
        )

    state = job.get("job_state")
    if state in _RUNNING_STATES:
        return PollResult.running()
    if state == _HELD_STATE:
        return PollResult.failed(detail="Job is held by the batch scheduler")
    if state in _FINISHED_STATES:
        exit_status = job.get("Exit_status")
        try:
            exit_code = int(exit_status)
        except (TypeError, ValueError):
            return PollResult.unknown(f"Finished job {queue_id} has no exit status")
        if exit_code == 0:
            return PollResult.succeeded(0)
        if exit_code < 0:
            return PollResult.failed(
                exit_code, detail=f"Batch scheduler could not run the job ({exit_code})"
            )
        if exit_code > _SIGNAL_EXIT_OFFSET:
            return PollResult.failed(exit_code, signal=exit_code - _SIGNAL_EXIT_OFFSET)
        return PollResult.failed(exit_code)

    return PollResult.unknown(f"Unknown job state {state!r}")


__all__ = ["PbsExecutionBackend", "parse_job_status"]
