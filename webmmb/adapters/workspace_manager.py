"""Filesystem-backed job workspaces.

Every job gets ``<jobs_root>/<job_id>/``; all files the job reads or writes
live there, so jobs never share scratch space.
"""

from __future__ import annotations

import fcntl
import json
import re
import shutil
from pathlib import Path
from typing import Final

from webmmb.config.logging_config import get_logger
from webmmb.domain.exceptions import NotFoundError, ResourceError
from webmmb.domain.models import (
    BOOKKEEPING_FILE_NAMES,
    TRAJECTORY_FILE_PREFIX,
    JobProgress,
    Workspace,
)

logger = get_logger(__name__)

_JOB_ID_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[0-9A-Za-z_\-]+$")
_STAGE_PATTERN: Final[re.Pattern[str]] = re.compile(
    rf"^{TRAJECTORY_FILE_PREFIX}\.(\d+)\.pdb$"
)


class WorkspaceManager:
    """Allocates, inspects and reclaims per-job directories."""

    def __init__(self, jobs_root: str | Path) -> None:
        self._root = Path(jobs_root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, job_id: str) -> Path:
        if not _JOB_ID_PATTERN.match(job_id):
            raise ResourceError(f"Invalid job id for workspace: {job_id!r}")
        return self._root / job_id

    def allocate(self, job_id: str) -> Workspace:
        """Create a fresh, empty directory for the job.

        Raises:
            ResourceError: If storage is unavailable or the directory exists.
        """
        path = self.path_for(job_id)
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            path.mkdir(exist_ok=False)
        except FileExistsError as exc:
            raise ResourceError(f"Workspace {path} already exists") from exc
        except OSError as exc:
            raise ResourceError(f"Failed to create job directory {path}: {exc}") from exc

        logger.debug("workspace_allocated", job_id=job_id, path=str(path))
        return Workspace(job_id=job_id, path=path)

    def prepare(
        self,
        workspace: Workspace,
        parameters_text: str,
        template_path: str | Path | None = None,
    ) -> Path:
        """Write the commands file (and parameter template) into the workspace.

        Returns:
            Path of the commands file handed to the executable.

        Raises:
            ResourceError: If the files cannot be written.
        """
        try:
            workspace.commands_path.write_text(parameters_text, encoding="utf-8")
            if template_path:
                shutil.copyfile(template_path, workspace.parameters_path)
        except OSError as exc:
            raise ResourceError(
                f"Failed to prepare workspace {workspace.path}: {exc}"
            ) from exc
        return workspace.commands_path

    def release(self, job_id: str) -> bool:
        """Recursively remove the job directory.

        Best effort: partial removal is logged, never raised.

        Returns:
            True if nothing of the workspace is left behind.
        """
        try:
            path = self.path_for(job_id)
        except ResourceError:
            logger.warning("workspace_release_invalid_id", job_id=job_id)
            return False

        if not path.exists():
            return True

        failures: list[str] = []

        def _on_error(func: object, failed_path: str, exc: BaseException) -> None:
            failures.append(f"{failed_path}: {exc}")

        shutil.rmtree(path, onexc=_on_error)
        if failures:
            logger.warning(
                "workspace_release_incomplete",
                job_id=job_id,
                path=str(path),
                failures=failures[:5],
                failure_count=len(failures),
            )
            return False

        logger.debug("workspace_released", job_id=job_id, path=str(path))
        return True

    def enumerate_artifacts(self, workspace: Workspace) -> list[str]:
        """List produced files relative to the workspace, sorted."""

        if not workspace.path.is_dir():
            return []
        artifacts = []
        for entry in workspace.path.rglob("*"):
            if not entry.is_file():
                continue
            relative = entry.relative_to(workspace.path).as_posix()
            if relative in BOOKKEEPING_FILE_NAMES:
                continue
            artifacts.append(relative)
        return sorted(artifacts)

    def resolve_artifact(self, workspace: Workspace, name: str) -> Path:
        """Return the path of a produced file that lives inside the workspace.

        Raises:
            NotFoundError: If the name escapes the workspace or does not exist.
        """
        root = workspace.path.resolve()
        candidate = (workspace.path / name).resolve()
        if not candidate.is_relative_to(root) or candidate == root:
            raise NotFoundError(f"No artifact named {name}")
        if not candidate.is_file():
            raise NotFoundError(f"No artifact named {name}")
        return candidate

    def read_progress(self, workspace: Workspace) -> JobProgress | None:
        """Read the progress report written by the simulation program.

        A missing, locked or half-written file yields None.
        """
        path = workspace.progress_path
        if not path.is_file():
            return None

        try:
            with open(path, encoding="utf-8") as fh:
                try:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_SH | fcntl.LOCK_NB)
                except BlockingIOError:
                    # The program is rewriting the file right now
                    return None
                try:
                    raw = fh.read()
                finally:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        except OSError as exc:
            logger.debug("progress_read_failed", job_id=workspace.job_id, error=str(exc))
            return None

        try:
            return JobProgress.model_validate(json.loads(raw))
        except ValueError:
            return None

    def read_diagnostics(self, workspace: Workspace) -> str:
        path = workspace.diagnostics_path
        if not path.is_file():
            return ""
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ResourceError(f"Cannot read diagnostics output: {exc}") from exc

    def available_stages(self, workspace: Workspace) -> list[int]:
        """Stage numbers for which a trajectory file exists."""

        if not workspace.path.is_dir():
            return []
        stages = set()
        for entry in workspace.path.iterdir():
            match = _STAGE_PATTERN.match(entry.name)
            if match and entry.is_file():
                stages.add(int(match.group(1)))
        return sorted(stages)


__all__ = ["WorkspaceManager"]
