"""Port definition for execution backends."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from webmmb.domain.models import BackendKind, ExecutionHandle, PollResult, Workspace


@runtime_checkable
class ExecutionBackendPort(Protocol):
    """Starts, polls and terminates the external simulation program."""

    kind: BackendKind

    def start(self, workspace: Workspace, parameters_file: Path) -> ExecutionHandle:
        """Launch the simulation for a prepared workspace.

        Args:
            workspace: Job workspace; all output stays inside it.
            parameters_file: Commands file passed to the executable.

        Returns:
            Handle used for later polls and cancellation.

        Raises:
            BackendUnavailableError: If the executable or queue cannot be reached.
        """

    def poll(self, handle: ExecutionHandle) -> PollResult:
        """Non-blocking status query; returns UNKNOWN instead of raising."""

    def cancel(self, handle: ExecutionHandle) -> None:
        """Best-effort termination; a no-op for work that already ended."""


__all__ = ["ExecutionBackendPort"]
