"""Command line shared by the execution backends."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from webmmb.domain.models import Workspace


@dataclass(frozen=True, slots=True)
class SimulationCommand:
    """Executable plus argument templates from the configuration."""

    executable: str
    arg_templates: tuple[str, ...]

    @classmethod
    def from_settings(cls, executable: str, args: Sequence[str]) -> SimulationCommand:
        return cls(executable=executable, arg_templates=tuple(args))

    def render(self, workspace: Workspace, parameters_file: Path) -> list[str]:
        """Fill ``{commands}``, ``{progress}`` and ``{output}`` placeholders."""

        values = {
            "commands": str(parameters_file),
            "progress": str(workspace.progress_path),
            "output": str(workspace.diagnostics_path),
            "workspace": str(workspace.path),
        }
        return [self.executable] + [arg.format(**values) for arg in self.arg_templates]


__all__ = ["SimulationCommand"]
