"""Package groups: a subset of workspace members with one entry point."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Iterable, Tuple
import json
import shutil

from core.console import Console

from .errors import ArtifactInvalidatedError, ConfigurationError, EntryPointNotFoundError
from .pipeline import WorkspaceArtifacts


@dataclass(frozen=True)
class PackageGroup:
    """Read-only view over workspace artifacts; nothing is copied on extract."""

    name: str
    members: FrozenSet[str]
    main_program: str
    workspace: WorkspaceArtifacts = field(compare=False, repr=False)

    @property
    def executables(self) -> Tuple[str, ...]:
        names: list[str] = []
        for member in sorted(self.members):
            for executable in self.workspace.executables_of(member):
                if executable not in names:
                    names.append(executable)
        return tuple(names)

    def is_valid(self) -> bool:
        return self.workspace.is_valid()

    def _ensure_valid(self) -> None:
        if not self.is_valid():
            raise ArtifactInvalidatedError(
                f"Workspace artifacts {self.workspace.key[:12]} backing package '{self.name}' were invalidated",
                identifier=self.workspace.key,
            )

    @property
    def main_program_path(self) -> Path:
        self._ensure_valid()
        return self.workspace.executable_path(self.main_program)

    def install(self, dest: Path | str, *, console: Console | None = None) -> Path:
        """Lay out ``bin/`` and ``package.json`` under ``dest``; return the main program path."""
        self._ensure_valid()
        console = console or Console()
        target = Path(dest)
        bin_dir = target / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        for executable in self.executables:
            shutil.copy2(self.workspace.executable_path(executable), bin_dir / self.workspace.file_name(executable))
        metadata = {
            "name": self.name,
            "members": sorted(self.members),
            "mainProgram": self.main_program,
            "workspace": self.workspace.key,
        }
        (target / "package.json").write_text(json.dumps(metadata, indent=2) + "\n", encoding="utf-8")
        console.info(f"Installed package '{self.name}' to {target}")
        return bin_dir / self.workspace.file_name(self.main_program)


def extract(
    workspace_artifacts: WorkspaceArtifacts,
    group_name: str,
    member_names: Iterable[str],
    main_program: str,
) -> PackageGroup:
    members = frozenset(name.strip() for name in member_names if name.strip())
    if not group_name.strip():
        raise ConfigurationError("Package group name must not be empty", identifier=group_name)
    if not members:
        raise ConfigurationError(f"Package group '{group_name}' has no members", identifier=group_name)
    known = set(workspace_artifacts.members)
    for member in sorted(members):
        if member not in known:
            available = ", ".join(sorted(known)) or "<none>"
            raise ConfigurationError(
                f"Package group '{group_name}' references unknown member '{member}'. Available members: {available}",
                identifier=member,
            )
    if not workspace_artifacts.is_valid():
        raise ArtifactInvalidatedError(
            f"Workspace artifacts {workspace_artifacts.key[:12]} were invalidated",
            identifier=workspace_artifacts.key,
        )
    produced = {name for member in members for name in workspace_artifacts.executables_of(member)}
    if main_program not in produced:
        candidates = ", ".join(sorted(produced)) or "<none>"
        raise EntryPointNotFoundError(
            f"Main program '{main_program}' is not built by members {sorted(members)} of '{group_name}'. "
            f"Executables: {candidates}",
            identifier=main_program,
        )
    return PackageGroup(name=group_name, members=members, main_program=main_program, workspace=workspace_artifacts)


__all__ = ["PackageGroup", "extract"]
