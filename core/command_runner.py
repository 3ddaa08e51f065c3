"""Command execution with a recording variant for dry runs and tests."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence
import os
import shlex
import subprocess
import threading

from .console import Console


@dataclass
class CommandResult:
    """Represents the outcome of an executed command."""

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    streamed: bool = False

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class CommandError(RuntimeError):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, result: CommandResult):
        message = f"Command failed with exit code {result.returncode}: {format_command(result.command)}"
        if result.streamed:
            message = f"{message}\nstdout/stderr already streamed above."
        else:
            message = f"{message}\nstdout: {result.stdout}\nstderr: {result.stderr}"
        super().__init__(message)
        self.result = result


def format_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in command)


class CommandRunner:
    """Abstract command runner interface."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        raise NotImplementedError

    def format_command(self, command: Sequence[str]) -> str:
        return format_command(command)


class SubprocessCommandRunner(CommandRunner):
    """Command runner that executes commands via :mod:`subprocess`."""

    def __init__(self, console: Console | None = None, *, timeout: float | None = None) -> None:
        self._console = console or Console()
        self._timeout = timeout

    @staticmethod
    def _merge_environment(env: Mapping[str, str] | None) -> Dict[str, str] | None:
        if env is None:
            return None
        merged = os.environ.copy()
        merged.update(env)
        return merged

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        label = f"{note}: " if note else ""
        self._console.debug(f"{label}{self.format_command(command)}")
        process = subprocess.run(
            list(command),
            cwd=str(cwd) if cwd else None,
            env=self._merge_environment(env),
            capture_output=not stream,
            text=True,
            check=False,
            timeout=self._timeout,
        )
        result = CommandResult(
            command=list(command),
            returncode=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
            streamed=stream,
        )
        if check and result.returncode != 0:
            raise CommandError(result)
        return result


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    env: Dict[str, str]
    note: str | None


class RecordingCommandRunner(CommandRunner):
    """Command runner that records commands instead of executing them.

    Safe to share between threads; planning several platforms at once appends
    to the same record list.
    """

    def __init__(self) -> None:
        self.commands: List[RecordedCommand] = []
        self._lock = threading.Lock()

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        record = RecordedCommand(
            command=[str(part) for part in command],
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env else {},
            note=note,
        )
        with self._lock:
            self.commands.append(record)
        return CommandResult(command=list(command), returncode=0, stdout="", stderr="", streamed=stream)

    def iter_commands(self) -> Iterable[RecordedCommand]:
        with self._lock:
            return iter(list(self.commands))

    def iter_formatted(self, *, workspace: Path | None = None) -> Iterable[str]:
        default_cwd = str(workspace) if workspace else None
        for record in self.iter_commands():
            parts: List[str] = ["[dry-run]"]
            if record.note:
                parts.append(record.note)
            cwd = record.cwd or default_cwd
            if cwd:
                parts.append(f"(cwd={cwd})")
            parts.append(self.format_command(record.command))
            yield " ".join(parts)


__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "RecordedCommand",
    "RecordingCommandRunner",
    "SubprocessCommandRunner",
    "format_command",
]
