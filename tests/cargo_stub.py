"""Cargo stand-in and workspace fixture shared by the pipeline tests."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Mapping, Sequence
import textwrap
import threading
import time

from core.command_runner import CommandError, CommandResult, CommandRunner
from deckbuild.pipeline import profile_directory

ALLOWLIST = ("Cargo.toml", "Cargo.lock", "src", "crates")


def write_workspace(root: Path) -> Path:
    """Lay out a two-member workspace: ``notedeck`` at the root and ``crates/app``."""
    files = {
        "Cargo.toml": """
            [workspace]
            members = ["crates/app"]

            [package]
            name = "notedeck"
            version = "0.1.0"

            [dependencies]
            foo = "1.0"
            app = { path = "crates/app" }
            """,
        "Cargo.lock": """
            version = 3

            [[package]]
            name = "foo"
            version = "1.0.0"
            """,
        "src/main.rs": 'fn main() { println!("notedeck"); }\n',
        "crates/app/Cargo.toml": """
            [package]
            name = "app"
            version = "0.1.0"

            [dependencies]
            foo = "1.0"
            """,
        "crates/app/src/main.rs": 'fn main() { println!("app"); }\n',
        "README.md": "not part of the build\n",
        "target/debug/stale": "left over\n",
    }
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip(), encoding="utf-8")
    return root


class CargoStub(CommandRunner):
    """Pretends to be cargo: writes executables into ``CARGO_TARGET_DIR``.

    ``binaries`` names the executables every build produces. ``fail_stage``
    makes builds whose note starts with that stage exit non-zero with
    ``fail_output``. ``delay`` slows every build down so tests can overlap
    concurrent callers.
    """

    def __init__(
        self,
        binaries: Sequence[str] = ("notedeck", "app"),
        *,
        fail_stage: str | None = None,
        fail_output: str = "",
        delay: float = 0.0,
    ) -> None:
        self.binaries = tuple(binaries)
        self.fail_stage = fail_stage
        self.fail_output = fail_output
        self.delay = delay
        self.invocations: List[Dict[str, object]] = []
        self.restored: List[bool] = []
        self._lock = threading.Lock()

    def count(self, stage: str | None = None) -> int:
        with self._lock:
            return sum(1 for item in self.invocations if stage is None or item["stage"] == stage)

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
        args = list(command)
        stage = (note or "").split(" ", 1)[0]
        environment = dict(env or {})
        with self._lock:
            entry_point = Path(cwd) / "src" / "main.rs" if cwd else None
            self.invocations.append(
                {
                    "command": args,
                    "cwd": cwd,
                    "env": environment,
                    "stage": stage,
                    "main_rs": entry_point.read_text(encoding="utf-8") if entry_point and entry_point.is_file() else None,
                }
            )
        if self.delay:
            time.sleep(self.delay)

        if self.fail_stage is not None and stage == self.fail_stage:
            result = CommandResult(command=args, returncode=101, stdout="", stderr=self.fail_output)
            if check:
                raise CommandError(result)
            return result

        target_dir = Path(environment["CARGO_TARGET_DIR"])
        marker = target_dir / "release-deps" / "marker"
        if stage == "workspace":
            with self._lock:
                self.restored.append(marker.is_file())
        profile = args[args.index("--profile") + 1]
        triple = args[args.index("--target") + 1] if "--target" in args else None
        output_dir = target_dir / triple / profile_directory(profile) if triple else target_dir / profile_directory(profile)
        output_dir.mkdir(parents=True, exist_ok=True)
        suffix = ".wasm" if triple and triple.startswith("wasm32") else ""
        for name in self.binaries:
            (output_dir / f"{name}{suffix}").write_text(f"{name} built in {cwd}\n", encoding="utf-8")
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text("compiled dependencies\n", encoding="utf-8")
        return CommandResult(command=args, returncode=0, stdout="Finished\n", stderr="")
