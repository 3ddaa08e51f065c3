"""Development shell assembly."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Tuple
import os
import shlex

from core.command_runner import CommandResult, CommandRunner

from .platform_config import BuildInputs
from .toolchains import ToolchainSpec

DEFAULT_SHELL_ENVIRONMENT: Mapping[str, str] = {"RUST_LOG": "info"}


@dataclass(frozen=True)
class ShellSpec:
    toolchain: ToolchainSpec
    tools: Tuple[str, ...]
    native_inputs: BuildInputs
    environment_items: Tuple[Tuple[str, str], ...]

    @property
    def environment(self) -> Dict[str, str]:
        return dict(self.environment_items)

    def render_hook(self) -> str:
        lines = [f"export {name}={shlex.quote(value)}" for name, value in self.environment_items]
        return "\n".join(lines) + "\n"

    def describe(self) -> str:
        libraries = ", ".join(str(entry) for entry in self.native_inputs.native_libraries) or "<none>"
        return "\n".join(
            [
                f"toolchain: {self.toolchain.version} ({self.toolchain.platform})",
                f"tools: {', '.join(self.tools)}",
                f"native libraries: {libraries}",
            ]
        )


def assemble(
    toolchain: ToolchainSpec,
    build_inputs: BuildInputs,
    environment: Mapping[str, str] | None = None,
) -> ShellSpec:
    tools = [component.value for component in sorted(toolchain.components, key=lambda item: item.value)]
    tools.extend(toolchain.auxiliary_tools)
    tools.extend(tool for tool in build_inputs.native_build_tools if tool not in tools)
    env = build_inputs.environment(toolchain.environment)
    env.update(DEFAULT_SHELL_ENVIRONMENT if environment is None else environment)
    return ShellSpec(
        toolchain=toolchain,
        tools=tuple(tools),
        native_inputs=build_inputs,
        environment_items=tuple(sorted((str(k), str(v)) for k, v in env.items())),
    )


def launch(spec: ShellSpec, runner: CommandRunner, *, shell: str | None = None) -> CommandResult:
    program = shell or os.environ.get("SHELL") or "/bin/sh"
    return runner.run([program, "-i"], env=spec.environment, check=False, note="dev shell", stream=True)


__all__ = ["DEFAULT_SHELL_ENVIRONMENT", "ShellSpec", "assemble", "launch"]
