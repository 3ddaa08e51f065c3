"""Two-stage cargo build: dependency layer first, then the workspace."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple
import re
import shutil
import tempfile

from core.archive import ArchiveArtifact, ArchiveManager
from core.command_runner import CommandError, CommandRunner
from core.console import Console

from .errors import (
    CacheKeyMismatchError,
    CompilationError,
    ConfigurationError,
    StaleDependencyArtifactsError,
    UnsupportedPlatformError,
)
from .platform_config import BuildInputs
from .source_filter import LOCKFILE_NAME, SourceTree
from .store import ArtifactStore, StoreEntry, cache_key
from .toolchains import ComponentKind, ToolchainSpec
from .workspace import Workspace

STANDARD_PROFILES: Tuple[str, ...] = ("dev", "ci", "release")
_PROFILE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_FAILED_CRATE = re.compile(r"could not compile `([^`]+)`")
_DEPENDENCY_ARCHIVE = "target.tar.zst"

# Package names whose installed binary is named differently.
_TOOL_BINARIES: Dict[str, str] = {
    "wasm-bindgen-cli": "wasm-bindgen",
}

ToolLocator = Callable[[str], "str | None"]


class PipelineState(str, Enum):
    UNBUILT = "unbuilt"
    DEPENDENCIES_BUILT = "dependencies-built"
    WORKSPACE_BUILT = "workspace-built"


def profile_directory(profile: str) -> str:
    return "debug" if profile == "dev" else profile


@dataclass(frozen=True)
class DependencyArtifacts:
    key: str
    manifest_digest: str
    toolchain_identity: str
    inputs_identity: str
    profile: str
    target_triple: str | None
    entry: StoreEntry = field(compare=False, repr=False)

    @property
    def archive_path(self) -> Path:
        return self.entry.data_dir / _DEPENDENCY_ARCHIVE


@dataclass(frozen=True)
class WorkspaceArtifacts:
    key: str
    dependency_key: str
    source_digest: str
    profile: str
    executables: Tuple[Tuple[str, Tuple[str, ...]], ...]
    entry: StoreEntry = field(compare=False, repr=False)
    store: ArtifactStore = field(compare=False, repr=False)
    generation: int = field(default=0, compare=False)
    executable_suffix: str = ""

    @property
    def bin_dir(self) -> Path:
        return self.entry.data_dir / "bin"

    @property
    def members(self) -> Tuple[str, ...]:
        return tuple(member for member, _ in self.executables)

    def executables_of(self, member: str) -> Tuple[str, ...]:
        for name, executables in self.executables:
            if name == member:
                return executables
        return ()

    def file_name(self, executable: str) -> str:
        return f"{executable}{self.executable_suffix}"

    def executable_path(self, executable: str) -> Path:
        return self.bin_dir / self.file_name(executable)

    def is_valid(self) -> bool:
        return self.store.contains(self.key) and self.store.generation(self.key) == self.generation


class CachedBuildPipeline:
    """Build a cargo workspace in two cached stages for one platform.

    The dependency stage compiles a skeleton of the workspace (manifests,
    lockfile and stub targets), so its key only covers manifest content. The
    workspace stage restores that target directory and compiles the real
    sources on top of it.
    """

    def __init__(
        self,
        store: ArtifactStore,
        runner: CommandRunner,
        *,
        profile: str = "release",
        console: Console | None = None,
        tool_locator: ToolLocator | None = None,
    ) -> None:
        if not _PROFILE_PATTERN.match(profile):
            raise ConfigurationError(f"Invalid build profile '{profile}'", identifier=profile)
        self._store = store
        self._runner = runner
        self._profile = profile
        self._console = console or Console()
        self._tool_locator = tool_locator
        self._archiver = ArchiveManager(self._console)
        self.state = PipelineState.UNBUILT

    @property
    def profile(self) -> str:
        return self._profile

    # -- cache keys -------------------------------------------------------

    def dependency_inputs(self, source_tree: SourceTree, toolchain: ToolchainSpec, build_inputs: BuildInputs) -> Dict[str, Any]:
        return {
            "manifest_digest": source_tree.manifest_digest(),
            "toolchain": toolchain.identity,
            "build_inputs": build_inputs.identity,
            "profile": self._profile,
            "target": toolchain.target_triple,
        }

    def dependency_key(self, source_tree: SourceTree, toolchain: ToolchainSpec, build_inputs: BuildInputs) -> str:
        return cache_key("dependencies", self.dependency_inputs(source_tree, toolchain, build_inputs))

    def workspace_inputs(self, source_tree: SourceTree, dependency_key: str) -> Dict[str, Any]:
        return {
            "source_digest": source_tree.digest,
            "dependencies": dependency_key,
            "profile": self._profile,
        }

    def workspace_key(self, source_tree: SourceTree, dependency_key: str) -> str:
        return cache_key("workspace", self.workspace_inputs(source_tree, dependency_key))

    # -- commands ---------------------------------------------------------

    def cargo_command(self, toolchain: ToolchainSpec) -> List[str]:
        command = ["cargo", "build", "--workspace", "--locked", "--profile", self._profile]
        if toolchain.target_triple:
            command.extend(["--target", toolchain.target_triple])
        return command

    def build_environment(self, toolchain: ToolchainSpec, build_inputs: BuildInputs, target_dir: Path) -> Dict[str, str]:
        env = build_inputs.environment(toolchain.environment)
        env["CARGO_TARGET_DIR"] = str(target_dir)
        env["CARGO_TERM_COLOR"] = "never"
        return env

    # -- stages -----------------------------------------------------------

    def build_dependencies_only(
        self,
        source_tree: SourceTree,
        toolchain: ToolchainSpec,
        build_inputs: BuildInputs,
    ) -> DependencyArtifacts:
        self._check_preconditions(source_tree, toolchain, build_inputs)
        workspace = Workspace.from_source_tree(source_tree)
        inputs = self.dependency_inputs(source_tree, toolchain, build_inputs)
        key = cache_key("dependencies", inputs)

        def build(data_dir: Path) -> Mapping[str, Any]:
            with tempfile.TemporaryDirectory(prefix="deps-", dir=self._scratch_root()) as scratch:
                work = Path(scratch)
                source_dir = source_tree.materialize_skeleton(work / "src", workspace)
                target_dir = work / "target"
                target_dir.mkdir()
                self._run_cargo(
                    stage="dependencies",
                    key=key,
                    command=self.cargo_command(toolchain),
                    cwd=source_dir,
                    env=self.build_environment(toolchain, build_inputs, target_dir),
                )
                archive = self._archiver.create_archive(
                    artifact=ArchiveArtifact(source_dir=target_dir, label=f"dependencies {key[:12]}"),
                    target_path=data_dir / _DEPENDENCY_ARCHIVE,
                )
            return {"archive_sha256": archive.sha256, "dependencies": list(workspace.dependencies)}

        entry = self._store.get_or_build(key, kind="dependencies", inputs=inputs, build=build)
        self.state = PipelineState.DEPENDENCIES_BUILT
        return DependencyArtifacts(
            key=key,
            manifest_digest=inputs["manifest_digest"],
            toolchain_identity=toolchain.identity,
            inputs_identity=build_inputs.identity,
            profile=self._profile,
            target_triple=toolchain.target_triple,
            entry=entry,
        )

    def build_workspace(
        self,
        source_tree: SourceTree,
        toolchain: ToolchainSpec,
        build_inputs: BuildInputs,
        dependency_artifacts: DependencyArtifacts,
    ) -> WorkspaceArtifacts:
        self._check_preconditions(source_tree, toolchain, build_inputs)
        self._check_dependency_artifacts(source_tree, toolchain, build_inputs, dependency_artifacts)
        workspace = Workspace.from_source_tree(source_tree)
        inputs = self.workspace_inputs(source_tree, dependency_artifacts.key)
        key = cache_key("workspace", inputs)
        output_dir = profile_directory(self._profile)
        suffix = ".wasm" if toolchain.target_triple and toolchain.target_triple.startswith("wasm32") else ""

        def build(data_dir: Path) -> Mapping[str, Any]:
            expected_sha = str(dependency_artifacts.entry.metadata.get("archive_sha256", ""))
            if not self._archiver.verify(dependency_artifacts.archive_path, expected_sha):
                raise CacheKeyMismatchError(
                    "Dependency archive does not match its recorded digest",
                    identifier=dependency_artifacts.key,
                )
            with tempfile.TemporaryDirectory(prefix="workspace-", dir=self._scratch_root()) as scratch:
                work = Path(scratch)
                source_dir = source_tree.materialize(work / "src")
                target_dir = work / "target"
                self._archiver.extract_archive(archive_path=dependency_artifacts.archive_path, destination_dir=target_dir)
                self._run_cargo(
                    stage="workspace",
                    key=key,
                    command=self.cargo_command(toolchain),
                    cwd=source_dir,
                    env=self.build_environment(toolchain, build_inputs, target_dir),
                )
                produced = target_dir / toolchain.target_triple / output_dir if toolchain.target_triple else target_dir / output_dir
                bin_dir = data_dir / "bin"
                bin_dir.mkdir(parents=True, exist_ok=True)
                executables: Dict[str, List[str]] = {}
                for member in workspace.members:
                    names: List[str] = []
                    for executable in member.executables:
                        built = produced / f"{executable}{suffix}"
                        if not built.is_file():
                            raise CompilationError(
                                f"cargo reported success but '{executable}{suffix}' was not produced",
                                stage="workspace",
                                member=member.name,
                                identifier=key,
                            )
                        shutil.copy2(built, bin_dir / built.name)
                        names.append(executable)
                    executables[member.name] = names
            return {
                "executables": executables,
                "executable_suffix": suffix,
                "dependency_key": dependency_artifacts.key,
            }

        entry = self._store.get_or_build(key, kind="workspace", inputs=inputs, build=build)
        self.state = PipelineState.WORKSPACE_BUILT
        recorded = entry.metadata.get("executables", {})
        return WorkspaceArtifacts(
            key=key,
            dependency_key=dependency_artifacts.key,
            source_digest=source_tree.digest,
            profile=self._profile,
            executables=tuple((member, tuple(recorded.get(member, ()))) for member in sorted(recorded)),
            entry=entry,
            store=self._store,
            generation=self._store.generation(key),
            executable_suffix=str(entry.metadata.get("executable_suffix", "")),
        )

    def build(self, source_tree: SourceTree, toolchain: ToolchainSpec, build_inputs: BuildInputs) -> WorkspaceArtifacts:
        dependencies = self.build_dependencies_only(source_tree, toolchain, build_inputs)
        return self.build_workspace(source_tree, toolchain, build_inputs, dependencies)

    # -- helpers ----------------------------------------------------------

    def _scratch_root(self) -> Path:
        scratch = self._store.root / ".work"
        scratch.mkdir(parents=True, exist_ok=True)
        return scratch

    def _check_preconditions(self, source_tree: SourceTree, toolchain: ToolchainSpec, build_inputs: BuildInputs) -> None:
        if toolchain.platform != build_inputs.platform:
            raise ConfigurationError(
                f"Toolchain platform {toolchain.platform} differs from native inputs platform {build_inputs.platform}",
                identifier=toolchain.platform.system,
            )
        for component in (ComponentKind.COMPILER, ComponentKind.PACKAGE_MANAGER):
            if not toolchain.has(component):
                raise ConfigurationError(
                    f"Building requires the '{component.value}' toolchain component",
                    identifier=component.value,
                )
        if not source_tree.has_lockfile():
            raise ConfigurationError(
                f"{LOCKFILE_NAME} is required for a locked build; add it to the source allowlist",
                identifier=LOCKFILE_NAME,
            )
        if self._tool_locator is not None:
            self._verify_tools(
                [*build_inputs.native_build_tools, *toolchain.auxiliary_tools],
                toolchain,
                self._tool_locator,
            )

    @staticmethod
    def _verify_tools(tools: Sequence[str], toolchain: ToolchainSpec, locate: ToolLocator) -> None:
        missing = [tool for tool in tools if locate(_TOOL_BINARIES.get(tool, tool)) is None]
        if missing:
            raise UnsupportedPlatformError(
                f"Required build tool(s) not found on {toolchain.platform}: {', '.join(missing)}",
                identifier=missing[0],
            )

    def _check_dependency_artifacts(
        self,
        source_tree: SourceTree,
        toolchain: ToolchainSpec,
        build_inputs: BuildInputs,
        artifacts: DependencyArtifacts,
    ) -> None:
        mismatched: List[str] = []
        if artifacts.manifest_digest != source_tree.manifest_digest():
            mismatched.append("manifest")
        if artifacts.toolchain_identity != toolchain.identity:
            mismatched.append("toolchain")
        if artifacts.inputs_identity != build_inputs.identity:
            mismatched.append("native inputs")
        if artifacts.profile != self._profile:
            mismatched.append("profile")
        if artifacts.target_triple != toolchain.target_triple:
            mismatched.append("target")
        if mismatched:
            raise StaleDependencyArtifactsError(
                f"Dependency artifacts {artifacts.key[:12]} are stale ({', '.join(mismatched)} changed); "
                "rebuild the dependency stage",
                identifier=artifacts.key,
            )

    def _run_cargo(self, *, stage: str, key: str, command: List[str], cwd: Path, env: Mapping[str, str]) -> None:
        self._console.info(f"cargo build ({stage}, profile {self._profile})")
        try:
            self._runner.run(command, cwd=cwd, env=env, note=f"{stage} {key[:12]}")
        except CommandError as exc:
            output = exc.result.output
            match = _FAILED_CRATE.search(output)
            raise CompilationError(
                f"cargo build failed in the {stage} stage",
                stage=stage,
                member=match.group(1) if match else None,
                output=output,
                identifier=key,
            ) from exc
        except OSError as exc:
            raise CompilationError(
                f"Could not start '{command[0]}' for the {stage} stage: {exc}",
                stage=stage,
                identifier=key,
            ) from exc


__all__ = [
    "CachedBuildPipeline",
    "DependencyArtifacts",
    "PipelineState",
    "STANDARD_PROFILES",
    "WorkspaceArtifacts",
    "profile_directory",
]
