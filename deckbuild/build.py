"""Build planning and execution for configured package groups."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Sequence
import shutil

from core.command_runner import CommandRunner
from core.console import Console

from .config_loader import DeckConfiguration, PackageGroupConfig
from .errors import BuildError, UnsupportedPlatformError
from .package_group import PackageGroup, extract
from .pipeline import CachedBuildPipeline, WorkspaceArtifacts
from .platform import Platform, detect_host
from .platform_config import BuildInputs
from .shell import ShellSpec, assemble
from .source_filter import SourceTree, filter_sources
from .store import ArtifactStore
from .toolchains import ToolchainSpec
from .workspace import Workspace

ToolLocator = Callable[[str], "str | None"]


@dataclass(slots=True)
class BuildStep:
    description: str
    key: str
    command: Sequence[str]
    env: Dict[str, str]
    cached: bool


@dataclass(slots=True)
class BuildPlan:
    platform: Platform
    package: PackageGroupConfig
    profile: str
    source: SourceTree
    toolchain: ToolchainSpec
    build_inputs: BuildInputs
    dependency_key: str
    workspace_key: str
    steps: List[BuildStep]


@dataclass(slots=True)
class BuildResult:
    plan: BuildPlan
    workspace: WorkspaceArtifacts
    package: PackageGroup
    main_program: Path | None = None


def serialize_plan(plan: BuildPlan) -> Dict[str, Any]:
    return {
        "system": plan.platform.system,
        "package": plan.package.name,
        "profile": plan.profile,
        "source_digest": plan.source.digest,
        "toolchain": plan.toolchain.to_mapping(),
        "install_command": plan.toolchain.install_command(),
        "native_inputs": plan.build_inputs.to_mapping(),
        "keys": {"dependencies": plan.dependency_key, "workspace": plan.workspace_key},
        "steps": [
            {"description": step.description, "key": step.key, "command": list(step.command), "cached": step.cached}
            for step in plan.steps
        ],
    }


class BuildEngine:
    def __init__(
        self,
        *,
        configuration: DeckConfiguration,
        command_runner: CommandRunner,
        console: Console | None = None,
        host: Platform | None = None,
        tool_locator: ToolLocator | None = None,
    ) -> None:
        self._config = configuration
        self._command_runner = command_runner
        self._console = console or Console()
        self._host = host or detect_host()
        self._tool_locator = tool_locator
        self._store: ArtifactStore | None = None

    @property
    def host(self) -> Platform:
        return self._host

    @property
    def store(self) -> ArtifactStore:
        if self._store is None:
            self._store = ArtifactStore(self._config.cache_dir, console=self._console)
        return self._store

    def filter_sources(self) -> SourceTree:
        source = self._config.source
        return filter_sources(
            self._config.root,
            source.paths,
            name=source.name,
            tracked_only=source.tracked_only,
            console=self._console,
        )

    def resolve(self, platform: Platform, *, target: str | None = None) -> tuple[ToolchainSpec, BuildInputs]:
        toolchain_config = self._config.toolchain
        toolchain = toolchain_config.resolver().resolve(
            platform,
            toolchain_config.components,
            target if target is not None else toolchain_config.target,
        )
        build_inputs = self._config.native.platform_config().native_inputs(platform)
        return toolchain, build_inputs

    def pipeline(self, profile: str | None = None) -> CachedBuildPipeline:
        return CachedBuildPipeline(
            self.store,
            self._command_runner,
            profile=profile or self._config.global_config.profile,
            console=self._console,
            tool_locator=self._tool_locator,
        )

    def plan(
        self,
        platform: Platform,
        *,
        package: str | None = None,
        target: str | None = None,
        profile: str | None = None,
        source: SourceTree | None = None,
    ) -> BuildPlan:
        package_config = self._config.package(package)
        tree = source or self.filter_sources()
        workspace = Workspace.from_source_tree(tree)
        for member in package_config.members:
            workspace.member(member)
        toolchain, build_inputs = self.resolve(platform, target=target)
        pipeline = self.pipeline(profile)
        dependency_key = pipeline.dependency_key(tree, toolchain, build_inputs)
        workspace_key = pipeline.workspace_key(tree, dependency_key)
        command = pipeline.cargo_command(toolchain)
        env = build_inputs.environment(toolchain.environment)
        steps = [
            BuildStep(
                description="dependencies",
                key=dependency_key,
                command=command,
                env=env,
                cached=self.store.contains(dependency_key),
            ),
            BuildStep(
                description="workspace",
                key=workspace_key,
                command=command,
                env=env,
                cached=self.store.contains(workspace_key),
            ),
        ]
        return BuildPlan(
            platform=platform,
            package=package_config,
            profile=pipeline.profile,
            source=tree,
            toolchain=toolchain,
            build_inputs=build_inputs,
            dependency_key=dependency_key,
            workspace_key=workspace_key,
            steps=steps,
        )

    def plan_many(self, platforms: Iterable[Platform], **options: Any) -> Dict[str, BuildPlan | BuildError]:
        """Plan every platform concurrently; unsupported platforms map to their error."""
        tree = self.filter_sources()
        targets = list(platforms)
        # Create the store before worker threads touch it.
        self.store

        def plan_one(platform: Platform) -> BuildPlan | BuildError:
            try:
                return self.plan(platform, source=tree, **options)
            except UnsupportedPlatformError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=max(1, len(targets))) as pool:
            results = list(pool.map(plan_one, targets))
        return {platform.system: result for platform, result in zip(targets, results)}

    def execute(self, plan: BuildPlan, *, out: Path | None = None, dry_run: bool = False) -> BuildResult | None:
        if dry_run:
            for step in plan.steps:
                state = "cached" if step.cached else "build"
                self._command_runner.run(step.command, env=step.env, note=f"{step.description} {step.key[:12]} [{state}]")
            return None
        if plan.platform != self._host:
            raise UnsupportedPlatformError(
                f"Cannot build for {plan.platform} on host {self._host}; use 'deckbuild plan' for other systems",
                identifier=plan.platform.system,
            )
        artifacts = self.pipeline(plan.profile).build(plan.source, plan.toolchain, plan.build_inputs)
        group = extract(artifacts, plan.package.name, plan.package.members, plan.package.main_program)
        result = BuildResult(plan=plan, workspace=artifacts, package=group)
        if out is not None:
            result.main_program = group.install(out, console=self._console)
        self._console.info(f"Built package '{group.name}' ({', '.join(group.executables)}) for {plan.platform}")
        return result

    def shell(self, platform: Platform | None = None) -> ShellSpec:
        toolchain, build_inputs = self.resolve(platform or self._host)
        return assemble(toolchain, build_inputs, self._config.shell_environment)


def default_tool_locator(name: str) -> str | None:
    return shutil.which(name)


__all__ = [
    "BuildEngine",
    "BuildPlan",
    "BuildResult",
    "BuildStep",
    "default_tool_locator",
    "serialize_plan",
]
