"""Pinned Rust toolchain resolution with platform-predicated overrides."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Sequence, Tuple
import hashlib
import json

from .errors import ConfigurationError, UnsupportedComponentError, UnsupportedPlatformError
from .platform import Platform, PlatformPredicate, is_darwin

PINNED_VERSION = "1.75.0"
DEFAULT_LLVM_ROOT = "/usr/local/opt/llvm@11"
SUPPORTED_OS: FrozenSet[str] = frozenset({"linux", "darwin"})


class ComponentKind(str, Enum):
    COMPILER = "rustc"
    PACKAGE_MANAGER = "cargo"
    LINTER = "clippy"
    LANGUAGE_SERVER = "rust-analyzer"
    STD_SOURCES = "rust-src"

    @classmethod
    def parse(cls, value: "str | ComponentKind") -> "ComponentKind":
        if isinstance(value, ComponentKind):
            return value
        text = str(value).strip().lower().replace("_", "-")
        for kind in cls:
            if text in {kind.value, kind.name.lower().replace("_", "-")}:
                return kind
        raise UnsupportedComponentError(f"Unknown toolchain component '{value}'", identifier=str(value))


ALL_COMPONENTS: FrozenSet[ComponentKind] = frozenset(ComponentKind)

# Alternate compilation targets by short name.
TARGETS: Dict[str, str] = {
    "wasm32-unknown": "wasm32-unknown-unknown",
}


@dataclass(frozen=True, slots=True)
class AuxiliaryTool:
    name: str
    targets: FrozenSet[str]
    unsupported_systems: FrozenSet[str] = frozenset()

    def applies_to(self, target_name: str | None, target_platform: Platform) -> bool:
        if target_name not in self.targets:
            return False
        return target_platform.system not in self.unsupported_systems


AUXILIARY_TOOLS: Tuple[AuxiliaryTool, ...] = (
    AuxiliaryTool("wasm-bindgen-cli", frozenset({"wasm32-unknown"})),
    AuxiliaryTool("geckodriver", frozenset({"wasm32-unknown"}), frozenset({"aarch64-linux"})),
    AuxiliaryTool("wasm-pack", frozenset({"wasm32-unknown"})),
)

_UNAVAILABLE_COMPONENTS: Dict[str, FrozenSet[ComponentKind]] = {
    "riscv64-linux": frozenset({ComponentKind.LANGUAGE_SERVER}),
    "i686-darwin": ALL_COMPONENTS,
}


@dataclass(frozen=True)
class ToolchainSpec:
    """Immutable toolchain value threaded through every pipeline stage."""

    version: str
    platform: Platform
    components: FrozenSet[ComponentKind]
    target_name: str | None = None
    target_triple: str | None = None
    auxiliary_tools: Tuple[str, ...] = ()
    environment_items: Tuple[Tuple[str, str], ...] = ()
    stdenv: str = "stdenv"
    applied_overrides: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def environment(self) -> Dict[str, str]:
        return dict(self.environment_items)

    def has(self, component: ComponentKind) -> bool:
        return component in self.components

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "platform": self.platform.system,
            "components": sorted(component.value for component in self.components),
            "target": self.target_triple,
            "auxiliary_tools": list(self.auxiliary_tools),
            "environment": dict(sorted(self.environment_items)),
            "stdenv": self.stdenv,
        }

    @property
    def identity(self) -> str:
        canonical = json.dumps(self.to_mapping(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def install_command(self) -> List[str]:
        command = ["rustup", "toolchain", "install", self.version, "--profile", "minimal"]
        extra = sorted(
            component.value
            for component in self.components
            if component not in {ComponentKind.COMPILER, ComponentKind.PACKAGE_MANAGER}
        )
        if extra:
            command.extend(["--component", ",".join(extra)])
        if self.target_triple:
            command.extend(["--target", self.target_triple])
        return command


@dataclass(slots=True)
class ToolchainDraft:
    """Mutable view handed to override functions during resolution."""

    stdenv: str
    environment: Dict[str, str]
    auxiliary_tools: List[str]


ToolchainOverrideFn = Callable[[ToolchainDraft, Platform], None]


@dataclass(frozen=True, slots=True)
class ToolchainOverride:
    name: str
    predicate: PlatformPredicate
    apply: ToolchainOverrideFn


def darwin_clang_override(llvm_root: str = DEFAULT_LLVM_ROOT) -> ToolchainOverride:
    """Newer Darwin stdenvs fail to link some native crates; use clang 11."""
    root = llvm_root.rstrip("/")

    def apply(draft: ToolchainDraft, _: Platform) -> None:
        draft.stdenv = "clang11Stdenv"
        draft.environment.update(
            {
                "CC": f"{root}/bin/clang",
                "CXX": f"{root}/bin/clang++",
                "CLANG_PATH": f"{root}/bin/clang",
                "LIBCLANG_PATH": f"{root}/lib",
            }
        )

    return ToolchainOverride(name="darwin-clang11", predicate=is_darwin, apply=apply)


def default_overrides(llvm_root: str = DEFAULT_LLVM_ROOT) -> List[ToolchainOverride]:
    return [darwin_clang_override(llvm_root)]


class ToolchainResolver:
    """Resolve one pinned toolchain per platform.

    Overrides run in registration order, so later overrides win when two of
    them set the same variable.
    """

    def __init__(
        self,
        *,
        version: str = PINNED_VERSION,
        llvm_root: str = DEFAULT_LLVM_ROOT,
        overrides: Sequence[ToolchainOverride] | None = None,
        auxiliary_tools: Sequence[AuxiliaryTool] = AUXILIARY_TOOLS,
        unavailable: Mapping[str, FrozenSet[ComponentKind]] | None = None,
    ) -> None:
        if not version.strip():
            raise ConfigurationError("Toolchain version must not be empty", identifier="toolchain.version")
        self._version = version.strip()
        self._overrides: List[ToolchainOverride] = (
            list(overrides) if overrides is not None else default_overrides(llvm_root)
        )
        self._auxiliary_tools = tuple(auxiliary_tools)
        self._unavailable = dict(_UNAVAILABLE_COMPONENTS if unavailable is None else unavailable)

    @property
    def version(self) -> str:
        return self._version

    def add_override(self, override: ToolchainOverride) -> None:
        self._overrides.append(override)

    def resolve(
        self,
        target_platform: Platform,
        components: Iterable[str | ComponentKind] = ALL_COMPONENTS,
        target: str | None = None,
    ) -> ToolchainSpec:
        if target_platform.os not in SUPPORTED_OS:
            raise UnsupportedPlatformError(
                f"No toolchain is available for platform '{target_platform}'",
                identifier=target_platform.system,
            )
        requested = frozenset(ComponentKind.parse(component) for component in components)
        if not requested:
            raise ConfigurationError("At least one toolchain component must be requested", identifier="toolchain.components")
        missing = requested & self._unavailable.get(target_platform.system, frozenset())
        if missing:
            names = ", ".join(sorted(component.value for component in missing))
            raise UnsupportedComponentError(
                f"Component(s) {names} are not available on {target_platform}",
                identifier=sorted(component.value for component in missing)[0],
            )

        target_name, target_triple = self._resolve_target(target)
        draft = ToolchainDraft(
            stdenv="stdenv",
            environment={"RUSTUP_TOOLCHAIN": self._version},
            auxiliary_tools=[
                tool.name for tool in self._auxiliary_tools if tool.applies_to(target_name, target_platform)
            ],
        )
        applied: List[str] = []
        for override in self._overrides:
            if override.predicate(target_platform):
                override.apply(draft, target_platform)
                applied.append(override.name)

        return ToolchainSpec(
            version=self._version,
            platform=target_platform,
            components=requested,
            target_name=target_name,
            target_triple=target_triple,
            auxiliary_tools=tuple(draft.auxiliary_tools),
            environment_items=tuple(sorted(draft.environment.items())),
            stdenv=draft.stdenv,
            applied_overrides=tuple(applied),
        )

    @staticmethod
    def _resolve_target(target: str | None) -> Tuple[str | None, str | None]:
        if target is None or target.strip() in {"", "default", "native"}:
            return None, None
        name = target.strip().lower()
        if name in TARGETS:
            return name, TARGETS[name]
        for short, triple in TARGETS.items():
            if name == triple:
                return short, triple
        raise UnsupportedPlatformError(
            f"Unknown compilation target '{target}'. Known targets: default, {', '.join(sorted(TARGETS))}",
            identifier=target,
        )


__all__ = [
    "ALL_COMPONENTS",
    "AUXILIARY_TOOLS",
    "AuxiliaryTool",
    "ComponentKind",
    "PINNED_VERSION",
    "TARGETS",
    "ToolchainDraft",
    "ToolchainOverride",
    "ToolchainResolver",
    "ToolchainSpec",
    "darwin_clang_override",
    "default_overrides",
]
