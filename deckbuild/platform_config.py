"""Platform-conditional native build inputs."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Sequence, Tuple
import hashlib
import json

from .errors import UnsupportedPlatformError
from .platform import Platform, PlatformPredicate, always, is_darwin

SUPPORTED_OS: FrozenSet[str] = frozenset({"linux", "darwin"})

DARWIN_BASE_FRAMEWORKS: Tuple[str, ...] = ("SystemConfiguration",)
DARWIN_GUI_FRAMEWORKS: Tuple[str, ...] = ("OpenGL", "CoreServices", "AppKit")
GUI_FEATURE = "gui"


@dataclass(frozen=True, slots=True)
class NativeInput:
    name: str
    kind: str = "library"

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class BuildInputs:
    """Native libraries and build tools needed to link on one platform."""

    platform: Platform
    native_libraries: Tuple[NativeInput, ...] = ()
    native_build_tools: Tuple[str, ...] = ()

    @property
    def library_names(self) -> FrozenSet[str]:
        return frozenset(entry.name for entry in self.native_libraries)

    @property
    def frameworks(self) -> Tuple[str, ...]:
        return tuple(entry.name for entry in self.native_libraries if entry.kind == "framework")

    def link_flags(self) -> Tuple[str, ...]:
        flags: List[str] = []
        for framework in self.frameworks:
            flags.extend(["-C", "link-arg=-framework", "-C", f"link-arg={framework}"])
        return tuple(flags)

    def environment(self, base: Dict[str, str] | None = None) -> Dict[str, str]:
        env = dict(base or {})
        flags = self.link_flags()
        if flags:
            existing = env.get("RUSTFLAGS", "")
            env["RUSTFLAGS"] = " ".join(part for part in (existing, " ".join(flags)) if part)
        return env

    def to_mapping(self) -> Dict[str, object]:
        return {
            "platform": self.platform.system,
            "native_libraries": [[entry.kind, entry.name] for entry in self.native_libraries],
            "native_build_tools": list(self.native_build_tools),
        }

    @property
    def identity(self) -> str:
        canonical = json.dumps(self.to_mapping(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class _InputsDraft:
    libraries: List[NativeInput]
    tools: List[str]

    def add_library(self, entry: NativeInput) -> None:
        if entry not in self.libraries:
            self.libraries.append(entry)

    def add_tool(self, name: str) -> None:
        if name not in self.tools:
            self.tools.append(name)


InputsRuleFn = Callable[[_InputsDraft, FrozenSet[str]], None]


@dataclass(frozen=True, slots=True)
class PlatformRule:
    name: str
    predicate: PlatformPredicate
    apply: InputsRuleFn


def _pkg_config(draft: _InputsDraft, _: FrozenSet[str]) -> None:
    draft.add_tool("pkg-config")


def _darwin_frameworks(draft: _InputsDraft, features: FrozenSet[str]) -> None:
    for name in DARWIN_BASE_FRAMEWORKS:
        draft.add_library(NativeInput(name, "framework"))
    if GUI_FEATURE in features:
        for name in DARWIN_GUI_FRAMEWORKS:
            draft.add_library(NativeInput(name, "framework"))


def builtin_rules() -> List[PlatformRule]:
    return [
        PlatformRule("pkg-config", always, _pkg_config),
        PlatformRule("darwin-frameworks", is_darwin, _darwin_frameworks),
    ]


def extra_inputs_rule(
    name: str,
    predicate: PlatformPredicate,
    *,
    libraries: Sequence[str] = (),
    frameworks: Sequence[str] = (),
    tools: Sequence[str] = (),
) -> PlatformRule:
    """Rule that appends fixed native inputs when ``predicate`` holds."""

    def apply(draft: _InputsDraft, _: FrozenSet[str]) -> None:
        for library in libraries:
            draft.add_library(NativeInput(library, "library"))
        for framework in frameworks:
            draft.add_library(NativeInput(framework, "framework"))
        for tool in tools:
            draft.add_tool(tool)

    return PlatformRule(name=name, predicate=predicate, apply=apply)


class PlatformConfig:
    """Compute :class:`BuildInputs` as a pure function of the platform.

    Built-in rules run first, then user rules in the order they were added.
    """

    def __init__(self, rules: Iterable[PlatformRule] | None = None, *, features: Iterable[str] = ()) -> None:
        self._rules: List[PlatformRule] = builtin_rules()
        if rules:
            self._rules.extend(rules)
        self._features = frozenset(feature.strip().lower() for feature in features if feature.strip())

    @property
    def features(self) -> FrozenSet[str]:
        return self._features

    def native_inputs(self, target_platform: Platform, features: Iterable[str] | None = None) -> BuildInputs:
        if target_platform.os not in SUPPORTED_OS:
            raise UnsupportedPlatformError(
                f"No native input configuration for platform '{target_platform}'",
                identifier=target_platform.system,
            )
        active = self._features if features is None else frozenset(f.strip().lower() for f in features)
        draft = _InputsDraft(libraries=[], tools=[])
        for rule in self._rules:
            if rule.predicate(target_platform):
                rule.apply(draft, active)
        return BuildInputs(
            platform=target_platform,
            native_libraries=tuple(draft.libraries),
            native_build_tools=tuple(draft.tools),
        )


__all__ = [
    "BuildInputs",
    "DARWIN_BASE_FRAMEWORKS",
    "DARWIN_GUI_FRAMEWORKS",
    "GUI_FEATURE",
    "NativeInput",
    "PlatformConfig",
    "PlatformRule",
    "builtin_rules",
    "extra_inputs_rule",
]
