"""Configuration loading and validation logic."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence, Tuple
import json
import tomllib

import yaml

from .errors import ConfigurationError
from .platform import predicate_from_string
from .platform_config import PlatformConfig, extra_inputs_rule
from .shell import DEFAULT_SHELL_ENVIRONMENT
from .source_filter import DEFAULT_ALLOWLIST, normalize_allowlist
from .toolchains import ALL_COMPONENTS, DEFAULT_LLVM_ROOT, PINNED_VERSION, ComponentKind, ToolchainResolver

CONFIG_STEM = "deckbuild"

ConfigLoader = Callable[[Any], Any]

_FILE_LOADERS: Dict[str, ConfigLoader] = {
    ".toml": lambda stream: tomllib.load(stream),
    ".json": lambda stream: json.load(stream),
    ".yaml": lambda stream: yaml.safe_load(stream),
    ".yml": lambda stream: yaml.safe_load(stream),
}


def _load_config_file(path: Path) -> Mapping[str, Any]:
    suffix = path.suffix.lower()
    loader = _FILE_LOADERS.get(suffix)
    if loader is None:
        raise ConfigurationError(f"Unsupported configuration file extension: {suffix}", identifier=str(path))
    mode = "rb" if suffix == ".toml" else "r"
    kwargs: Dict[str, Any] = {}
    if mode == "r":
        kwargs["encoding"] = "utf-8"
    try:
        with path.open(mode, **kwargs) as handle:
            data = loader(handle)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Configuration file '{path}' could not be parsed: {exc}", identifier=str(path)) from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping at the root", identifier=str(path))
    return data


def find_config_file(directory: Path) -> Path | None:
    found: List[Path] = []
    for suffix in _FILE_LOADERS:
        candidate = directory / f"{CONFIG_STEM}{suffix}"
        if candidate.is_file():
            found.append(candidate)
    if len(found) > 1:
        names = "' and '".join(path.name for path in found)
        raise ConfigurationError(
            f"Multiple configuration files found: '{names}'. Only one format per configuration entry is allowed.",
            identifier=CONFIG_STEM,
        )
    return found[0] if found else None


def _section(data: Mapping[str, Any], name: str, allowed: set[str]) -> Mapping[str, Any]:
    value = data.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"[{name}] must be a table", identifier=name)
    unknown = {str(key) for key in value.keys() if str(key) not in allowed}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigurationError(f"[{name}] contains unknown keys: {joined}", identifier=name)
    return value


def _normalize_string_list(value: Any, *, field_name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        return [text] if text else []
    if isinstance(value, Sequence):
        result: List[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ConfigurationError(f"{field_name} entries must be strings", identifier=field_name)
            text = item.strip()
            if text:
                result.append(text)
        return result
    raise ConfigurationError(f"{field_name} must be a string or sequence of strings", identifier=field_name)


@dataclass(slots=True)
class GlobalConfig:
    log_level: str = "info"
    cache_dir: str = ".deckbuild/cache"
    profile: str = "release"
    default_package: str = "notedeck"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GlobalConfig":
        section = _section(data, "global", {"log_level", "cache_dir", "profile", "default_package"})
        return cls(
            log_level=str(section.get("log_level", "info")),
            cache_dir=str(section.get("cache_dir", ".deckbuild/cache")),
            profile=str(section.get("profile", "release")),
            default_package=str(section.get("default_package", "notedeck")),
        )


@dataclass(slots=True)
class SourceConfig:
    name: str = "notedeck"
    paths: Tuple[str, ...] = DEFAULT_ALLOWLIST
    tracked_only: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SourceConfig":
        section = _section(data, "source", {"name", "paths", "tracked_only"})
        paths = DEFAULT_ALLOWLIST
        if "paths" in section:
            paths = normalize_allowlist(_normalize_string_list(section["paths"], field_name="source.paths"))
        tracked_only = section.get("tracked_only", False)
        if not isinstance(tracked_only, bool):
            raise ConfigurationError("source.tracked_only must be a boolean", identifier="source.tracked_only")
        return cls(name=str(section.get("name", "notedeck")), paths=paths, tracked_only=tracked_only)


@dataclass(slots=True)
class ToolchainConfig:
    version: str = PINNED_VERSION
    components: Tuple[ComponentKind, ...] = tuple(sorted(ALL_COMPONENTS, key=lambda kind: kind.value))
    target: str | None = None
    llvm_root: str = DEFAULT_LLVM_ROOT

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ToolchainConfig":
        section = _section(data, "toolchain", {"version", "components", "target", "llvm_root"})
        defaults = cls()
        components = defaults.components
        if "components" in section:
            names = _normalize_string_list(section["components"], field_name="toolchain.components")
            components = tuple(ComponentKind.parse(name) for name in names)
        target = section.get("target")
        return cls(
            version=str(section.get("version", PINNED_VERSION)),
            components=components,
            target=str(target) if target else None,
            llvm_root=str(section.get("llvm_root", DEFAULT_LLVM_ROOT)),
        )

    def resolver(self) -> ToolchainResolver:
        return ToolchainResolver(version=self.version, llvm_root=self.llvm_root)


@dataclass(slots=True)
class NativeOverride:
    platform: str
    libraries: List[str] = field(default_factory=list)
    frameworks: List[str] = field(default_factory=list)
    tools: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Any, index: int) -> "NativeOverride":
        label = f"native.overrides[{index}]"
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"{label} must be a table", identifier=label)
        unknown = {str(key) for key in data} - {"platform", "libraries", "frameworks", "tools"}
        if unknown:
            raise ConfigurationError(f"{label} contains unknown keys: {', '.join(sorted(unknown))}", identifier=label)
        platform = data.get("platform")
        if not isinstance(platform, str) or not platform.strip():
            raise ConfigurationError(f"{label}.platform is required", identifier=label)
        predicate_from_string(platform)
        return cls(
            platform=platform.strip(),
            libraries=_normalize_string_list(data.get("libraries"), field_name=f"{label}.libraries"),
            frameworks=_normalize_string_list(data.get("frameworks"), field_name=f"{label}.frameworks"),
            tools=_normalize_string_list(data.get("tools"), field_name=f"{label}.tools"),
        )


@dataclass(slots=True)
class NativeConfig:
    features: List[str] = field(default_factory=list)
    overrides: List[NativeOverride] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "NativeConfig":
        section = _section(data, "native", {"features", "overrides"})
        raw_overrides = section.get("overrides", [])
        if not isinstance(raw_overrides, Sequence) or isinstance(raw_overrides, (str, bytes)):
            raise ConfigurationError("native.overrides must be an array of tables", identifier="native.overrides")
        return cls(
            features=_normalize_string_list(section.get("features"), field_name="native.features"),
            overrides=[NativeOverride.from_mapping(item, index) for index, item in enumerate(raw_overrides)],
        )

    def platform_config(self) -> PlatformConfig:
        rules = [
            extra_inputs_rule(
                f"override:{item.platform}",
                predicate_from_string(item.platform),
                libraries=item.libraries,
                frameworks=item.frameworks,
                tools=item.tools,
            )
            for item in self.overrides
        ]
        return PlatformConfig(rules, features=self.features)


@dataclass(slots=True)
class PackageGroupConfig:
    name: str
    members: List[str]
    main_program: str

    @classmethod
    def from_mapping(cls, name: str, data: Any) -> "PackageGroupConfig":
        label = f"packages.{name}"
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"[{label}] must be a table", identifier=label)
        unknown = {str(key) for key in data} - {"members", "main_program"}
        if unknown:
            raise ConfigurationError(f"[{label}] contains unknown keys: {', '.join(sorted(unknown))}", identifier=label)
        members = _normalize_string_list(data.get("members", [name]), field_name=f"{label}.members")
        if not members:
            raise ConfigurationError(f"[{label}] must list at least one member", identifier=label)
        main_program = data.get("main_program", name)
        if not isinstance(main_program, str) or not main_program.strip():
            raise ConfigurationError(f"{label}.main_program must be a non-empty string", identifier=label)
        return cls(name=name, members=members, main_program=main_program.strip())


@dataclass(slots=True)
class DeckConfiguration:
    root: Path
    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)
    native: NativeConfig = field(default_factory=NativeConfig)
    packages: Dict[str, PackageGroupConfig] = field(default_factory=dict)
    shell_environment: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SHELL_ENVIRONMENT))
    config_path: Path | None = None

    @classmethod
    def from_mapping(cls, root: Path, data: Mapping[str, Any], *, config_path: Path | None = None) -> "DeckConfiguration":
        unknown = {str(key) for key in data} - {"global", "source", "toolchain", "native", "packages", "shell"}
        if unknown:
            raise ConfigurationError(f"Unknown configuration sections: {', '.join(sorted(unknown))}", identifier=sorted(unknown)[0])

        packages_section = data.get("packages", {})
        if not isinstance(packages_section, Mapping):
            raise ConfigurationError("[packages] must be a table", identifier="packages")
        packages = {
            str(name): PackageGroupConfig.from_mapping(str(name), value) for name, value in packages_section.items()
        }
        if not packages:
            packages = {"notedeck": PackageGroupConfig(name="notedeck", members=["notedeck"], main_program="notedeck")}

        shell_section = _section(data, "shell", {"environment"})
        shell_environment = dict(DEFAULT_SHELL_ENVIRONMENT)
        env_section = shell_section.get("environment")
        if env_section is not None:
            if not isinstance(env_section, Mapping):
                raise ConfigurationError("shell.environment must be a table", identifier="shell.environment")
            shell_environment.update({str(key): str(value) for key, value in env_section.items()})

        global_config = GlobalConfig.from_mapping(data)
        if global_config.default_package not in packages:
            raise ConfigurationError(
                f"global.default_package '{global_config.default_package}' is not a configured package group",
                identifier=global_config.default_package,
            )
        return cls(
            root=root,
            global_config=global_config,
            source=SourceConfig.from_mapping(data),
            toolchain=ToolchainConfig.from_mapping(data),
            native=NativeConfig.from_mapping(data),
            packages=packages,
            shell_environment=shell_environment,
            config_path=config_path,
        )

    @property
    def cache_dir(self) -> Path:
        path = Path(self.global_config.cache_dir).expanduser()
        return path if path.is_absolute() else self.root / path

    def package(self, name: str | None = None) -> PackageGroupConfig:
        key = name or self.global_config.default_package
        if key not in self.packages:
            available = ", ".join(sorted(self.packages)) or "<none>"
            raise ConfigurationError(f"Package group '{key}' not found. Available groups: {available}", identifier=key)
        return self.packages[key]


def load_configuration(root: Path | str) -> DeckConfiguration:
    root_path = Path(root)
    config_path = find_config_file(root_path) if root_path.is_dir() else None
    if config_path is None:
        return DeckConfiguration.from_mapping(root_path, {})
    return DeckConfiguration.from_mapping(root_path, _load_config_file(config_path), config_path=config_path)


__all__ = [
    "CONFIG_STEM",
    "DeckConfiguration",
    "GlobalConfig",
    "NativeConfig",
    "NativeOverride",
    "PackageGroupConfig",
    "SourceConfig",
    "ToolchainConfig",
    "find_config_file",
    "load_configuration",
]
