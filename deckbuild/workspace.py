"""Cargo workspace model read from a filtered source tree."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Iterator, List, Mapping, Tuple
import fnmatch
import tomllib

from .errors import ConfigurationError
from .source_filter import MANIFEST_NAME, SourceTree

_BIN_STUB = "fn main() {}\n"
_LIB_STUB = ""
_BUILD_SCRIPT_STUB = "fn main() {}\n"


def _join(directory: str, relative: str) -> str:
    if not directory:
        return PurePosixPath(relative).as_posix()
    return (PurePosixPath(directory) / relative).as_posix()


@dataclass(frozen=True, slots=True)
class Target:
    name: str
    path: str
    kind: str


@dataclass(frozen=True, slots=True)
class WorkspaceMember:
    name: str
    directory: str
    targets: Tuple[Target, ...] = ()
    dependencies: Tuple[str, ...] = ()

    @property
    def executables(self) -> Tuple[str, ...]:
        return tuple(target.name for target in self.targets if target.kind == "bin")


@dataclass(frozen=True)
class Workspace:
    members: Tuple[WorkspaceMember, ...]
    dependencies: Tuple[str, ...] = field(default=())

    def member(self, name: str) -> WorkspaceMember:
        for member in self.members:
            if member.name == name:
                return member
        available = ", ".join(sorted(m.name for m in self.members)) or "<none>"
        raise ConfigurationError(
            f"Workspace member '{name}' not found. Available members: {available}",
            identifier=name,
        )

    def member_names(self) -> Tuple[str, ...]:
        return tuple(member.name for member in self.members)

    def stub_targets(self) -> Iterator[Tuple[str, str]]:
        """Yield ``(path, content)`` placeholders for every member target."""
        seen: set[str] = set()
        for member in self.members:
            for target in member.targets:
                if target.path in seen:
                    continue
                seen.add(target.path)
                if target.kind == "bin":
                    yield target.path, _BIN_STUB
                elif target.kind == "build":
                    yield target.path, _BUILD_SCRIPT_STUB
                else:
                    yield target.path, _LIB_STUB

    @classmethod
    def from_source_tree(cls, tree: SourceTree) -> "Workspace":
        if MANIFEST_NAME not in tree:
            raise ConfigurationError(f"Source tree '{tree.name}' has no {MANIFEST_NAME}", identifier=MANIFEST_NAME)
        root_manifest = _load_manifest(tree, MANIFEST_NAME)
        workspace_section = root_manifest.get("workspace")

        directories: List[str] = []
        if isinstance(workspace_section, Mapping):
            if isinstance(root_manifest.get("package"), Mapping):
                directories.append("")
            excluded = {str(item).rstrip("/") for item in workspace_section.get("exclude", [])}
            for pattern in workspace_section.get("members", []):
                for directory in _expand_member_pattern(tree, str(pattern).rstrip("/")):
                    if directory not in excluded and directory not in directories:
                        directories.append(directory)
        elif isinstance(root_manifest.get("package"), Mapping):
            directories.append("")
        else:
            raise ConfigurationError(
                f"{MANIFEST_NAME} must declare [package] or [workspace]",
                identifier=MANIFEST_NAME,
            )

        members = tuple(_read_member(tree, directory) for directory in directories)
        names = [member.name for member in members]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate workspace members: {', '.join(duplicates)}", identifier=duplicates[0])

        external: set[str] = set()
        for member in members:
            external.update(dep for dep in member.dependencies if dep not in names)
        if isinstance(workspace_section, Mapping):
            shared = workspace_section.get("dependencies")
            if isinstance(shared, Mapping):
                external.update(str(dep) for dep in shared if str(dep) not in names)
        return cls(members=members, dependencies=tuple(sorted(external)))


def _load_manifest(tree: SourceTree, path: str) -> Mapping[str, Any]:
    try:
        return tomllib.loads(tree.read_text(path))
    except KeyError as exc:
        raise ConfigurationError(f"Manifest '{path}' is not part of the filtered source", identifier=path) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Manifest '{path}' is not valid TOML: {exc}", identifier=path) from exc


def _expand_member_pattern(tree: SourceTree, pattern: str) -> List[str]:
    manifests = sorted(path for path in tree.paths if PurePosixPath(path).name == MANIFEST_NAME)
    candidates = [PurePosixPath(path).parent.as_posix() for path in manifests]
    candidates = ["" if candidate == "." else candidate for candidate in candidates]
    if not any(char in pattern for char in "*?["):
        if pattern not in candidates:
            raise ConfigurationError(
                f"Workspace member '{pattern}' has no {MANIFEST_NAME} in the filtered source",
                identifier=pattern,
            )
        return [pattern]
    return [candidate for candidate in candidates if candidate and _matches_member_pattern(candidate, pattern)]


def _matches_member_pattern(candidate: str, pattern: str) -> bool:
    # Wildcards never cross a path separator.
    parts = PurePosixPath(candidate).parts
    pattern_parts = PurePosixPath(pattern).parts
    if len(parts) != len(pattern_parts):
        return False
    return all(fnmatch.fnmatchcase(part, expected) for part, expected in zip(parts, pattern_parts))


def _read_member(tree: SourceTree, directory: str) -> WorkspaceMember:
    manifest_path = _join(directory, MANIFEST_NAME)
    manifest = _load_manifest(tree, manifest_path)
    package = manifest.get("package")
    if not isinstance(package, Mapping) or not package.get("name"):
        raise ConfigurationError(f"{manifest_path} is missing package.name", identifier=manifest_path)
    name = str(package["name"])
    paths = tree.paths
    targets: List[Target] = []

    lib_section = manifest.get("lib")
    lib_path = _join(directory, "src/lib.rs")
    if isinstance(lib_section, Mapping):
        lib_path = _join(directory, str(lib_section.get("path", "src/lib.rs")))
        targets.append(Target(name=str(lib_section.get("name", name)).replace("-", "_"), path=lib_path, kind="lib"))
    elif lib_path in paths:
        targets.append(Target(name=name.replace("-", "_"), path=lib_path, kind="lib"))

    declared_bins = manifest.get("bin", [])
    bin_names: set[str] = set()
    if isinstance(declared_bins, list):
        for entry in declared_bins:
            if not isinstance(entry, Mapping) or not entry.get("name"):
                raise ConfigurationError(f"{manifest_path} has a [[bin]] without a name", identifier=manifest_path)
            bin_name = str(entry["name"])
            default_path = "src/main.rs" if bin_name == name else f"src/bin/{bin_name}.rs"
            targets.append(Target(name=bin_name, path=_join(directory, str(entry.get("path", default_path))), kind="bin"))
            bin_names.add(bin_name)

    if package.get("autobins", True):
        main_path = _join(directory, "src/main.rs")
        if main_path in paths and name not in bin_names:
            targets.append(Target(name=name, path=main_path, kind="bin"))
            bin_names.add(name)
        bin_dir = _join(directory, "src/bin")
        for path in sorted(paths):
            if not path.startswith(f"{bin_dir}/"):
                continue
            relative = PurePosixPath(path[len(bin_dir) + 1:])
            if len(relative.parts) == 1 and relative.suffix == ".rs":
                bin_name = relative.stem
            elif len(relative.parts) == 2 and relative.name == "main.rs":
                bin_name = relative.parts[0]
            else:
                continue
            if bin_name not in bin_names:
                targets.append(Target(name=bin_name, path=path, kind="bin"))
                bin_names.add(bin_name)

    build_script = package.get("build")
    if isinstance(build_script, str):
        targets.append(Target(name="build-script-build", path=_join(directory, build_script), kind="build"))
    elif build_script is not False and _join(directory, "build.rs") in paths:
        targets.append(Target(name="build-script-build", path=_join(directory, "build.rs"), kind="build"))

    dependencies: set[str] = set()
    for section in ("dependencies", "build-dependencies"):
        table = manifest.get(section)
        if isinstance(table, Mapping):
            dependencies.update(_dependency_names(table))
    return WorkspaceMember(name=name, directory=directory, targets=tuple(targets), dependencies=tuple(sorted(dependencies)))


def _dependency_names(table: Mapping[str, Any]) -> List[str]:
    names: List[str] = []
    for key, value in table.items():
        if isinstance(value, Mapping) and value.get("package"):
            names.append(str(value["package"]))
        else:
            names.append(str(key))
    return names


__all__ = ["Target", "Workspace", "WorkspaceMember"]
