"""Allowlist-based source filtering producing content-addressed trees."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Sequence, Tuple
import hashlib
import os
import shutil

import pygit2

from core.console import Console

from .errors import ConfigurationError, EmptySourceError, SourceNotFoundError

if TYPE_CHECKING:
    from .workspace import Workspace

DEFAULT_ALLOWLIST: Tuple[str, ...] = ("Cargo.toml", "Cargo.lock", ".cargo", "src")

MANIFEST_NAME = "Cargo.toml"
LOCKFILE_NAME = "Cargo.lock"
DEFAULT_TREE_NAME = "source"
_CONFIG_DIR = ".cargo"
_TOOLCHAIN_FILES = frozenset({"rust-toolchain", "rust-toolchain.toml"})
_GLOB_CHARS = frozenset("*?[")
_ALWAYS_SKIPPED = frozenset({".git"})


def normalize_allowlist(allowlist: Iterable[str]) -> Tuple[str, ...]:
    entries: List[str] = []
    for raw in allowlist:
        text = str(raw).strip().replace("\\", "/")
        while text.startswith("./"):
            text = text[2:]
        text = text.rstrip("/")
        if not text:
            raise ConfigurationError("Allowlist entries must not be empty", identifier=str(raw))
        if _GLOB_CHARS.intersection(text):
            raise ConfigurationError(
                f"Allowlist entry '{raw}' contains glob characters; use exact paths or directory prefixes",
                identifier=str(raw),
            )
        pure = PurePosixPath(text)
        if pure.is_absolute() or ".." in pure.parts:
            raise ConfigurationError(f"Allowlist entry '{raw}' escapes the source root", identifier=str(raw))
        normalized = pure.as_posix()
        if normalized not in entries:
            entries.append(normalized)
    if not entries:
        raise ConfigurationError("Allowlist must contain at least one entry")
    return tuple(entries)


def _matches(path: str, allowlist: Sequence[str]) -> bool:
    return any(path == entry or path.startswith(f"{entry}/") for entry in allowlist)


def _may_contain_match(directory: str, allowlist: Sequence[str]) -> bool:
    return any(
        entry == directory or entry.startswith(f"{directory}/") or directory.startswith(f"{entry}/")
        for entry in allowlist
    )


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True, slots=True)
class SourceFile:
    path: str
    sha256: str
    executable: bool = False


@dataclass(frozen=True)
class SourceTree:
    """Immutable snapshot of the allowlisted part of a source root.

    Equality and hashing consider only ``name`` and the file entries, so two
    snapshots of different checkouts with the same allowlisted bytes compare
    equal.
    """

    name: str
    root: Path = field(compare=False)
    files: Tuple[SourceFile, ...]
    digest: str

    @property
    def paths(self) -> FrozenSet[str]:
        return frozenset(entry.path for entry in self.files)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and any(entry.path == path for entry in self.files)

    def read_bytes(self, path: str) -> bytes:
        if path not in self:
            raise KeyError(f"'{path}' is not part of source tree '{self.name}'")
        return (self.root / path).read_bytes()

    def read_text(self, path: str) -> str:
        return self.read_bytes(path).decode("utf-8")

    def manifest_files(self) -> Tuple[SourceFile, ...]:
        return tuple(entry for entry in self.files if _is_manifest_path(entry.path))

    def manifest_digest(self) -> str:
        """Digest of manifests, lockfile and cargo configuration only."""
        return _digest_entries(self.name, self.manifest_files())

    def has_lockfile(self) -> bool:
        return LOCKFILE_NAME in self

    def materialize(self, dest: Path) -> Path:
        for entry in self.files:
            self._copy_entry(entry, dest)
        return dest

    def materialize_skeleton(self, dest: Path, workspace: "Workspace") -> Path:
        """Write manifests plus stub targets so only dependencies compile."""
        for entry in self.manifest_files():
            self._copy_entry(entry, dest)
        for relative, content in workspace.stub_targets():
            target = dest / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return dest

    def _copy_entry(self, entry: SourceFile, dest: Path) -> None:
        target = dest / entry.path
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.root / entry.path, target)
        target.chmod(0o755 if entry.executable else 0o644)


def _is_manifest_path(path: str) -> bool:
    pure = PurePosixPath(path)
    if pure.name == MANIFEST_NAME:
        return True
    if path == LOCKFILE_NAME or path in _TOOLCHAIN_FILES:
        return True
    return pure.parts[0] == _CONFIG_DIR and len(pure.parts) > 1


def _digest_entries(name: str, entries: Iterable[SourceFile]) -> str:
    digest = hashlib.sha256()
    digest.update(f"name:{name}\n".encode("utf-8"))
    for entry in entries:
        mode = "x" if entry.executable else "-"
        digest.update(f"{entry.path}\0{mode}\0{entry.sha256}\n".encode("utf-8"))
    return digest.hexdigest()


def _tracked_paths(root: Path) -> FrozenSet[str]:
    discovered = pygit2.discover_repository(str(root))
    if discovered is None:
        raise ConfigurationError(
            f"tracked_only requires '{root}' to be inside a git repository",
            identifier=str(root),
        )
    repo = pygit2.Repository(discovered)
    if repo.workdir is None:
        raise ConfigurationError(f"Repository for '{root}' has no working directory", identifier=str(root))
    workdir = Path(repo.workdir).resolve()
    try:
        prefix = root.resolve().relative_to(workdir).as_posix()
    except ValueError as exc:
        raise ConfigurationError(f"'{root}' is outside repository '{workdir}'", identifier=str(root)) from exc
    tracked: set[str] = set()
    for entry in repo.index:
        if prefix in {"", "."}:
            tracked.add(entry.path)
        elif entry.path.startswith(f"{prefix}/"):
            tracked.add(entry.path[len(prefix) + 1:])
    return frozenset(tracked)


def filter_sources(
    root: Path | str,
    allowlist: Iterable[str] = DEFAULT_ALLOWLIST,
    *,
    name: str = DEFAULT_TREE_NAME,
    tracked_only: bool = False,
    console: Console | None = None,
) -> SourceTree:
    """Snapshot the files under ``root`` selected by ``allowlist``.

    Entries are exact relative paths or directory prefixes. The result depends
    only on the selected paths, their bytes and their executable bit.
    """
    console = console or Console()
    root_path = Path(root).expanduser()
    if not root_path.is_dir():
        raise SourceNotFoundError(f"Source root '{root_path}' does not exist", identifier=str(root_path))
    entries = normalize_allowlist(allowlist)
    tracked = _tracked_paths(root_path) if tracked_only else None

    selected: Dict[str, SourceFile] = {}
    for dirpath, dirnames, filenames in os.walk(root_path, topdown=True):
        current = Path(dirpath)
        relative_dir = current.relative_to(root_path).as_posix()
        relative_dir = "" if relative_dir == "." else relative_dir
        kept: List[str] = []
        for dirname in sorted(dirnames):
            if dirname in _ALWAYS_SKIPPED:
                continue
            candidate = f"{relative_dir}/{dirname}" if relative_dir else dirname
            if _may_contain_match(candidate, entries):
                kept.append(dirname)
        dirnames[:] = kept
        for filename in filenames:
            relative = f"{relative_dir}/{filename}" if relative_dir else filename
            if not _matches(relative, entries):
                continue
            if tracked is not None and relative not in tracked:
                continue
            file_path = current / filename
            if not file_path.is_file():
                continue
            executable = bool(file_path.stat().st_mode & 0o111)
            selected[relative] = SourceFile(path=relative, sha256=_sha256_file(file_path), executable=executable)

    if not selected:
        raise EmptySourceError(
            f"Allowlist {list(entries)} matched no files under '{root_path}'",
            identifier=", ".join(entries),
        )

    files = tuple(selected[path] for path in sorted(selected))
    tree = SourceTree(name=name, root=root_path, files=files, digest=_digest_entries(name, files))
    console.debug(f"Filtered {len(files)} file(s) from {root_path} (digest {tree.digest[:12]})")
    return tree


__all__ = [
    "DEFAULT_ALLOWLIST",
    "DEFAULT_TREE_NAME",
    "LOCKFILE_NAME",
    "MANIFEST_NAME",
    "SourceFile",
    "SourceTree",
    "filter_sources",
    "normalize_allowlist",
]
