"""Deterministic ``tar.zst`` archives for build artifact directories."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Protocol, runtime_checkable
import hashlib
import os
import tarfile
import tempfile

import zstandard as zstd


@runtime_checkable
class ArchiveConsole(Protocol):
    """Minimal console interface required by :class:`ArchiveManager`."""

    dry_run: bool

    def info(self, message: str) -> None:
        ...

    def debug(self, message: str) -> None:
        ...


@dataclass(slots=True)
class ArchiveArtifact:
    """Description of filesystem content to package into an archive."""

    source_dir: Path
    label: str | None = None


@dataclass(frozen=True, slots=True)
class ArchiveResult:
    path: Path
    sha256: str
    size: int


def _iter_tree(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root, topdown=True):
        dirnames.sort()
        current = Path(dirpath)
        for name in dirnames:
            yield current / name
        for name in sorted(filenames):
            yield current / name


def _normalized_info(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    if info.isdir():
        info.mode = 0o755
    elif info.isfile():
        info.mode = 0o755 if info.mode & 0o111 else 0o644
    return info


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ArchiveManager:
    """Create and extract ``tar.zst`` archives.

    Members are written in sorted order with zeroed timestamps and ownership so
    that identical directory content always yields identical tar streams.
    """

    def __init__(self, console: ArchiveConsole, *, level: int = 10) -> None:
        self._console = console
        self._level = level

    @staticmethod
    def _zstd_thread_count(source_size: int) -> int:
        cpu_count = os.cpu_count() or 1
        if cpu_count <= 1:
            return 1
        size_mb = max(1, source_size) / (1024 * 1024)
        desired = 1
        if size_mb >= 32:
            desired = 2
        if size_mb >= 256:
            desired = 4
        if size_mb >= 1024:
            desired = 8
        return max(1, min(desired, cpu_count))

    def create_archive(self, *, artifact: ArchiveArtifact, target_path: Path | str) -> ArchiveResult:
        target = Path(target_path)
        source_dir = Path(artifact.source_dir)
        if not source_dir.is_dir():
            raise FileNotFoundError(f"Archive source directory '{source_dir}' does not exist")

        label = artifact.label or source_dir.name
        if self._console.dry_run:
            self._console.dry(f"Would archive {label} to {target}")
            return ArchiveResult(path=target, sha256="", size=0)

        target.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=target.parent, suffix=".tar", delete=False) as handle:
            temp_tar = Path(handle.name)
        try:
            with tarfile.open(temp_tar, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for item in _iter_tree(source_dir):
                    arcname = item.relative_to(source_dir).as_posix()
                    tar.add(item, arcname=arcname, recursive=False, filter=_normalized_info)
            size = temp_tar.stat().st_size
            params = zstd.ZstdCompressionParameters.from_level(
                self._level,
                threads=self._zstd_thread_count(size),
                write_checksum=True,
                write_content_size=True,
            )
            compressor = zstd.ZstdCompressor(compression_params=params)
            with temp_tar.open("rb") as src, target.open("wb") as dst:
                compressor.copy_stream(src, dst)
        finally:
            temp_tar.unlink(missing_ok=True)

        result = ArchiveResult(path=target, sha256=_sha256_file(target), size=target.stat().st_size)
        self._console.debug(f"Archived {label} ({result.size} bytes) to {target}")
        return result

    def extract_archive(self, *, archive_path: Path | str, destination_dir: Path | str) -> None:
        archive = Path(archive_path)
        dest = Path(destination_dir)
        if not archive.exists():
            raise FileNotFoundError(f"Archive '{archive}' does not exist")
        if self._console.dry_run:
            self._console.dry(f"Would extract {archive} to {dest}")
            return

        dest.mkdir(parents=True, exist_ok=True)
        dctx = zstd.ZstdDecompressor()
        with archive.open("rb") as ifh, dctx.stream_reader(ifh) as reader:
            with tarfile.open(fileobj=reader, mode="r|") as tar:
                tar.extractall(path=dest, filter="data")
        self._console.debug(f"Extracted {archive} to {dest}")

    @staticmethod
    def verify(archive_path: Path, expected_sha256: str) -> bool:
        return archive_path.exists() and _sha256_file(archive_path) == expected_sha256


__all__ = [
    "ArchiveArtifact",
    "ArchiveConsole",
    "ArchiveManager",
    "ArchiveResult",
]
