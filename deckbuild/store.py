"""Content-addressed artifact store with single-flight builds."""
from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping
import hashlib
import json
import os
import shutil
import threading
import uuid

from core.console import Console

from .errors import CacheKeyMismatchError

_MANIFEST = "manifest.json"
_DATA_DIR = "data"
_STAGING_DIR = ".staging"

BuildFn = Callable[[Path], Mapping[str, Any]]


def cache_key(kind: str, inputs: Mapping[str, Any]) -> str:
    canonical = json.dumps({"kind": kind, "inputs": inputs}, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class StoreEntry:
    key: str
    kind: str
    path: Path
    inputs: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def data_dir(self) -> Path:
        return self.path / _DATA_DIR


class ArtifactStore:
    """Directory of published build results, one subdirectory per cache key.

    Results are written to a staging directory and renamed into place only
    after the build callback returns, and invalidation renames an entry away
    before deleting it, so a lookup never observes a partial entry.
    Concurrent :meth:`get_or_build` calls for one key share a single build
    and all receive its entry or its exception.
    """

    def __init__(self, root: Path | str, *, console: Console | None = None) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._console = console or Console()
        self._lock = threading.Lock()
        self._inflight: Dict[str, Future[StoreEntry]] = {}
        self._generations: Dict[str, int] = {}
        self.builds = 0
        self.hits = 0

    def lookup(self, key: str) -> StoreEntry | None:
        entry_dir = self.root / key
        manifest_path = entry_dir / _MANIFEST
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            raise CacheKeyMismatchError(
                f"Store manifest for '{key}' is not valid JSON; invalidate the entry and rebuild",
                identifier=key,
            ) from exc
        if not isinstance(manifest, dict) or manifest.get("key") != key:
            raise CacheKeyMismatchError(
                f"Store manifest for '{key}' does not match its key; invalidate the entry and rebuild",
                identifier=key,
            )
        return StoreEntry(
            key=key,
            kind=str(manifest.get("kind", "")),
            path=entry_dir,
            inputs=manifest.get("inputs", {}),
            metadata=manifest.get("metadata", {}),
        )

    def contains(self, key: str) -> bool:
        return (self.root / key / _MANIFEST).is_file()

    def generation(self, key: str) -> int:
        with self._lock:
            return self._generations.get(key, 0)

    def get_or_build(self, key: str, *, kind: str, inputs: Mapping[str, Any], build: BuildFn) -> StoreEntry:
        with self._lock:
            existing = self.lookup(key)
            if existing is not None:
                self.hits += 1
                self._console.debug(f"Store hit for {kind} {key[:12]}")
                return existing
            future = self._inflight.get(key)
            owner = future is None
            if future is None:
                future = Future()
                self._inflight[key] = future

        if not owner:
            self._console.debug(f"Waiting for in-flight {kind} build {key[:12]}")
            return future.result()

        try:
            entry = self._build_and_publish(key, kind=kind, inputs=inputs, build=build)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(entry)
            return entry
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def _build_and_publish(self, key: str, *, kind: str, inputs: Mapping[str, Any], build: BuildFn) -> StoreEntry:
        staging = self.root / _STAGING_DIR / f"{key}-{uuid.uuid4().hex}"
        data_dir = staging / _DATA_DIR
        data_dir.mkdir(parents=True)
        try:
            with self._lock:
                self.builds += 1
            self._console.info(f"Building {kind} {key[:12]}")
            metadata = dict(build(data_dir))
            manifest = {"key": key, "kind": kind, "inputs": dict(inputs), "metadata": metadata}
            (staging / _MANIFEST).write_text(json.dumps(manifest, indent=2, sort_keys=True) + "\n", encoding="utf-8")
            final = self.root / key
            with self._lock:
                if final.exists() and not self.contains(key):
                    # Left behind by an interrupted removal.
                    shutil.rmtree(self._retire(final), ignore_errors=True)
                try:
                    os.replace(staging, final)
                except OSError:
                    # Another process published the same key first.
                    if not self.contains(key):
                        raise
            published = self.lookup(key)
            if published is None:
                raise CacheKeyMismatchError(f"Entry '{key}' vanished after publishing", identifier=key)
            return published
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            entry_dir = self.root / key
            if not entry_dir.exists():
                return False
            retired = self._retire(entry_dir)
        shutil.rmtree(retired, ignore_errors=True)
        self._console.info(f"Invalidated {key[:12]}")
        return True

    def _retire(self, entry_dir: Path) -> Path:
        """Move ``entry_dir`` out of the lookup path in one rename."""
        retired = self.root / _STAGING_DIR / f"{entry_dir.name}-dead-{uuid.uuid4().hex}"
        retired.parent.mkdir(parents=True, exist_ok=True)
        os.replace(entry_dir, retired)
        return retired

    def entries(self) -> List[StoreEntry]:
        found: List[StoreEntry] = []
        for child in sorted(self.root.iterdir()):
            if child.name.startswith(".") or not child.is_dir():
                continue
            entry = self.lookup(child.name)
            if entry is not None:
                found.append(entry)
        return found


__all__ = ["ArtifactStore", "StoreEntry", "cache_key"]
