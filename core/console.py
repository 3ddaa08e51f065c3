"""Leveled console output shared by the command line tools."""
from __future__ import annotations

from typing import TextIO
import sys
import threading


class Console:
    """Simple console output handler with configurable log level.

    Levels: none < error < info < debug
    Default: 'none' (no output)
    """

    LEVELS = {
        "none": 0,
        "error": 1,
        "info": 2,
        "debug": 3,
    }

    def __init__(
        self,
        level: str = "none",
        dry_run: bool = False,
        *,
        stream: TextIO | None = None,
        error_stream: TextIO | None = None,
    ) -> None:
        normalized = level.strip().lower()
        if normalized not in self.LEVELS:
            raise ValueError(f"Unknown log level '{level}'. Expected one of: {', '.join(self.LEVELS)}")
        self.level_name = normalized
        self.level = self.LEVELS[normalized]
        self.dry_run = dry_run
        self._stream = stream
        self._error_stream = error_stream
        self._lock = threading.Lock()

    def _emit(self, text: str, *, error: bool = False) -> None:
        target = (self._error_stream or sys.stderr) if error else (self._stream or sys.stdout)
        # Pipelines for several platforms may log concurrently.
        with self._lock:
            print(text, file=target)

    def info(self, message: str) -> None:
        if self.level >= self.LEVELS["info"]:
            self._emit(f"[INFO] {message}")

    def error(self, message: str) -> None:
        if self.level >= self.LEVELS["error"]:
            self._emit(f"[ERROR] {message}", error=True)

    def dry(self, message: str) -> None:
        if self.dry_run:
            self._emit(f"[DRY] {message}")

    def debug(self, message: str) -> None:
        if self.level >= self.LEVELS["debug"]:
            self._emit(f"[DEBUG] {message}")


__all__ = ["Console"]
