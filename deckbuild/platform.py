"""Platform identifiers and platform predicates."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Tuple
import platform as _host

from .errors import ConfigurationError

_OS_ALIASES: Dict[str, str] = {
    "linux": "linux",
    "darwin": "darwin",
    "macos": "darwin",
    "osx": "darwin",
    "windows": "windows",
    "win32": "windows",
}

_ARCH_ALIASES: Dict[str, str] = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "i686": "i686",
    "x86": "i686",
    "riscv64": "riscv64",
}

DEFAULT_SYSTEMS: Tuple[str, ...] = (
    "x86_64-linux",
    "aarch64-linux",
    "x86_64-darwin",
    "aarch64-darwin",
)


@dataclass(frozen=True, slots=True)
class Platform:
    os: str
    arch: str

    @property
    def system(self) -> str:
        return f"{self.arch}-{self.os}"

    @property
    def is_darwin(self) -> bool:
        return self.os == "darwin"

    @property
    def is_linux(self) -> bool:
        return self.os == "linux"

    def __str__(self) -> str:
        return self.system

    @classmethod
    def parse(cls, value: str, *, host: "Platform | None" = None) -> "Platform":
        """Parse ``<arch>-<os>`` system strings or a bare OS alias.

        A bare alias such as ``macos`` is completed with the host architecture.
        """
        text = value.strip().lower()
        if not text:
            raise ConfigurationError("Platform identifier must not be empty", identifier=value)
        if text in _OS_ALIASES:
            arch = (host or detect_host()).arch
            return cls(os=_OS_ALIASES[text], arch=arch)
        arch_part, sep, os_part = text.partition("-")
        if not sep or os_part not in _OS_ALIASES or arch_part not in _ARCH_ALIASES:
            raise ConfigurationError(
                f"Unrecognised platform '{value}'. Use '<arch>-<os>' such as 'x86_64-linux'",
                identifier=value,
            )
        return cls(os=_OS_ALIASES[os_part], arch=_ARCH_ALIASES[arch_part])


def detect_host() -> Platform:
    os_name = _OS_ALIASES.get(_host.system().lower(), _host.system().lower())
    machine = _host.machine().lower()
    return Platform(os=os_name, arch=_ARCH_ALIASES.get(machine, machine))


PlatformPredicate = Callable[[Platform], bool]


def is_darwin(target: Platform) -> bool:
    return target.is_darwin


def is_linux(target: Platform) -> bool:
    return target.is_linux


def always(_: Platform) -> bool:
    return True


def predicate_from_string(expression: str) -> PlatformPredicate:
    """Build a predicate from ``darwin``, ``!darwin``, ``*`` or a system string."""
    text = expression.strip().lower()
    if not text:
        raise ConfigurationError("Platform predicate must not be empty", identifier=expression)
    if text.startswith("!"):
        inner = predicate_from_string(text[1:])
        return lambda target: not inner(target)
    if text in {"*", "all"}:
        return always
    if text in _OS_ALIASES:
        os_name = _OS_ALIASES[text]
        return lambda target: target.os == os_name
    parsed = Platform.parse(text)
    return lambda target: target == parsed


__all__ = [
    "DEFAULT_SYSTEMS",
    "Platform",
    "PlatformPredicate",
    "always",
    "detect_host",
    "is_darwin",
    "is_linux",
    "predicate_from_string",
]
