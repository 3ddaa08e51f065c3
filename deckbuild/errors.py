"""Exception hierarchy for the build pipeline."""
from __future__ import annotations


class BuildError(RuntimeError):
    """Base class for pipeline failures.

    ``identifier`` names the offending path, component, member or cache key so
    callers can report it without parsing the message.
    """

    def __init__(self, message: str, *, identifier: str | None = None) -> None:
        super().__init__(message)
        self.identifier = identifier


class ConfigurationError(BuildError):
    """Malformed or missing manifest, allowlist or entry-point reference."""


class SourceNotFoundError(ConfigurationError):
    """Raised when the source root does not exist."""


class EmptySourceError(ConfigurationError):
    """Raised when an allowlist matches no files."""


class EntryPointNotFoundError(ConfigurationError):
    """Raised when a package group's main program is not built by its members."""


class UnsupportedPlatformError(BuildError):
    """No toolchain or native-input resolution exists for the platform."""


class UnsupportedComponentError(UnsupportedPlatformError):
    """A requested toolchain component is unavailable on the platform."""


class CacheKeyMismatchError(BuildError):
    """Cached artifacts do not match the inputs they are being used with."""


class StaleDependencyArtifactsError(CacheKeyMismatchError):
    """Dependency artifacts were built from a different manifest or toolchain."""


class ArtifactInvalidatedError(CacheKeyMismatchError):
    """The workspace artifacts backing a package group were invalidated."""


class CompilationError(BuildError):
    """The toolchain reported a failure while compiling.

    ``member`` is the crate cargo failed on when it can be determined, and
    ``output`` holds the toolchain output verbatim.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        member: str | None = None,
        output: str = "",
        identifier: str | None = None,
    ) -> None:
        details = message
        if member:
            details = f"{details} (member: {member})"
        if output:
            details = f"{details}\n{output}"
        super().__init__(details, identifier=identifier)
        self.stage = stage
        self.member = member
        self.output = output


__all__ = [
    "ArtifactInvalidatedError",
    "BuildError",
    "CacheKeyMismatchError",
    "CompilationError",
    "ConfigurationError",
    "EmptySourceError",
    "EntryPointNotFoundError",
    "SourceNotFoundError",
    "StaleDependencyArtifactsError",
    "UnsupportedComponentError",
    "UnsupportedPlatformError",
]
