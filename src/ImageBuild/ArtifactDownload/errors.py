# === NAVMAP v1 ===
# {
#   "module": "ImageBuild.ArtifactDownload.errors",
#   "purpose": "Define the exception hierarchy used across checksum resolution, caching, and download",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "configuration", "name": "Configuration & Parse Errors", "anchor": "CFG", "kind": "api"},
#     {"id": "cache", "name": "Cache & Lock Errors", "anchor": "CCH", "kind": "api"},
#     {"id": "source", "name": "Per-Source Failures", "anchor": "SRC", "kind": "api"},
#     {"id": "terminal", "name": "Terminal Failures", "anchor": "TRM", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Exception hierarchy shared across checksum resolution, caching, and download.

Artifact acquisition spans configuration validation, checksum-file parsing,
cross-process locking, byte transfer, and digest verification.  The classes
below group those failure modes so the step adapter and CLI can translate an
outcome into a halt/continue decision (and an exit code) without inspecting
messages.

Two classes are *per-source* failures (:class:`TransportError`,
:class:`VerificationMismatchError`): the orchestrator absorbs them and moves on
to the next candidate location.  Everything else propagates to the caller.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

__all__ = [
    "ArtifactDownloadError",
    "ConfigError",
    "ChecksumParseError",
    "ArtifactIOError",
    "LockTimeoutError",
    "TransportError",
    "VerificationMismatchError",
    "AllSourcesExhaustedError",
    "DownloadCancelledError",
]


class ArtifactDownloadError(RuntimeError):
    """Base exception for artifact checksum, cache, and download failures."""

    exit_code = 1


class ConfigError(ArtifactDownloadError):
    """Raised when checksum or source configuration is malformed or conflicting."""

    exit_code = 2


class ChecksumParseError(ArtifactDownloadError):
    """Raised when a checksum file has no usable entry for the target artifact."""

    exit_code = 5


class ArtifactIOError(ArtifactDownloadError):
    """Raised when the local filesystem fails while reading or writing cache files."""

    exit_code = 6

    def __init__(self, message: str, *, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class LockTimeoutError(ArtifactDownloadError):
    """Raised when another process holds a cache lock beyond the configured wait."""

    exit_code = 3

    def __init__(self, message: str, *, lock_path: Path, timeout: float) -> None:
        super().__init__(message)
        self.lock_path = lock_path
        self.timeout = timeout


class TransportError(ArtifactDownloadError):
    """Raised when a single source location cannot be fetched."""

    def __init__(
        self,
        message: str,
        *,
        location: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.location = location
        self.status_code = status_code
        self.retryable = retryable


class VerificationMismatchError(ArtifactDownloadError):
    """Raised when a file's digest does not match the expected checksum."""

    def __init__(self, message: str, *, path: Path, expected: str, actual: str) -> None:
        super().__init__(message)
        self.path = path
        self.expected = expected
        self.actual = actual


class AllSourcesExhaustedError(ArtifactDownloadError):
    """Raised when every candidate location failed to yield a verified artifact."""

    exit_code = 4

    def __init__(
        self,
        message: str,
        *,
        attempts: Sequence[object] = (),
        last_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.attempts = tuple(attempts)
        self.last_error = last_error


class DownloadCancelledError(ArtifactDownloadError):
    """Raised when cooperative cancellation interrupts an acquisition."""

    exit_code = 130
