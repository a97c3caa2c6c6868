# === NAVMAP v1 ===
# {
#   "module": "ImageBuild.ArtifactDownload",
#   "purpose": "Package initialization for ImageBuild.ArtifactDownload",
#   "sections": []
# }
# === /NAVMAP ===

"""Public API for checksum-verified, cache-deduplicated artifact acquisition.

Typical use from a build pipeline::

    from ImageBuild.ArtifactDownload import ArtifactConfig, DownloadStep

    step = DownloadStep.from_config(ArtifactConfig(source_urls=[...], checksum="sha256:..."))
    action = step.run(state)

Lower-level callers can drive :class:`DownloadOrchestrator` directly with a
:class:`CacheStore` and any :class:`Transport`.
"""

from __future__ import annotations

from .cache import CacheEntry, CacheStore
from .cache_keys import cache_key
from .cancellation import CancellationToken
from .checksums import (
    ChecksumAlgorithm,
    ChecksumSpec,
    parse_checksum_file,
    resolve_checksum,
    split_checksum_annotation,
)
from .config import ArtifactConfig, DownloadSettings, load_config
from .download import DownloadOrchestrator, DownloadResult, DownloadState, SourceAttempt
from .errors import (
    AllSourcesExhaustedError,
    ArtifactDownloadError,
    ArtifactIOError,
    ChecksumParseError,
    ConfigError,
    DownloadCancelledError,
    LockTimeoutError,
    TransportError,
    VerificationMismatchError,
)
from .step import DownloadStep, StepAction
from .transport import HttpTransport, Transport
from .verify import IntegrityVerifier

__version__ = "0.1.0"

__all__ = [
    "AllSourcesExhaustedError",
    "ArtifactConfig",
    "ArtifactDownloadError",
    "ArtifactIOError",
    "CacheEntry",
    "CacheStore",
    "CancellationToken",
    "ChecksumAlgorithm",
    "ChecksumParseError",
    "ChecksumSpec",
    "ConfigError",
    "DownloadCancelledError",
    "DownloadOrchestrator",
    "DownloadResult",
    "DownloadSettings",
    "DownloadState",
    "DownloadStep",
    "HttpTransport",
    "IntegrityVerifier",
    "LockTimeoutError",
    "SourceAttempt",
    "StepAction",
    "Transport",
    "TransportError",
    "VerificationMismatchError",
    "cache_key",
    "load_config",
    "parse_checksum_file",
    "resolve_checksum",
    "split_checksum_annotation",
]
