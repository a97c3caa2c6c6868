# === NAVMAP v1 ===
# {
#   "module": "ImageBuild.ArtifactDownload.download",
#   "purpose": "Obtain one verified, cached copy of an artifact from an ordered list of sources",
#   "sections": [
#     {"id": "downloadstate", "name": "DownloadState", "anchor": "class-downloadstate", "kind": "class"},
#     {"id": "sourceattempt", "name": "SourceAttempt", "anchor": "class-sourceattempt", "kind": "class"},
#     {"id": "downloadresult", "name": "DownloadResult", "anchor": "class-downloadresult", "kind": "class"},
#     {"id": "downloadorchestrator", "name": "DownloadOrchestrator", "anchor": "class-downloadorchestrator", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Checksum-verified, cache-deduplicating artifact downloads.

:class:`DownloadOrchestrator` turns an ordered list of candidate locations and
a :class:`~ImageBuild.ArtifactDownload.checksums.ChecksumSpec` into the path of
one verified file inside the artifact cache:

1. Strip ``checksum=`` annotations from the locations and check them against
   the declared checksum. A pending checksum file is fetched exactly once and
   its digest is checked against the annotations too.
2. Derive the cache key and take the entry's cross-process lock.
3. On a hit, re-hash the entry.  A mismatch deletes the entry and falls
   through to a fresh download.
4. Otherwise try each source in order, streaming into a sibling temp file.
   Transport failures and digest mismatches are logged and absorbed; the next
   source is tried.
5. Install the first verified temp file atomically, or raise
   :class:`~ImageBuild.ArtifactDownload.errors.AllSourcesExhaustedError`.

The lock is released and temp files are removed on every exit path, including
cancellation.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .cache import CacheEntry, CacheStore
from .cache_keys import cache_key
from .cancellation import CancellationToken, raise_if_cancelled
from .checksums import (
    ChecksumSpec,
    merge_annotations,
    resolve_pending,
    split_checksum_annotation,
)
from .errors import (
    AllSourcesExhaustedError,
    ArtifactIOError,
    ChecksumParseError,
    ConfigError,
    TransportError,
    VerificationMismatchError,
)
from .transport import ProgressSink, Transport, copy_local, fetch_to_path
from .verify import IntegrityVerifier

__all__ = ["DownloadState", "SourceAttempt", "DownloadResult", "DownloadOrchestrator"]

LOGGER = logging.getLogger("ImageBuild.ArtifactDownload.download")

_MAX_CHECKSUM_BYTES = 1 << 20


class DownloadState(str, Enum):
    """Lifecycle of one :meth:`DownloadOrchestrator.obtain` call."""

    IDLE = "idle"
    LOCK_ACQUIRED = "lock-acquired"
    CACHE_HIT_VERIFYING = "cache-hit-verifying"
    CACHE_MISS = "cache-miss"
    TRYING_SOURCE = "trying-source"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class SourceAttempt:
    """Outcome of trying one source location."""

    location: str
    outcome: str
    error: Optional[str] = None


@dataclass(slots=True)
class DownloadResult:
    """Result metadata for a completed acquisition.

    Attributes:
        path: Final path of the verified artifact inside the cache.
        status: ``cached`` when an existing entry was reused, ``downloaded``
            when a source was transferred.
        spec: Fully resolved checksum the artifact was verified against.
        source: Location that produced the artifact; ``None`` on a cache hit.
        attempts: Per-source outcomes in the order they were tried.
        state: Terminal state of the call.
    """

    path: Path
    status: str
    spec: ChecksumSpec
    source: Optional[str] = None
    attempts: List[SourceAttempt] = field(default_factory=list)
    state: DownloadState = DownloadState.DONE


class _Run:
    __slots__ = ("key", "state")

    def __init__(self) -> None:
        self.key: Optional[str] = None
        self.state = DownloadState.IDLE

    def transition(self, state: DownloadState, **fields: object) -> None:
        LOGGER.debug(
            "download state %s -> %s",
            self.state.value,
            state.value,
            extra={"stage": "download", "cache_key": self.key, **fields},
        )
        self.state = state


class DownloadOrchestrator:
    """Obtain verified artifacts through a shared :class:`CacheStore`.

    Args:
        cache: Cache store, or a directory from which one is built.
        transport: Collaborator used to fetch remote locations.
        verifier: Digest verifier; a fresh :class:`IntegrityVerifier` by default.
        max_checksum_bytes: Upper bound on the size of a fetched checksum file.
    """

    def __init__(
        self,
        cache: Union[CacheStore, str, Path],
        transport: Transport,
        *,
        verifier: Optional[IntegrityVerifier] = None,
        max_checksum_bytes: int = _MAX_CHECKSUM_BYTES,
    ) -> None:
        self.cache = cache if isinstance(cache, CacheStore) else CacheStore(cache)
        self.transport = transport
        self.verifier = verifier or IntegrityVerifier()
        self.max_checksum_bytes = max_checksum_bytes

    def obtain(
        self,
        sources: Sequence[str],
        spec: ChecksumSpec,
        target_extension: str = "iso",
        *,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[ProgressSink] = None,
    ) -> DownloadResult:
        """Return the cached path of a verified copy of the artifact.

        Args:
            sources: Candidate locations tried in order; may carry
                ``checksum=`` query annotations.
            spec: Expected checksum; a pending spec is resolved here.
            target_extension: Extension of the cache entry.
            cancel_token: Aborts lock waits, transfers, and hashing.
            progress: Receives ``(bytes_done, total_or_None)`` during transfers.

        Raises:
            ConfigError: If no sources are given or annotations conflict.
            ChecksumParseError: If a checksum file cannot be fetched or is unusable.
            LockTimeoutError: If another process holds the entry too long.
            ArtifactIOError: If the cache directory cannot be read or written.
            AllSourcesExhaustedError: If no source yielded a verified file.
            DownloadCancelledError: If ``cancel_token`` was cancelled.
        """

        locations: List[str] = []
        annotations: List[Optional[str]] = []
        for raw in sources:
            if not raw or not raw.strip():
                continue
            bare, annotation = split_checksum_annotation(raw.strip())
            locations.append(bare)
            annotations.append(annotation)
        if not locations:
            raise ConfigError("at least one source location is required")

        run = _Run()
        try:
            spec = merge_annotations(spec, annotations)
            if spec.is_pending:
                spec = merge_annotations(
                    self._resolve_spec(spec, locations, cancel_token), annotations
                )
            run.key = cache_key(spec, target_extension, locations)
            with self.cache.acquire(run.key, cancel_token=cancel_token) as entry:
                run.transition(DownloadState.LOCK_ACQUIRED, path=str(entry.path))
                if entry.path.is_file() and self._reuse_cached(entry, spec, run, cancel_token):
                    run.transition(DownloadState.DONE, status="cached")
                    LOGGER.info(
                        "artifact cache hit",
                        extra={"stage": "download", "path": str(entry.path)},
                    )
                    return DownloadResult(entry.path, "cached", spec, state=run.state)
                run.transition(DownloadState.CACHE_MISS)
                return self._download(entry, spec, locations, run, cancel_token, progress)
        except BaseException:
            if run.state is not DownloadState.DONE:
                run.transition(DownloadState.FAILED)
            raise

    def _resolve_spec(
        self,
        spec: ChecksumSpec,
        locations: Sequence[str],
        cancel_token: Optional[CancellationToken],
    ) -> ChecksumSpec:
        if not spec.is_pending:
            return spec

        def _fetch_text(url: str) -> str:
            return self._fetch_checksum_text(url, cancel_token)

        return resolve_pending(spec, locations[0], _fetch_text)

    def _fetch_checksum_text(self, url: str, cancel_token: Optional[CancellationToken]) -> str:
        with tempfile.TemporaryDirectory(prefix="imagebuild-checksum-") as tmp:
            try:
                destination = fetch_to_path(
                    self.transport, url, Path(tmp) / "checksums", cancel_token=cancel_token
                )
            except TransportError as exc:
                raise ChecksumParseError(f"cannot fetch checksum file {url}: {exc}") from exc
            try:
                size = destination.stat().st_size
                if size > self.max_checksum_bytes:
                    raise ChecksumParseError(
                        f"checksum file {url} is {size} bytes; limit is {self.max_checksum_bytes}"
                    )
                return destination.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                raise ArtifactIOError(
                    f"cannot read checksum file fetched from {url}: {exc}", path=destination
                ) from exc

    def _reuse_cached(
        self,
        entry: CacheEntry,
        spec: ChecksumSpec,
        run: _Run,
        cancel_token: Optional[CancellationToken],
    ) -> bool:
        run.transition(DownloadState.CACHE_HIT_VERIFYING)
        if spec.is_none:
            if self.cache.size(entry.key) > 0:
                return True
            LOGGER.warning(
                "cached artifact is empty; re-downloading",
                extra={"stage": "download", "path": str(entry.path)},
            )
            self.cache.discard(entry.key)
            return False
        if self.verifier.verify(entry.path, spec, cancel_token=cancel_token):
            return True
        LOGGER.warning(
            "cached artifact failed verification; re-downloading",
            extra={
                "stage": "download",
                "path": str(entry.path),
                "algorithm": spec.algorithm.value,
            },
        )
        self.cache.discard(entry.key)
        return False

    def _download(
        self,
        entry: CacheEntry,
        spec: ChecksumSpec,
        locations: Sequence[str],
        run: _Run,
        cancel_token: Optional[CancellationToken],
        progress: Optional[ProgressSink],
    ) -> DownloadResult:
        attempts: List[SourceAttempt] = []
        last_error: Optional[BaseException] = None
        for index, location in enumerate(locations, start=1):
            raise_if_cancelled(cancel_token)
            run.transition(DownloadState.TRYING_SOURCE, source=location, index=index)
            temp_path = self.cache.temp_path(entry.key)
            try:
                self._transfer(location, temp_path, cancel_token, progress)
                run.transition(DownloadState.VERIFYING, source=location)
                self.verifier.ensure(temp_path, spec, cancel_token=cancel_token)
            except (TransportError, VerificationMismatchError) as exc:
                self.cache.remove_temp(temp_path)
                outcome = (
                    "checksum-mismatch"
                    if isinstance(exc, VerificationMismatchError)
                    else "transport-error"
                )
                attempts.append(SourceAttempt(location, outcome, str(exc)))
                last_error = exc
                LOGGER.warning(
                    "source failed",
                    extra={
                        "stage": "download",
                        "source": location,
                        "outcome": outcome,
                        "error": str(exc),
                        "remaining": len(locations) - index,
                    },
                )
                continue
            except BaseException:
                self.cache.remove_temp(temp_path)
                raise

            try:
                path = self.cache.install(temp_path, entry.key)
            except ArtifactIOError:
                self.cache.remove_temp(temp_path)
                raise
            attempts.append(SourceAttempt(location, "ok"))
            run.transition(DownloadState.DONE, status="downloaded", source=location)
            LOGGER.info(
                "artifact downloaded",
                extra={"stage": "download", "source": location, "path": str(path)},
            )
            return DownloadResult(path, "downloaded", spec, location, attempts, run.state)

        raise AllSourcesExhaustedError(
            f"{last_error} ({len(locations)} source(s) tried)",
            attempts=attempts,
            last_error=last_error,
        )

    def _transfer(
        self,
        location: str,
        temp_path: Path,
        cancel_token: Optional[CancellationToken],
        progress: Optional[ProgressSink],
    ) -> None:
        if self.transport.is_local(location):
            copy_local(location, temp_path, progress=progress, cancel_token=cancel_token)
        else:
            self.transport.fetch(
                location, temp_path, progress=progress, cancel_token=cancel_token
            )
