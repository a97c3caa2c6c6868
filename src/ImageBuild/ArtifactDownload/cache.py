"""Content-addressed artifact cache with per-entry cross-process locking.

Responsibilities
----------------
- Map a cache key (``<sha1>.<extension>``) to an entry path under the root
  and its sibling lock file ``<entry>.lock``.
- Hand out sibling temp paths so partially written transfers never appear
  under the final entry name.
- Install verified content with fsync + :func:`os.replace`, and discard
  entries found to be corrupt.

Existence probes (:meth:`CacheStore.exists`, :meth:`CacheStore.path`) are safe
without the lock; every write must happen inside :meth:`CacheStore.acquire`.
"""

from __future__ import annotations

import contextlib
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

from .cancellation import CancellationToken
from .errors import ArtifactIOError
from .locks import artifact_lock

__all__ = ["CacheEntry", "CacheStore"]

LOGGER = logging.getLogger("ImageBuild.ArtifactDownload.cache")

_TEMP_PREFIX = "."
_TEMP_MARKER = ".part-"


@dataclass(slots=True, frozen=True)
class CacheEntry:
    """Location of one cache slot and its advisory lock file."""

    key: str
    path: Path
    lock_path: Path


class CacheStore:
    """Filesystem cache directory owning every entry beneath ``root``.

    Args:
        root: Cache directory; created on demand.
        lock_timeout: Seconds to wait for an entry lock, ``None`` to wait
            indefinitely.
        poll_interval: Seconds between lock attempts and cancellation checks.
        soft_locks: Use marker-file locks instead of OS locks.
    """

    def __init__(
        self,
        root: Union[str, Path],
        *,
        lock_timeout: Optional[float] = None,
        poll_interval: float = 0.1,
        soft_locks: bool = False,
    ) -> None:
        self.root = Path(root).expanduser().resolve(strict=False)
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self.soft_locks = soft_locks

    def entry(self, key: str) -> CacheEntry:
        path = self.root / key
        return CacheEntry(key=key, path=path, lock_path=path.with_name(path.name + ".lock"))

    def path(self, key: str) -> Path:
        return self.entry(key).path

    def exists(self, key: str) -> bool:
        return self.entry(key).path.is_file()

    def size(self, key: str) -> int:
        try:
            return self.entry(key).path.stat().st_size
        except OSError as exc:
            raise ArtifactIOError(f"cannot stat cache entry: {exc}", path=self.path(key)) from exc

    @contextlib.contextmanager
    def acquire(
        self, key: str, *, cancel_token: Optional[CancellationToken] = None
    ) -> Iterator[CacheEntry]:
        """Hold the exclusive lock for ``key`` and yield its entry."""

        entry = self.entry(key)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ArtifactIOError(
                f"cannot create cache directory {self.root}: {exc}", path=self.root
            ) from exc
        with contextlib.ExitStack() as stack:
            try:
                stack.enter_context(
                    artifact_lock(
                        entry.lock_path,
                        timeout=self.lock_timeout,
                        poll_interval=self.poll_interval,
                        cancel_token=cancel_token,
                        soft=self.soft_locks,
                    )
                )
            except OSError as exc:
                raise ArtifactIOError(
                    f"cannot open cache lock {entry.lock_path}: {exc}", path=entry.lock_path
                ) from exc
            yield entry

    def temp_path(self, key: str) -> Path:
        """Return a unique sibling path for an in-flight transfer of ``key``."""

        return self.root / f"{_TEMP_PREFIX}{key}{_TEMP_MARKER}{uuid.uuid4().hex[:12]}"

    def install(self, temp_path: Path, key: str) -> Path:
        """Durably move a verified temp file into the entry path."""

        target = self.path(key)
        try:
            with open(temp_path, "rb") as handle:
                os.fsync(handle.fileno())
            os.replace(temp_path, target)
            _fsync_directory(self.root)
        except OSError as exc:
            raise ArtifactIOError(f"failed to install {target}: {exc}", path=target) from exc
        LOGGER.debug("installed cache entry", extra={"stage": "cache", "path": str(target)})
        return target

    def discard(self, key: str) -> None:
        """Remove a corrupt entry; a missing entry is not an error."""

        target = self.path(key)
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            raise ArtifactIOError(f"failed to remove {target}: {exc}", path=target) from exc
        LOGGER.info("discarded cache entry", extra={"stage": "cache", "path": str(target)})

    @staticmethod
    def remove_temp(temp_path: Path) -> None:
        with contextlib.suppress(FileNotFoundError):
            temp_path.unlink()


def _fsync_directory(directory: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
