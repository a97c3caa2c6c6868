# === NAVMAP v1 ===
# {
#   "module": "ImageBuild.ArtifactDownload.locks",
#   "purpose": "Cross-process file locking for cache entries with cancellation and metrics",
#   "sections": [
#     {"id": "artifact-lock", "name": "artifact_lock", "anchor": "function-artifact-lock", "kind": "function"},
#     {"id": "lock-metrics-snapshot", "name": "lock_metrics_snapshot", "anchor": "function-lock-metrics-snapshot", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""File-based locking for artifact cache entries.

Responsibilities
----------------
- Provide :func:`artifact_lock`, a context manager that holds an exclusive
  OS-level lock on ``<entry>.lock`` so independent build processes sharing a
  cache directory never download or install the same artifact concurrently.
- Honour a :class:`~ImageBuild.ArtifactDownload.cancellation.CancellationToken`
  while waiting, so an aborted build does not stay parked on another
  process's lock.
- Capture acquisition/hold timing via :func:`lock_metrics_snapshot` to
  troubleshoot contention between concurrent builds.

Design Notes
------------
- Locks are implemented with :mod:`filelock`; ``soft=True`` selects
  :class:`filelock.SoftFileLock` for filesystems without ``flock`` support.
- Every call builds its own lock object with ``thread_local=False`` so threads
  of one process contend exactly like separate processes do.
"""

from __future__ import annotations

import contextlib
from collections import deque
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Dict, Iterable, Iterator, Optional, Union

from filelock import FileLock, SoftFileLock, Timeout

from .cancellation import CancellationToken, raise_if_cancelled
from .errors import LockTimeoutError

__all__ = [
    "artifact_lock",
    "lock_metrics_snapshot",
]

LOGGER = logging.getLogger("ImageBuild.ArtifactDownload.locks")
logging.getLogger("filelock").setLevel(logging.INFO)

_DEFAULT_POLL_INTERVAL = 0.1  # seconds
_DEFAULT_LOCK_MODE = 0o644
_MAX_SAMPLES = 1024


@dataclass
class _LockMetrics:
    acquire_total: int = 0
    timeout_total: int = 0
    wait_ms_sum: float = 0.0
    wait_ms_samples: Deque[float] = field(default_factory=lambda: deque(maxlen=_MAX_SAMPLES))
    hold_ms_sum: float = 0.0
    hold_ms_samples: Deque[float] = field(default_factory=lambda: deque(maxlen=_MAX_SAMPLES))


_metrics_guard = threading.RLock()
_metrics: Dict[str, _LockMetrics] = {}

_CATEGORY = "artifact"


def _record_timeout(wait_ms: float) -> None:
    with _metrics_guard:
        metrics = _metrics.setdefault(_CATEGORY, _LockMetrics())
        metrics.timeout_total += 1
        metrics.wait_ms_sum += wait_ms
        metrics.wait_ms_samples.append(wait_ms)


def _record_success(wait_ms: float, hold_ms: float) -> None:
    with _metrics_guard:
        metrics = _metrics.setdefault(_CATEGORY, _LockMetrics())
        metrics.acquire_total += 1
        metrics.wait_ms_sum += wait_ms
        metrics.wait_ms_samples.append(wait_ms)
        metrics.hold_ms_sum += hold_ms
        metrics.hold_ms_samples.append(hold_ms)


def _p95(samples: Iterable[float]) -> float:
    ordered = sorted(float(value) for value in samples if value >= 0)
    if not ordered:
        return 0.0
    index = int(max(len(ordered) - 1, 0) * 0.95)
    return ordered[index]


class _LockContext:
    __slots__ = ("_lock", "_lock_file", "_wait_ms", "_acquired_at", "_released")

    def __init__(self, lock, lock_file: Path, wait_ms: float) -> None:
        self._lock = lock
        self._lock_file = lock_file
        self._wait_ms = wait_ms
        self._acquired_at = time.monotonic()
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        try:
            self._lock.release()
        finally:
            hold_ms = max((time.monotonic() - self._acquired_at) * 1000.0, 0.0)
            _record_success(self._wait_ms, hold_ms)
            LOGGER.debug(
                "lock-release lock_file=%s hold_ms=%.3f wait_ms=%.3f",
                self._lock_file,
                hold_ms,
                self._wait_ms,
            )
            self._released = True


def _acquire(
    lock,
    lock_file: Path,
    *,
    timeout: Optional[float],
    poll_interval: float,
    cancel_token: Optional[CancellationToken],
) -> float:
    start = time.monotonic()
    deadline = None if timeout is None or timeout < 0 else start + timeout
    while True:
        raise_if_cancelled(cancel_token, "lock wait")
        remaining = poll_interval if deadline is None else max(deadline - time.monotonic(), 0.0)
        slice_s = min(poll_interval, remaining)
        try:
            lock.acquire(timeout=slice_s, poll_interval=min(poll_interval, max(slice_s, 0.001)))
            return max((time.monotonic() - start) * 1000.0, 0.0)
        except Timeout:
            if deadline is not None and time.monotonic() >= deadline:
                wait_ms = max((time.monotonic() - start) * 1000.0, 0.0)
                LOGGER.info("lock-timeout wait_ms=%.3f lock_file=%s", wait_ms, lock_file)
                _record_timeout(wait_ms)
                raise LockTimeoutError(
                    f"timed out after {timeout:.1f}s waiting for cache lock {lock_file}",
                    lock_path=lock_file,
                    timeout=float(timeout),
                ) from None


@contextlib.contextmanager
def artifact_lock(
    lock_file: Path,
    *,
    timeout: Optional[float] = None,
    poll_interval: Optional[float] = None,
    cancel_token: Optional[CancellationToken] = None,
    soft: bool = False,
    mode: int = _DEFAULT_LOCK_MODE,
) -> Iterator[None]:
    """Hold an exclusive cross-process lock on ``lock_file`` for the ``with`` body.

    Args:
        lock_file: Path of the lock file; its parent directory is created.
        timeout: Seconds to wait before raising :class:`LockTimeoutError`;
            ``None`` waits indefinitely.
        poll_interval: Seconds between acquisition attempts and cancellation
            checks.
        cancel_token: Token whose cancellation aborts the wait with
            :class:`~ImageBuild.ArtifactDownload.errors.DownloadCancelledError`.
        soft: Use :class:`filelock.SoftFileLock` instead of an OS lock.
        mode: Permission bits applied to a newly created lock file.

    The lock is released on every exit path, including exceptions raised by
    the body.
    """

    lock_file = Path(lock_file)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock_cls = SoftFileLock if soft else FileLock
    lock = lock_cls(str(lock_file), mode=mode, thread_local=False)
    interval = poll_interval if poll_interval and poll_interval > 0 else _DEFAULT_POLL_INTERVAL

    wait_ms = _acquire(
        lock,
        lock_file,
        timeout=timeout,
        poll_interval=interval,
        cancel_token=cancel_token,
    )
    LOGGER.debug("lock-acquired wait_ms=%.3f lock_file=%s", wait_ms, lock_file)

    ctx = _LockContext(lock, lock_file, wait_ms)
    try:
        yield None
    finally:
        ctx.release()


def lock_metrics_snapshot(*, reset: bool = False) -> Dict[str, Dict[str, Union[int, float]]]:
    """Return a snapshot of collected lock metrics, optionally clearing them."""

    with _metrics_guard:
        snapshot: Dict[str, Dict[str, Union[int, float]]] = {}
        for category, metrics in _metrics.items():
            summary: Dict[str, Union[int, float]] = {
                "acquire_total": metrics.acquire_total,
                "timeout_total": metrics.timeout_total,
                "wait_ms_sum": metrics.wait_ms_sum,
                "wait_ms_p95": _p95(metrics.wait_ms_samples),
            }
            if metrics.hold_ms_samples:
                summary["hold_ms_sum"] = metrics.hold_ms_sum
                summary["hold_ms_p95"] = _p95(metrics.hold_ms_samples)
            snapshot[category] = summary
        if reset:
            _metrics.clear()
        return snapshot
