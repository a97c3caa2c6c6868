"""Cooperative cancellation primitive shared by lock waits, transfers, and hashing.

A build may be aborted at any point while an artifact is being acquired.  The
:class:`CancellationToken` below is checked at every suspension point (lock
polling, streamed chunks, hashing, and between sources) so that cleanup code
can remove partial temp files and release the cache lock predictably instead
of relying on thread interruption.
"""

from __future__ import annotations

import threading
from typing import Optional

from .errors import DownloadCancelledError

__all__ = ["CancellationToken", "raise_if_cancelled"]


class CancellationToken:
    """Thread-safe cancellation token for cooperative task cancellation.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self) -> None:
        self._is_cancelled = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        """Signal that cancellation has been requested."""
        with self._lock:
            if self._reason is None:
                self._reason = reason
            self._is_cancelled.set()

    def is_cancelled(self) -> bool:
        """Return True if cancellation has been requested."""
        return self._is_cancelled.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds, waking early when cancelled.

        Returns:
            True if the token was cancelled before the timeout elapsed.
        """
        return self._is_cancelled.wait(timeout)

    def raise_if_cancelled(self, operation: str = "download") -> None:
        """Raise :class:`DownloadCancelledError` when cancellation was requested."""
        if self._is_cancelled.is_set():
            detail = f": {self._reason}" if self._reason else ""
            raise DownloadCancelledError(f"{operation} cancelled{detail}")


def raise_if_cancelled(token: Optional[CancellationToken], operation: str = "download") -> None:
    """Check an optional token; a missing token never cancels."""

    if token is not None:
        token.raise_if_cancelled(operation)
