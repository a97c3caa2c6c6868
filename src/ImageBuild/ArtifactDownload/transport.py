"""Byte-transfer collaborators used by the download orchestrator.

Responsibilities
----------------
- Define the :class:`Transport` protocol the orchestrator depends on:
  ``fetch(location, destination, progress=..., cancel_token=...)`` plus
  ``is_local(location)``.
- Provide :class:`HttpTransport`, which streams remote artifacts with
  :class:`httpx.Client` and retries transient failures (connection resets,
  timeouts, 429/5xx) with a bounded :mod:`tenacity` policy.
- Provide :func:`copy_local` for plain paths and ``file://`` URLs.

Design Notes
------------
- Every failure attributable to the *source* surfaces as
  :class:`~ImageBuild.ArtifactDownload.errors.TransportError` so the
  orchestrator can fail over to the next location; failures writing the
  *destination* surface as ``ArtifactIOError`` and are fatal.
- Checksum mismatches are never retried here; that decision belongs to the
  orchestrator, which treats a mismatching source as wrong rather than flaky.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Callable, Optional, Protocol, Union
from urllib.parse import urlsplit
from urllib.request import url2pathname

import httpx
import tenacity
from tenacity import RetryCallState, retry_if_exception, stop_after_attempt, wait_random_exponential

from .cancellation import CancellationToken, raise_if_cancelled
from .errors import ArtifactIOError, TransportError

__all__ = [
    "ProgressSink",
    "Transport",
    "HttpTransport",
    "copy_local",
    "fetch_to_path",
    "is_local_path",
    "local_path_for",
]

LOGGER = logging.getLogger("ImageBuild.ArtifactDownload.transport")

ProgressSink = Callable[[int, Optional[int]], None]

_DEFAULT_CHUNK_SIZE = 1 << 20
_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
_DRIVE_PATTERN = re.compile(r"^[A-Za-z]:[\\/]")
_DEFAULT_TIMEOUT = httpx.Timeout(connect=10.0, read=60.0, write=60.0, pool=10.0)
_USER_AGENT = "imagebuild-artifacts/1.0"


class Transport(Protocol):
    """Collaborator able to materialise a source location at a local path."""

    def is_local(self, location: str) -> bool: ...

    def fetch(
        self,
        location: str,
        destination: Path,
        *,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None: ...


def is_local_path(location: str) -> bool:
    """Return True for filesystem paths, Windows drive paths, and ``file://`` URLs."""

    if _DRIVE_PATTERN.match(location):
        return True
    scheme = urlsplit(location).scheme.lower()
    return scheme in ("", "file")


def local_path_for(location: str) -> Path:
    """Translate a local location (plain path or ``file://`` URL) into a :class:`Path`."""

    if _DRIVE_PATTERN.match(location):
        return Path(location)
    parts = urlsplit(location)
    if parts.scheme.lower() == "file":
        return Path(url2pathname(parts.path))
    return Path(location).expanduser()


def copy_local(
    location: str,
    destination: Path,
    *,
    progress: Optional[ProgressSink] = None,
    cancel_token: Optional[CancellationToken] = None,
    chunk_size: int = _DEFAULT_CHUNK_SIZE,
) -> int:
    """Stream a local source into ``destination``; return the bytes copied."""

    source = local_path_for(location)
    try:
        reader = open(source, "rb")
        total: Optional[int] = source.stat().st_size
    except OSError as exc:
        raise TransportError(f"cannot open {source}: {exc}", location=location) from exc

    copied = 0
    with reader:
        try:
            writer = open(destination, "wb")
        except OSError as exc:
            raise ArtifactIOError(f"cannot create {destination}: {exc}", path=destination) from exc
        with writer:
            while True:
                raise_if_cancelled(cancel_token, "copy")
                try:
                    chunk = reader.read(chunk_size)
                except OSError as exc:
                    raise TransportError(f"cannot read {source}: {exc}", location=location) from exc
                if not chunk:
                    break
                try:
                    writer.write(chunk)
                except OSError as exc:
                    raise ArtifactIOError(
                        f"cannot write {destination}: {exc}", path=destination
                    ) from exc
                copied += len(chunk)
                if progress is not None:
                    progress(copied, total)
    return copied


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransportError) and exc.retryable


def _content_length(response: httpx.Response) -> Optional[int]:
    if response.headers.get("Content-Encoding"):
        return None
    raw = response.headers.get("Content-Length", "")
    return int(raw) if raw.isdigit() else None


class HttpTransport:
    """HTTP(S) transport backed by :mod:`httpx` with bounded transient retries.

    Args:
        client: Pre-configured client (tests inject :class:`httpx.MockTransport`);
            when omitted the transport owns one and closes it in :meth:`close`.
        timeout: Per-operation httpx timeouts (connect/read/write/pool).
        operation_timeout: Wall-clock budget in seconds for one transfer
            attempt; exceeding it fails the source.
        max_attempts: Attempts per source for transient failures.
        backoff_base: Multiplier for the randomised exponential backoff.
        backoff_max: Upper bound for one backoff sleep, in seconds.
        chunk_size: Bytes per streamed chunk.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        *,
        timeout: Optional[httpx.Timeout] = None,
        operation_timeout: Optional[float] = None,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        chunk_size: int = _DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.timeout = timeout or _DEFAULT_TIMEOUT
        self._owns_client = client is None
        self.client = client or httpx.Client(
            follow_redirects=True,
            timeout=self.timeout,
            headers={"User-Agent": _USER_AGENT},
        )
        self.operation_timeout = operation_timeout
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.chunk_size = chunk_size

    def __enter__(self) -> "HttpTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def is_local(self, location: str) -> bool:
        return is_local_path(location)

    def fetch(
        self,
        location: str,
        destination: Path,
        *,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        """Download ``location`` into ``destination``, retrying transient failures."""

        if self.is_local(location):
            copy_local(
                location,
                destination,
                progress=progress,
                cancel_token=cancel_token,
                chunk_size=self.chunk_size,
            )
            return

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            LOGGER.warning(
                "transfer retry",
                extra={
                    "stage": "transport",
                    "url": location,
                    "attempt": retry_state.attempt_number,
                    "sleep_sec": round(delay, 2),
                    "error": str(exc),
                },
            )

        retrying = tenacity.Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(_is_transient),
            before_sleep=_before_sleep,
            sleep=cancel_token.wait if cancel_token is not None else time.sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                raise_if_cancelled(cancel_token, "transfer")
                self._fetch_once(location, destination, progress, cancel_token)

    def _fetch_once(
        self,
        location: str,
        destination: Path,
        progress: Optional[ProgressSink],
        cancel_token: Optional[CancellationToken],
    ) -> None:
        deadline = (
            time.monotonic() + self.operation_timeout if self.operation_timeout else None
        )
        try:
            with self.client.stream("GET", location, timeout=self.timeout) as response:
                if response.status_code >= 400:
                    raise TransportError(
                        f"HTTP {response.status_code} fetching {location}",
                        location=location,
                        status_code=response.status_code,
                        retryable=response.status_code in _RETRYABLE_STATUSES,
                    )
                expected = _content_length(response)
                received = self._write_stream(
                    response, destination, expected, progress, cancel_token, deadline, location
                )
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"timed out fetching {location}: {exc}", location=location, retryable=True
            ) from exc
        except httpx.HTTPError as exc:
            transient = isinstance(
                exc,
                (httpx.ConnectError, httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError),
            )
            raise TransportError(
                f"failed to fetch {location}: {exc}", location=location, retryable=transient
            ) from exc

        if expected is not None and received != expected:
            raise TransportError(
                f"truncated transfer from {location}: expected {expected} bytes, got {received}",
                location=location,
                retryable=True,
            )

    def _write_stream(
        self,
        response: httpx.Response,
        destination: Path,
        expected: Optional[int],
        progress: Optional[ProgressSink],
        cancel_token: Optional[CancellationToken],
        deadline: Optional[float],
        location: str,
    ) -> int:
        received = 0
        try:
            handle = open(destination, "wb")
        except OSError as exc:
            raise ArtifactIOError(f"cannot create {destination}: {exc}", path=destination) from exc
        with handle:
            for chunk in response.iter_bytes(self.chunk_size):
                raise_if_cancelled(cancel_token, "transfer")
                if deadline is not None and time.monotonic() > deadline:
                    raise TransportError(
                        f"transfer from {location} exceeded {self.operation_timeout:.0f}s",
                        location=location,
                    )
                if not chunk:
                    continue
                try:
                    handle.write(chunk)
                except OSError as exc:
                    raise ArtifactIOError(
                        f"cannot write {destination}: {exc}", path=destination
                    ) from exc
                received += len(chunk)
                if progress is not None:
                    progress(received, expected)
        return received


def fetch_to_path(
    transport: Transport,
    location: str,
    destination: Union[str, Path],
    *,
    cancel_token: Optional[CancellationToken] = None,
) -> Path:
    """Fetch ``location`` through ``transport`` and return the destination path."""

    target = Path(destination)
    if transport.is_local(location):
        copy_local(location, target, cancel_token=cancel_token)
    else:
        transport.fetch(location, target, cancel_token=cancel_token)
    return target
