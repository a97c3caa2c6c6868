"""Fixtures shared by the artifact download tests.

``FakeTransport`` serves in-memory payloads keyed by location and records
every fetch so tests can assert how many transfers actually happened.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import pytest

from ImageBuild.ArtifactDownload.cache import CacheStore
from ImageBuild.ArtifactDownload.cancellation import CancellationToken
from ImageBuild.ArtifactDownload.errors import TransportError
from ImageBuild.ArtifactDownload.transport import ProgressSink, is_local_path

ANOTHER_CONTENT = b"another\n"

Payload = Union[bytes, BaseException, Callable[[Path, Optional[CancellationToken]], None]]


class FakeTransport:
    """Thread-safe in-memory transport with a fetch counter."""

    def __init__(self, payloads: Optional[Dict[str, Payload]] = None, *, delay: float = 0.0):
        self.payloads: Dict[str, Payload] = dict(payloads or {})
        self.delay = delay
        self.requested: List[str] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.requested)

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
        with self._lock:
            self.requested.append(location)
        if self.delay:
            time.sleep(self.delay)
        payload = self.payloads.get(location)
        if payload is None:
            raise TransportError(f"HTTP 404 fetching {location}", location=location, status_code=404)
        if isinstance(payload, BaseException):
            raise payload
        if callable(payload):
            payload(Path(destination), cancel_token)
            return
        Path(destination).write_bytes(payload)
        if progress is not None:
            progress(len(payload), len(payload))


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def cache_store(cache_root: Path) -> CacheStore:
    return CacheStore(cache_root, lock_timeout=5.0, poll_interval=0.01)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport({"https://mirror.example/another.txt": ANOTHER_CONTENT})


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    return FakeTransport
