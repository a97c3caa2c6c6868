"""Streaming digest verification for cached and freshly transferred artifacts."""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path
from typing import Optional, Union

from .cancellation import CancellationToken, raise_if_cancelled
from .checksums import ChecksumAlgorithm, ChecksumSpec
from .errors import ArtifactIOError, VerificationMismatchError

__all__ = ["IntegrityVerifier", "compute_digest"]

LOGGER = logging.getLogger("ImageBuild.ArtifactDownload.verify")

_DEFAULT_CHUNK_SIZE = 1 << 20  # 1 MiB


def compute_digest(
    path: Union[str, Path],
    algorithm: ChecksumAlgorithm,
    *,
    chunk_size: int = _DEFAULT_CHUNK_SIZE,
    cancel_token: Optional[CancellationToken] = None,
) -> str:
    """Return the lowercase hex digest of ``path`` without loading it whole.

    Raises:
        ArtifactIOError: If the file cannot be opened or read.
        ValueError: If ``algorithm`` is not a digest algorithm.
    """

    if not algorithm.is_digest:
        raise ValueError(f"'{algorithm.value}' is not a digest algorithm")
    hasher = hashlib.new(algorithm.value)
    try:
        with open(path, "rb") as handle:
            while True:
                raise_if_cancelled(cancel_token, "verification")
                chunk = handle.read(chunk_size)
                if not chunk:
                    break
                hasher.update(chunk)
    except OSError as exc:
        raise ArtifactIOError(f"cannot read {path}: {exc}", path=Path(path)) from exc
    return hasher.hexdigest()


class IntegrityVerifier:
    """Compare a file's digest with the expected value in a :class:`ChecksumSpec`.

    Attributes:
        chunk_size: Bytes read per iteration.
        files_hashed: Number of files run through the hashing path; lets
            callers confirm that ``none`` checksums never read the artifact.
    """

    def __init__(self, *, chunk_size: int = _DEFAULT_CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size
        self.files_hashed = 0
        self._counter_lock = threading.Lock()

    def ensure(
        self,
        path: Union[str, Path],
        spec: ChecksumSpec,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        """Raise :class:`VerificationMismatchError` unless ``path`` matches ``spec``."""

        if spec.is_none:
            return
        if spec.is_pending:
            raise ValueError("pending checksum must be resolved before verification")
        with self._counter_lock:
            self.files_hashed += 1
        actual = compute_digest(
            path, spec.algorithm, chunk_size=self.chunk_size, cancel_token=cancel_token
        )
        LOGGER.debug(
            "verified artifact",
            extra={
                "stage": "verify",
                "path": str(path),
                "algorithm": spec.algorithm.value,
                "matched": actual == spec.value,
            },
        )
        if actual != spec.value:
            raise VerificationMismatchError(
                f"{spec.algorithm.value} mismatch for {Path(path).name}: "
                f"expected {spec.value}, got {actual}",
                path=Path(path),
                expected=spec.value,
                actual=actual,
            )

    def verify(
        self,
        path: Union[str, Path],
        spec: ChecksumSpec,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bool:
        """Return True iff ``path`` hashes to ``spec.value``.

        An explicit ``none`` spec returns True without opening the file.
        Read failures raise :class:`ArtifactIOError`, never False.
        """

        try:
            self.ensure(path, spec, cancel_token=cancel_token)
        except VerificationMismatchError:
            return False
        return True
