"""Deterministic cache-key derivation for verified artifacts."""

from __future__ import annotations

import hashlib
from typing import Sequence

from .checksums import ChecksumSpec

__all__ = ["cache_key", "normalize_extension"]


def normalize_extension(extension: str) -> str:
    """Lowercase an extension and drop any leading dots."""

    return (extension or "").strip().lstrip(".").lower()


def cache_key(spec: ChecksumSpec, extension: str = "", sources: Sequence[str] = ()) -> str:
    """Return the cache entry name ``<sha1>.<extension>`` for an artifact.

    Verified artifacts are keyed by their expected digest, so the same content
    fetched from different mirrors shares one slot.  Unverified artifacts
    (``none``) are keyed by the concatenated source list instead, since their
    content is unknown.
    """

    if spec.is_pending:
        raise ValueError("pending checksum must be resolved before computing a cache key")
    if spec.is_none:
        if not sources:
            raise ValueError("an unchecked artifact needs at least one source to derive its key")
        material = "".join(sources)
    else:
        material = spec.value
    digest = hashlib.sha1(material.encode("utf-8")).hexdigest()
    suffix = normalize_extension(extension)
    return f"{digest}.{suffix}" if suffix else digest
