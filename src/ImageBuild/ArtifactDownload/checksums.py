"""Checksum parsing, normalisation, and checksum-file resolution helpers.

Build configurations describe the expected digest of an artifact in several
equivalent ways: an inline digest (optionally prefixed with ``type:``), a URL
pointing at a checksum file, a ``checksum=`` query parameter embedded in a
source location, or the explicit ``none`` opt-out.  This module folds those
declarations into one immutable :class:`ChecksumSpec` and parses the two
checksum-file layouts found in the wild (BSD ``ALGO (name) = digest`` and
coreutils ``digest  name``).

Resolution of a checksum URL is deliberately lazy: :func:`resolve_checksum`
only records a *pending* spec, and :func:`resolve_pending` performs the fetch
at download time so offline configuration checks never touch the network.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Callable, Iterable, List, Optional, Tuple, Type
from urllib.parse import unquote, unquote_plus, urlsplit

from .errors import ChecksumParseError, ConfigError

__all__ = [
    "ChecksumAlgorithm",
    "ChecksumSpec",
    "NONE_CHECKSUM_WARNING",
    "infer_algorithm",
    "merge_annotations",
    "parse_algorithm",
    "parse_checksum_file",
    "resolve_checksum",
    "resolve_pending",
    "split_checksum_annotation",
]

LOGGER = logging.getLogger("ImageBuild.ArtifactDownload.checksums")

ErrorType = Type[Exception]

NONE_CHECKSUM_WARNING = (
    "A checksum type of 'none' was specified. Since artifact files are so big,\n"
    "a checksum is highly recommended."
)

_HEX_PATTERN = re.compile(r"[0-9a-f]+")
_BSD_LINE = re.compile(
    r"^(?P<algorithm>[A-Za-z0-9_-]+) ?\((?P<name>.*)\) ?= ?(?P<digest>[0-9A-Fa-f]+)$"
)
_COREUTILS_LINE = re.compile(r"^\\?(?P<digest>[0-9A-Fa-f]+) [ *](?P<name>.+)$")
_BARE_DIGEST_LINE = re.compile(r"^(?P<digest>[0-9A-Fa-f]+)$")


class ChecksumAlgorithm(str, Enum):
    """Supported digest algorithms plus the two non-digest states."""

    NONE = "none"
    FILE = "file"
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA512 = "sha512"

    @property
    def hex_length(self) -> Optional[int]:
        return _HEX_LENGTHS.get(self)

    @property
    def is_digest(self) -> bool:
        return self not in (ChecksumAlgorithm.NONE, ChecksumAlgorithm.FILE)


_HEX_LENGTHS = {
    ChecksumAlgorithm.MD5: 32,
    ChecksumAlgorithm.SHA1: 40,
    ChecksumAlgorithm.SHA256: 64,
    ChecksumAlgorithm.SHA512: 128,
}
_ALGORITHMS_BY_LENGTH = {length: algorithm for algorithm, length in _HEX_LENGTHS.items()}


@dataclass(slots=True, frozen=True)
class ChecksumSpec:
    """Expected checksum of one artifact, a pending checksum URL, or an opt-out.

    Attributes:
        algorithm: Digest algorithm; ``FILE`` marks a checksum that must still
            be fetched from ``value`` (a URL) and ``NONE`` skips verification.
        value: Lowercase hex digest, the checksum-file URL when pending, or an
            empty string for ``NONE``.
        hint: Algorithm configured alongside a checksum URL, if any.

    Examples:
        >>> ChecksumSpec.known("sha1", "A" * 40).value == "a" * 40
        True
        >>> str(ChecksumSpec.none())
        'none'
    """

    algorithm: ChecksumAlgorithm
    value: str = ""
    hint: Optional[ChecksumAlgorithm] = None

    @classmethod
    def none(cls) -> "ChecksumSpec":
        return cls(ChecksumAlgorithm.NONE)

    @classmethod
    def pending(
        cls, url: str, hint: Optional[ChecksumAlgorithm] = None
    ) -> "ChecksumSpec":
        url = url.strip()
        if not url:
            raise ConfigError("checksum_url must not be empty")
        return cls(ChecksumAlgorithm.FILE, url, hint)

    @classmethod
    def known(cls, algorithm: "ChecksumAlgorithm | str", value: str) -> "ChecksumSpec":
        resolved = parse_algorithm(str(getattr(algorithm, "value", algorithm)))
        if not resolved.is_digest:
            raise ConfigError(f"'{resolved.value}' is not a digest algorithm")
        digest = _normalize_digest(resolved, value, context="checksum", error_cls=ConfigError)
        return cls(resolved, digest)

    @property
    def is_none(self) -> bool:
        return self.algorithm is ChecksumAlgorithm.NONE

    @property
    def is_pending(self) -> bool:
        return self.algorithm is ChecksumAlgorithm.FILE

    @property
    def checksum_url(self) -> Optional[str]:
        return self.value if self.is_pending else None

    def same_checksum(self, other: "ChecksumSpec") -> bool:
        """Return True when both specs describe the identical expected digest."""

        return self.algorithm is other.algorithm and self.value == other.value

    def __str__(self) -> str:
        if self.is_none:
            return ChecksumAlgorithm.NONE.value
        return f"{self.algorithm.value}:{self.value}"


def parse_algorithm(name: str, *, error_cls: ErrorType = ConfigError) -> ChecksumAlgorithm:
    """Normalise an algorithm name such as ``SHA-256`` or ``sha256``."""

    candidate = (name or "").strip().lower().replace("-", "").replace("_", "")
    try:
        return ChecksumAlgorithm(candidate)
    except ValueError:
        raise error_cls(f"unsupported checksum algorithm '{name}'") from None


def infer_algorithm(digest: str, *, error_cls: ErrorType = ConfigError) -> ChecksumAlgorithm:
    """Infer the algorithm of a hex digest from its length."""

    cleaned = digest.strip().lower()
    algorithm = _ALGORITHMS_BY_LENGTH.get(len(cleaned))
    if algorithm is None or not _HEX_PATTERN.fullmatch(cleaned):
        raise error_cls(
            f"cannot infer checksum algorithm from digest of length {len(cleaned)}"
        )
    return algorithm


def _normalize_digest(
    algorithm: ChecksumAlgorithm,
    value: str,
    *,
    context: str,
    error_cls: ErrorType,
) -> str:
    digest = (value or "").strip().lower()
    if not _HEX_PATTERN.fullmatch(digest):
        raise error_cls(f"{context}: checksum value must be a hexadecimal digest")
    if len(digest) != algorithm.hex_length:
        raise error_cls(
            f"{context}: {algorithm.value} digest must be {algorithm.hex_length} hex characters, "
            f"got {len(digest)}"
        )
    return digest


def _resolve_declaration(
    checksum: str,
    checksum_url: str,
    checksum_type: str,
    *,
    context: str,
    default: Optional[ChecksumAlgorithm] = None,
    infer: bool = False,
) -> Optional[ChecksumSpec]:
    raw = (checksum or "").strip()
    url = (checksum_url or "").strip()
    if raw.lower() == ChecksumAlgorithm.NONE.value:
        return ChecksumSpec.none()

    prefixed: Optional[ChecksumAlgorithm] = None
    if ":" in raw:
        prefix, rest = raw.split(":", 1)
        prefixed = parse_algorithm(prefix)
        if prefixed is ChecksumAlgorithm.FILE:
            rest = rest.strip()
            if url and url != rest:
                raise ConfigError(f"{context}: conflicting checksum URLs '{url}' and '{rest}'")
            url, raw, prefixed = rest, "", None
        else:
            raw = rest.strip()

    configured: Optional[ChecksumAlgorithm] = None
    if checksum_type:
        configured = parse_algorithm(checksum_type)
        if prefixed is not None and configured not in (prefixed, ChecksumAlgorithm.FILE):
            raise ConfigError(
                f"{context}: checksum type '{configured.value}' conflicts with "
                f"'{prefixed.value}' prefix"
            )

    if url:
        hint = prefixed or (configured if configured and configured.is_digest else None)
        return ChecksumSpec.pending(url, hint)
    if not raw:
        return None
    if configured is ChecksumAlgorithm.FILE:
        raise ConfigError(f"{context}: checksum type 'file' requires a checksum URL")

    algorithm = prefixed or configured or default
    if algorithm is None:
        if not infer:
            raise ConfigError("checksum type required")
        algorithm = infer_algorithm(raw)
    return ChecksumSpec(
        algorithm,
        _normalize_digest(algorithm, raw, context=context, error_cls=ConfigError),
    )


def resolve_checksum(
    checksum: str = "",
    checksum_url: str = "",
    checksum_type: str = "",
    annotations: Iterable[Optional[str]] = (),
) -> Tuple[ChecksumSpec, List[str]]:
    """Fold every checksum declaration into one :class:`ChecksumSpec`.

    Args:
        checksum: Inline digest, ``type:digest``, ``file:<url>``, or ``none``.
        checksum_url: URL of a checksum file; makes the result pending.
        checksum_type: Algorithm name; optional when the other inputs
            determine it.
        annotations: ``checksum=`` values extracted from source locations.

    Returns:
        The resolved spec and a list of warnings for the caller to surface.

    Raises:
        ConfigError: If the declarations are malformed, conflict with each
            other, or do not determine an algorithm.
    """

    checksum_type = (checksum_type or "").strip().lower()
    warnings: List[str] = []
    if checksum_type == ChecksumAlgorithm.NONE.value:
        LOGGER.warning("artifact checksum disabled", extra={"stage": "checksum"})
        warnings.append(NONE_CHECKSUM_WARNING)
        return ChecksumSpec.none(), warnings

    candidates: List[ChecksumSpec] = []
    configured = _resolve_declaration(
        checksum, checksum_url, checksum_type, context="checksum"
    )
    default: Optional[ChecksumAlgorithm] = None
    if configured is not None:
        candidates.append(configured)
        default = configured.hint if configured.is_pending else configured.algorithm
        if default is not None and not default.is_digest:
            default = None
    for raw in annotations:
        if not raw or not raw.strip():
            continue
        annotated = _resolve_declaration(
            raw, "", checksum_type, context="source checksum", default=default, infer=True
        )
        if annotated is not None:
            candidates.append(annotated)

    if not candidates:
        if checksum_type:
            raise ConfigError(f"a checksum is required when checksum type is '{checksum_type}'")
        raise ConfigError("checksum type required")

    # A pending checksum is compared with concrete ones once its file is fetched.
    resolved = candidates[0]
    for pending in (True, False):
        group = [spec for spec in candidates if spec.is_pending is pending]
        for other in group[1:]:
            if not group[0].same_checksum(other):
                raise ConfigError(f"conflicting checksums: '{group[0]}' and '{other}'")
            if resolved.same_checksum(other) and resolved.hint is None and other.hint is not None:
                resolved = other

    if resolved.is_none:
        LOGGER.warning("artifact checksum disabled", extra={"stage": "checksum"})
        warnings.append(NONE_CHECKSUM_WARNING)
    return resolved, warnings


def merge_annotations(spec: ChecksumSpec, annotations: Iterable[Optional[str]]) -> ChecksumSpec:
    """Check source-location checksums against an already resolved spec.

    An explicit ``none`` spec ignores annotations; otherwise every annotation
    must describe the same checksum or :class:`ConfigError` is raised. A
    pending spec is only checked against annotations once it is resolved.
    """

    present = [raw for raw in annotations if raw and raw.strip()]
    if not present or spec.is_none:
        return spec
    checksum_type = spec.hint.value if spec.is_pending and spec.hint else ""
    merged, _ = resolve_checksum(str(spec), "", checksum_type, present)
    return merged


def split_checksum_annotation(location: str) -> Tuple[str, Optional[str]]:
    """Strip a ``checksum=`` query parameter from a source location.

    Other query parameters and any fragment are preserved byte-for-byte; a
    query left empty is dropped together with its ``?``.

    Examples:
        >>> split_checksum_annotation("https://example.org/a.iso?checksum=sha1:ab&x=1")
        ('https://example.org/a.iso?x=1', 'sha1:ab')
        >>> split_checksum_annotation("https://example.org/a.iso?")
        ('https://example.org/a.iso', None)
    """

    if "?" not in location:
        return location, None
    base, _, rest = location.partition("?")
    query, hash_mark, fragment = rest.partition("#")
    kept: List[str] = []
    annotation: Optional[str] = None
    for piece in query.split("&"):
        if not piece:
            continue
        key, _, value = piece.partition("=")
        if unquote_plus(key) == "checksum":
            annotation = unquote(value)
            continue
        kept.append(piece)
    bare = base
    if kept:
        bare += "?" + "&".join(kept)
    return bare + hash_mark + fragment, annotation


@dataclass(slots=True, frozen=True)
class _ChecksumLine:
    digest: str
    name: Optional[str]
    algorithm: Optional[str]


def _basename(name: str) -> str:
    cleaned = name.strip().lstrip("*").replace("\\", "/")
    return PurePosixPath(cleaned).name


def _target_basename(target: str) -> str:
    path = urlsplit(target).path if "://" in target else target
    return _basename(path)


def _parse_lines(text: str) -> List[_ChecksumLine]:
    entries: List[_ChecksumLine] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _BSD_LINE.match(stripped)
        if match:
            entries.append(
                _ChecksumLine(match.group("digest"), match.group("name"), match.group("algorithm"))
            )
            continue
        match = _COREUTILS_LINE.match(stripped)
        if match:
            entries.append(_ChecksumLine(match.group("digest"), match.group("name"), None))
            continue
        match = _BARE_DIGEST_LINE.match(stripped)
        if match:
            entries.append(_ChecksumLine(match.group("digest"), None, None))
    return entries


def parse_checksum_file(
    text: str,
    target_name: str,
    algorithm: Optional[ChecksumAlgorithm] = None,
) -> ChecksumSpec:
    """Select and normalise the entry describing ``target_name``.

    Args:
        text: Checksum-file contents in BSD or coreutils layout.
        target_name: Artifact name, path, or URL; only its basename is used.
        algorithm: Algorithm configured by the user, if known.

    Raises:
        ChecksumParseError: If no entry matches, the algorithm cannot be
            determined, or the entry disagrees with ``algorithm``.
    """

    entries = _parse_lines(text)
    if not entries:
        raise ChecksumParseError("checksum file contains no parseable checksum lines")

    wanted = _target_basename(target_name)
    matches = [entry for entry in entries if entry.name and _basename(entry.name) == wanted]
    if matches:
        entry = matches[0]
    elif len(entries) == 1:
        entry = entries[0]
    else:
        raise ChecksumParseError(f"checksum file has no entry for '{wanted}'")

    if entry.algorithm is not None:
        declared = parse_algorithm(entry.algorithm, error_cls=ChecksumParseError)
        if not declared.is_digest:
            raise ChecksumParseError(f"unsupported checksum algorithm '{entry.algorithm}'")
        if algorithm is not None and algorithm is not declared:
            raise ChecksumParseError(
                f"checksum file declares {declared.value} but {algorithm.value} was configured"
            )
        resolved = declared
    else:
        resolved = algorithm or infer_algorithm(entry.digest, error_cls=ChecksumParseError)

    digest = _normalize_digest(
        resolved, entry.digest, context=f"checksum for '{wanted}'", error_cls=ChecksumParseError
    )
    return ChecksumSpec(resolved, digest)


def resolve_pending(
    spec: ChecksumSpec,
    target_name: str,
    fetch_text: Callable[[str], str],
) -> ChecksumSpec:
    """Fetch and parse the checksum file of a pending spec; other specs pass through."""

    if not spec.is_pending:
        return spec
    text = fetch_text(spec.value)
    resolved = parse_checksum_file(text, target_name, spec.hint)
    LOGGER.info(
        "fetched checksum",
        extra={
            "stage": "checksum",
            "checksum_url": spec.value,
            "algorithm": resolved.algorithm.value,
        },
    )
    return resolved
