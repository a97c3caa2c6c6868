"""End-to-end behaviour of ``DownloadOrchestrator.obtain`` against a fake transport."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import pytest

from ImageBuild.ArtifactDownload.cache import CacheStore
from ImageBuild.ArtifactDownload.cache_keys import cache_key
from ImageBuild.ArtifactDownload.cancellation import CancellationToken
from ImageBuild.ArtifactDownload.checksums import (
    ChecksumAlgorithm,
    ChecksumSpec,
    resolve_checksum,
    split_checksum_annotation,
)
from ImageBuild.ArtifactDownload.download import DownloadOrchestrator, DownloadState
from ImageBuild.ArtifactDownload.errors import (
    AllSourcesExhaustedError,
    ChecksumParseError,
    ConfigError,
    DownloadCancelledError,
    LockTimeoutError,
    TransportError,
)
from ImageBuild.ArtifactDownload.locks import artifact_lock
from ImageBuild.ArtifactDownload.verify import IntegrityVerifier

SHA1 = "7c6e5dd1bacb3b48fdffba2ed096097eb172497d"
CONTENT = b"another\n"
GOOD = "https://mirror.example/another.txt"
BAD = "https://broken.example/another.txt"
SUMS = "https://mirror.example/SHA1SUMS"


def _entry_name(value: str, extension: str = "txt") -> str:
    return f"{hashlib.sha1(value.encode('utf-8')).hexdigest()}.{extension}"


def _leftovers(root: Path) -> list:
    return [path.name for path in root.iterdir() if ".part-" in path.name] if root.exists() else []


@pytest.fixture
def spec() -> ChecksumSpec:
    return ChecksumSpec.known("sha1", SHA1)


def test_round_trip_downloads_once(cache_store, fake_transport, spec) -> None:
    orchestrator = DownloadOrchestrator(cache_store, fake_transport)

    first = orchestrator.obtain([GOOD], spec, "txt")
    second = orchestrator.obtain([GOOD], spec, "txt")

    assert first.status == "downloaded"
    assert first.source == GOOD
    assert first.state is DownloadState.DONE
    assert first.path.name == _entry_name(SHA1)
    assert first.path.read_bytes() == CONTENT
    assert second.status == "cached"
    assert second.path == first.path
    assert fake_transport.calls == 1
    assert _leftovers(cache_store.root) == []


def test_same_checksum_from_other_mirror_hits_cache(cache_store, make_transport, spec) -> None:
    transport = make_transport({GOOD: CONTENT, "https://other.example/x.txt": CONTENT})
    orchestrator = DownloadOrchestrator(cache_store, transport)

    orchestrator.obtain([GOOD], spec, "txt")
    result = orchestrator.obtain(["https://other.example/x.txt"], spec, "txt")

    assert result.status == "cached"
    assert transport.requested == [GOOD]


def test_corrupt_cache_entry_is_replaced(cache_store, fake_transport, spec, caplog) -> None:
    orchestrator = DownloadOrchestrator(cache_store, fake_transport)
    path = orchestrator.obtain([GOOD], spec, "txt").path
    path.write_bytes(b"bit rot\n")

    with caplog.at_level(logging.WARNING, logger="ImageBuild.ArtifactDownload"):
        result = orchestrator.obtain([GOOD], spec, "txt")

    assert result.status == "downloaded"
    assert result.path.read_bytes() == CONTENT
    assert fake_transport.calls == 2
    assert any("failed verification" in record.getMessage() for record in caplog.records)


def test_failover_to_second_source(cache_store, make_transport, spec) -> None:
    transport = make_transport(
        {BAD: TransportError("HTTP 503", location=BAD, status_code=503), GOOD: CONTENT}
    )
    result = DownloadOrchestrator(cache_store, transport).obtain([BAD, GOOD], spec, "txt")

    assert result.status == "downloaded"
    assert result.source == GOOD
    assert [attempt.outcome for attempt in result.attempts] == ["transport-error", "ok"]
    assert transport.requested == [BAD, GOOD]


def test_mismatching_source_is_skipped(cache_store, make_transport, spec) -> None:
    transport = make_transport({BAD: b"wrong content\n", GOOD: CONTENT})
    result = DownloadOrchestrator(cache_store, transport).obtain([BAD, GOOD], spec, "txt")

    assert result.attempts[0].outcome == "checksum-mismatch"
    assert result.path.read_bytes() == CONTENT
    assert _leftovers(cache_store.root) == []


def test_all_sources_exhausted(cache_store, make_transport, spec) -> None:
    transport = make_transport({BAD: b"wrong content\n"})
    orchestrator = DownloadOrchestrator(cache_store, transport)

    with pytest.raises(AllSourcesExhaustedError) as excinfo:
        orchestrator.obtain([BAD, "https://gone.example/another.txt"], spec, "txt")

    error = excinfo.value
    assert "2 source(s) tried" in str(error)
    assert "HTTP 404" in str(error)
    assert [attempt.outcome for attempt in error.attempts] == [
        "checksum-mismatch",
        "transport-error",
    ]
    assert isinstance(error.last_error, TransportError)
    assert error.exit_code == 4
    assert not cache_store.exists(cache_key(spec, "txt"))
    assert _leftovers(cache_store.root) == []


def test_checksum_fetched_from_url(cache_store, make_transport) -> None:
    transport = make_transport(
        {SUMS: f"{SHA1}  another.txt\n".encode(), GOOD: CONTENT}
    )
    pending, _ = resolve_checksum(checksum_url=SUMS)

    result = DownloadOrchestrator(cache_store, transport).obtain([GOOD], pending, "txt")

    assert result.spec == ChecksumSpec(ChecksumAlgorithm.SHA1, SHA1)
    assert result.path.name == _entry_name(SHA1)
    assert transport.requested == [SUMS, GOOD]


def test_oversized_checksum_file_is_rejected(cache_store, make_transport) -> None:
    transport = make_transport({SUMS: b"#" * 64 + f"\n{SHA1}  another.txt\n".encode(), GOOD: CONTENT})
    orchestrator = DownloadOrchestrator(cache_store, transport, max_checksum_bytes=32)

    with pytest.raises(ChecksumParseError, match="limit"):
        orchestrator.obtain([GOOD], ChecksumSpec.pending(SUMS), "txt")
    assert transport.requested == [SUMS]


def test_unreachable_checksum_file_is_a_parse_error(cache_store, make_transport) -> None:
    transport = make_transport({GOOD: CONTENT})

    with pytest.raises(ChecksumParseError, match="cannot fetch checksum file") as excinfo:
        DownloadOrchestrator(cache_store, transport).obtain([GOOD], ChecksumSpec.pending(SUMS), "txt")

    assert excinfo.value.exit_code == 5
    assert isinstance(excinfo.value.__cause__, TransportError)
    assert transport.requested == [SUMS]


@pytest.mark.parametrize("annotation", [SHA1, f"sha1:{SHA1}"])
def test_checksum_url_agrees_with_annotation(cache_store, make_transport, annotation: str) -> None:
    transport = make_transport({SUMS: f"{SHA1}  another.txt\n".encode(), GOOD: CONTENT})

    result = DownloadOrchestrator(cache_store, transport).obtain(
        [f"{GOOD}?checksum={annotation}"], ChecksumSpec.pending(SUMS), "txt"
    )

    assert result.spec == ChecksumSpec(ChecksumAlgorithm.SHA1, SHA1)
    assert result.path.name == _entry_name(SHA1)
    assert transport.requested == [SUMS, GOOD]


def test_checksum_url_disagreeing_with_annotation_is_rejected(cache_store, make_transport) -> None:
    transport = make_transport({SUMS: f"{SHA1}  another.txt\n".encode(), GOOD: CONTENT})

    with pytest.raises(ConfigError, match="conflicting checksums"):
        DownloadOrchestrator(cache_store, transport).obtain(
            [f"{GOOD}?checksum={'0' * 40}"], ChecksumSpec.pending(SUMS), "txt"
        )
    assert transport.requested == [SUMS]
    assert _leftovers(cache_store.root) == []


def test_checksum_from_source_annotation(cache_store, fake_transport) -> None:
    annotated = f"{GOOD}?checksum=sha1:{SHA1}"
    spec, _ = resolve_checksum(annotations=[split_checksum_annotation(annotated)[1]])

    result = DownloadOrchestrator(cache_store, fake_transport).obtain([annotated], spec, "txt")

    assert result.path.name == _entry_name(SHA1)
    assert fake_transport.requested == [GOOD]


def test_conflicting_annotation_fails_before_io(cache_store, fake_transport, spec) -> None:
    with pytest.raises(ConfigError, match="conflicting"):
        DownloadOrchestrator(cache_store, fake_transport).obtain(
            [f"{GOOD}?checksum={'0' * 40}"], spec, "txt"
        )
    assert fake_transport.calls == 0


def test_none_checksum_skips_hashing(cache_store, fake_transport) -> None:
    verifier = IntegrityVerifier()
    orchestrator = DownloadOrchestrator(cache_store, fake_transport, verifier=verifier)
    spec, warnings = resolve_checksum(checksum_type="none")

    first = orchestrator.obtain([GOOD], spec, "txt")
    second = orchestrator.obtain([GOOD], spec, "txt")

    assert warnings
    assert verifier.files_hashed == 0
    assert first.path.name == _entry_name(GOOD)
    assert second.status == "cached"
    assert fake_transport.calls == 1


def test_empty_unchecked_entry_is_downloaded_again(cache_store, fake_transport) -> None:
    orchestrator = DownloadOrchestrator(cache_store, fake_transport)
    path = orchestrator.obtain([GOOD], ChecksumSpec.none(), "txt").path
    path.write_bytes(b"")

    result = orchestrator.obtain([GOOD], ChecksumSpec.none(), "txt")

    assert result.status == "downloaded"
    assert path.read_bytes() == CONTENT


@pytest.mark.parametrize("sources", [[], ["", "   "]])
def test_missing_sources_fail_before_io(cache_store, fake_transport, spec, sources) -> None:
    with pytest.raises(ConfigError):
        DownloadOrchestrator(cache_store, fake_transport).obtain(sources, spec, "txt")
    assert fake_transport.calls == 0
    assert not cache_store.root.exists()


def test_local_sources_bypass_transport(cache_store, fake_transport, spec, tmp_path) -> None:
    source = tmp_path / "mirror" / "another.txt"
    source.parent.mkdir()
    source.write_bytes(CONTENT)
    orchestrator = DownloadOrchestrator(cache_store, fake_transport)

    via_path = orchestrator.obtain([str(source)], spec, "txt")
    cache_store.discard(cache_key(spec, "txt"))
    via_url = orchestrator.obtain([source.as_uri()], spec, "txt")

    assert via_path.status == via_url.status == "downloaded"
    assert via_url.path.read_bytes() == CONTENT
    assert fake_transport.calls == 0


def test_cancellation_mid_transfer_cleans_up(cache_store, make_transport, spec) -> None:
    token = CancellationToken()

    def partial_then_cancel(destination: Path, cancel_token) -> None:
        destination.write_bytes(b"anoth")
        token.cancel("build aborted")
        cancel_token.raise_if_cancelled("transfer")

    transport = make_transport({GOOD: partial_then_cancel, BAD: CONTENT})
    orchestrator = DownloadOrchestrator(cache_store, transport)

    with pytest.raises(DownloadCancelledError, match="build aborted"):
        orchestrator.obtain([GOOD, BAD], spec, "txt", cancel_token=token)

    key = cache_key(spec, "txt")
    assert _leftovers(cache_store.root) == []
    assert not cache_store.exists(key)
    assert transport.requested == [GOOD]
    with artifact_lock(cache_store.entry(key).lock_path, timeout=0):
        pass


def test_precancelled_token_never_transfers(cache_store, fake_transport, spec) -> None:
    token = CancellationToken()
    token.cancel()
    with pytest.raises(DownloadCancelledError):
        DownloadOrchestrator(cache_store, fake_transport).obtain(
            [GOOD], spec, "txt", cancel_token=token
        )
    assert fake_transport.calls == 0


def test_lock_timeout_when_entry_held(cache_root, fake_transport, spec) -> None:
    store = CacheStore(cache_root, lock_timeout=0.1, poll_interval=0.01)
    orchestrator = DownloadOrchestrator(store, fake_transport)
    lock_path = store.entry(cache_key(spec, "txt")).lock_path

    with artifact_lock(lock_path, timeout=1.0):
        with pytest.raises(LockTimeoutError):
            orchestrator.obtain([GOOD], spec, "txt")

    assert fake_transport.calls == 0


def test_progress_callback_receives_bytes(cache_store, fake_transport, spec) -> None:
    seen = []
    DownloadOrchestrator(cache_store, fake_transport).obtain(
        [GOOD], spec, "txt", progress=lambda done, total: seen.append((done, total))
    )
    assert seen[-1] == (len(CONTENT), len(CONTENT))
