from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from ImageBuild.ArtifactDownload.cancellation import CancellationToken
from ImageBuild.ArtifactDownload.checksums import ChecksumSpec
from ImageBuild.ArtifactDownload.config import ArtifactConfig, DownloadSettings
from ImageBuild.ArtifactDownload.download import DownloadOrchestrator
from ImageBuild.ArtifactDownload.errors import (
    AllSourcesExhaustedError,
    ConfigError,
    DownloadCancelledError,
)
from ImageBuild.ArtifactDownload.step import DEFAULT_RESULT_KEY, DownloadStep, StepAction

SHA1 = "7c6e5dd1bacb3b48fdffba2ed096097eb172497d"
GOOD = "https://mirror.example/another.txt"


def _step(cache_store, transport, sources=(GOOD,), **kwargs) -> DownloadStep:
    return DownloadStep(
        sources,
        ChecksumSpec.known("sha1", SHA1),
        DownloadOrchestrator(cache_store, transport),
        target_extension="txt",
        **kwargs,
    )


def test_success_publishes_path(cache_store, fake_transport) -> None:
    state = {}
    step = _step(cache_store, fake_transport)

    assert step.run(state) is StepAction.CONTINUE
    assert Path(state[DEFAULT_RESULT_KEY]).read_bytes() == b"another\n"
    assert step.result is not None and step.result.status == "downloaded"
    assert "error" not in state


def test_bare_checksum_annotation_in_source_url(cache_store, cache_root, fake_transport) -> None:
    config = ArtifactConfig(source_urls=[f"{GOOD}?checksum={SHA1}"], target_extension="txt")
    assert config.prepare() == ([], [])
    step = DownloadStep(
        config.sources(),
        config.checksum_spec(),
        DownloadOrchestrator(cache_store, fake_transport),
        target_extension=config.target_extension,
    )
    state = {}

    assert step.run(state) is StepAction.CONTINUE

    entry = f"{hashlib.sha1(SHA1.encode('utf-8')).hexdigest()}.txt"
    assert sorted(path.name for path in cache_root.iterdir()) == [entry, f"{entry}.lock"]
    assert state[DEFAULT_RESULT_KEY] == str(cache_root.resolve() / entry)
    assert fake_transport.requested == [GOOD]


def test_custom_result_key(cache_store, fake_transport) -> None:
    state = {}
    _step(cache_store, fake_transport, result_key="iso_path").run(state)
    assert "iso_path" in state
    assert DEFAULT_RESULT_KEY not in state


def test_failure_halts_with_message(cache_store, make_transport) -> None:
    state = {}
    step = _step(
        cache_store, make_transport({}), sources=["https://gone.example/a.txt"], description="ISO"
    )

    assert step.run(state) is StepAction.HALT
    assert isinstance(state["error"], AllSourcesExhaustedError)
    assert state["error_message"].startswith("Error downloading ISO: ")
    assert "HTTP 404" in state["error_message"]


def test_cancellation_halts(cache_store, fake_transport) -> None:
    token = CancellationToken()
    token.cancel()
    state = {}

    assert _step(cache_store, fake_transport).run(state, cancel_token=token) is StepAction.HALT
    assert isinstance(state["error"], DownloadCancelledError)
    assert state["error_message"] == "Download of artifact was cancelled"
    assert fake_transport.calls == 0


def test_from_config_rejects_missing_sources(tmp_path: Path) -> None:
    config = ArtifactConfig(checksum=SHA1, checksum_type="sha1")
    with pytest.raises(ConfigError, match="single_source_url or source_urls"):
        DownloadStep.from_config(config, DownloadSettings(cache_dir=tmp_path))


def test_from_config_builds_step(tmp_path: Path) -> None:
    config = ArtifactConfig(
        checksum=SHA1,
        checksum_type="sha1",
        single_source_url=GOOD,
        source_urls=["https://other.example/another.txt"],
        target_extension="TXT",
        target_path=tmp_path / "override",
    )
    step = DownloadStep.from_config(
        config, DownloadSettings(cache_dir=tmp_path / "default"), result_key="iso"
    )
    try:
        assert step.sources == [GOOD, "https://other.example/another.txt"]
        assert step.spec == ChecksumSpec.known("sha1", SHA1)
        assert step.target_extension == "txt"
        assert step.result_key == "iso"
        assert step.orchestrator.cache.root == (tmp_path / "override").resolve()
    finally:
        step.cleanup({})
    assert step._owned_transport is None


def test_from_config_logs_none_warning(tmp_path: Path, caplog) -> None:
    config = ArtifactConfig(checksum_type="none", source_urls=[GOOD])
    with caplog.at_level("WARNING", logger="ImageBuild.ArtifactDownload"):
        step = DownloadStep.from_config(config, DownloadSettings(cache_dir=tmp_path))
    step.cleanup({})
    assert step.spec.is_none
    assert any("checksum is highly recommended" in r.getMessage() for r in caplog.records)


def test_cleanup_leaves_borrowed_transport_open(cache_store, fake_transport) -> None:
    step = _step(cache_store, fake_transport)
    step.cleanup({})
    assert step.run({}) is StepAction.CONTINUE
