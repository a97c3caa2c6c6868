"""Cross-process cache locks: exclusion, timeouts, cancellation, metrics."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from ImageBuild.ArtifactDownload import locks
from ImageBuild.ArtifactDownload.cancellation import CancellationToken
from ImageBuild.ArtifactDownload.errors import DownloadCancelledError, LockTimeoutError
from ImageBuild.ArtifactDownload.locks import artifact_lock, lock_metrics_snapshot


def test_lock_creates_parent_directory(tmp_path: Path) -> None:
    lock_file = tmp_path / "nested" / "entry.iso.lock"
    with artifact_lock(lock_file, timeout=1.0):
        assert lock_file.parent.is_dir()


def test_second_holder_times_out(tmp_path: Path) -> None:
    lock_file = tmp_path / "entry.iso.lock"
    with artifact_lock(lock_file, timeout=1.0):
        started = time.monotonic()
        with pytest.raises(LockTimeoutError) as excinfo:
            with artifact_lock(lock_file, timeout=0.2, poll_interval=0.02):
                pytest.fail("lock should be held")
        assert time.monotonic() - started >= 0.2
    assert excinfo.value.lock_path == lock_file
    assert excinfo.value.timeout == pytest.approx(0.2)
    assert excinfo.value.exit_code == 3


def test_lock_released_after_exception(tmp_path: Path) -> None:
    lock_file = tmp_path / "entry.iso.lock"
    with pytest.raises(RuntimeError):
        with artifact_lock(lock_file, timeout=1.0):
            raise RuntimeError("boom")
    with artifact_lock(lock_file, timeout=0):
        pass


def test_threads_enter_sequentially(tmp_path: Path) -> None:
    lock_file = tmp_path / "entry.iso.lock"
    active = []
    overlaps = []
    guard = threading.Lock()

    def worker() -> None:
        with artifact_lock(lock_file, timeout=5.0, poll_interval=0.01):
            with guard:
                if active:
                    overlaps.append(threading.get_ident())
                active.append(threading.get_ident())
            time.sleep(0.02)
            with guard:
                active.remove(threading.get_ident())

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10.0)

    assert overlaps == []


def test_cancellation_aborts_wait(tmp_path: Path) -> None:
    lock_file = tmp_path / "entry.iso.lock"
    token = CancellationToken()
    timer = threading.Timer(0.1, token.cancel, kwargs={"reason": "build aborted"})
    with artifact_lock(lock_file, timeout=1.0):
        timer.start()
        try:
            with pytest.raises(DownloadCancelledError, match="build aborted"):
                with artifact_lock(lock_file, poll_interval=0.02, cancel_token=token):
                    pytest.fail("lock should be held")
        finally:
            timer.cancel()


def test_soft_lock_removes_marker(tmp_path: Path) -> None:
    lock_file = tmp_path / "entry.iso.lock"
    with artifact_lock(lock_file, timeout=1.0, soft=True):
        assert lock_file.exists()
    assert not lock_file.exists()


def test_metrics_snapshot_counts_acquisitions_and_timeouts(tmp_path: Path) -> None:
    lock_file = tmp_path / "entry.iso.lock"
    with artifact_lock(lock_file, timeout=1.0):
        with pytest.raises(LockTimeoutError):
            with artifact_lock(lock_file, timeout=0.05, poll_interval=0.01):
                pass

    snapshot = lock_metrics_snapshot(reset=True)["artifact"]
    assert snapshot["acquire_total"] == 1
    assert snapshot["timeout_total"] == 1
    assert snapshot["hold_ms_sum"] >= 0
    assert lock_metrics_snapshot() == {}


def test_metric_samples_keep_only_recent_window() -> None:
    for _ in range(locks._MAX_SAMPLES):
        locks._record_success(1000.0, 1000.0)
    for _ in range(locks._MAX_SAMPLES):
        locks._record_success(1.0, 2.0)

    metrics = locks._metrics["artifact"]
    assert len(metrics.wait_ms_samples) == locks._MAX_SAMPLES
    assert len(metrics.hold_ms_samples) == locks._MAX_SAMPLES

    snapshot = lock_metrics_snapshot(reset=True)["artifact"]
    assert snapshot["acquire_total"] == 2 * locks._MAX_SAMPLES
    assert snapshot["wait_ms_sum"] == pytest.approx(1001.0 * locks._MAX_SAMPLES)
    assert snapshot["wait_ms_p95"] == 1.0
    assert snapshot["hold_ms_p95"] == 2.0
