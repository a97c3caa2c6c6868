# === NAVMAP v1 ===
# {
#   "module": "ImageBuild.ArtifactDownload.cli",
#   "purpose": "Command-line entry point: imagebuild-fetch",
#   "sections": [
#     {"id": "build-parser", "name": "_build_parser", "anchor": "function-build-parser", "kind": "function"},
#     {"id": "tqdmprogress", "name": "_TqdmProgress", "anchor": "class-tqdmprogress", "kind": "class"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""``imagebuild-fetch``: obtain one verified artifact and print its cache path.

Exit codes follow :attr:`ArtifactDownloadError.exit_code`: 0 success,
2 configuration error, 3 lock timeout, 4 all sources exhausted, 5 checksum
file parse error, 6 local I/O error, 130 cancelled.
"""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from tqdm import tqdm

from .cancellation import CancellationToken
from .config import ArtifactConfig, DownloadSettings, load_config
from .download import DownloadResult
from .errors import ArtifactDownloadError, ConfigError, DownloadCancelledError
from .logging_config import setup_logging
from .step import DownloadStep, StepAction

__all__ = ["main"]

LOGGER = logging.getLogger("ImageBuild.ArtifactDownload.cli")

EXIT_OK = 0
EXIT_CANCELLED = DownloadCancelledError.exit_code


def _build_parser() -> argparse.ArgumentParser:
    """Configure the ``imagebuild-fetch`` argument parser."""

    parser = argparse.ArgumentParser(
        prog="imagebuild-fetch",
        description="Download a build artifact from one of several sources, verify its "
        "checksum, and store it in the shared artifact cache.",
    )
    parser.add_argument(
        "--url",
        dest="urls",
        action="append",
        default=[],
        metavar="URL",
        help="Source location (URL or local path); repeat to add fallbacks in order",
    )
    parser.add_argument("--checksum", help="Digest, 'type:digest', 'file:<url>' or 'none'")
    parser.add_argument("--checksum-url", help="URL of a checksum file listing the artifact")
    parser.add_argument(
        "--checksum-type", help="md5, sha1, sha256, sha512, file or none (needed for a bare digest)"
    )
    parser.add_argument("--extension", help="Cache entry extension (default: iso)")
    parser.add_argument("--cache-dir", type=Path, help="Artifact cache directory")
    parser.add_argument(
        "--lock-timeout", type=float, help="Seconds to wait for another process holding the entry"
    )
    parser.add_argument("--config", type=Path, help="YAML or JSON file with artifact/settings")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Set logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, help="Also write JSON logs to this file")
    parser.add_argument("--json", action="store_true", help="Emit the result as JSON")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    return parser


class _TqdmProgress:
    """Adapt transfer callbacks ``(done, total)`` to a tqdm bar on stderr."""

    def __init__(self) -> None:
        self._bar: Optional[tqdm] = None

    def __call__(self, done: int, total: Optional[int]) -> None:
        if self._bar is None:
            self._bar = tqdm(
                total=total, unit="B", unit_scale=True, unit_divisor=1024, file=sys.stderr
            )
        elif done < self._bar.n:
            # next source started from zero
            self._bar.reset(total=total)
        self._bar.update(done - self._bar.n)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def _resolve_inputs(args: argparse.Namespace) -> Tuple[ArtifactConfig, DownloadSettings]:
    if args.config is not None:
        artifact, settings = load_config(args.config)
    else:
        artifact, settings = ArtifactConfig(), DownloadSettings.from_env()

    overrides: Dict[str, Any] = {}
    if args.urls:
        overrides["source_urls"] = list(args.urls)
        overrides["single_source_url"] = ""
    for option, field in (
        ("checksum", "checksum"),
        ("checksum_url", "checksum_url"),
        ("checksum_type", "checksum_type"),
        ("extension", "target_extension"),
    ):
        value = getattr(args, option)
        if value is not None:
            overrides[field] = value
    try:
        artifact = ArtifactConfig.model_validate({**artifact.model_dump(), **overrides})
    except ValidationError as exc:
        raise ConfigError(f"invalid arguments: {exc}") from exc

    setting_overrides: Dict[str, Any] = {}
    if args.cache_dir is not None:
        setting_overrides["cache_dir"] = args.cache_dir
    if args.lock_timeout is not None:
        setting_overrides["lock_timeout_s"] = args.lock_timeout
    if setting_overrides:
        try:
            settings = DownloadSettings(**{**settings.model_dump(), **setting_overrides})
        except ValidationError as exc:
            raise ConfigError(f"invalid arguments: {exc}") from exc
    return artifact, settings


@contextlib.contextmanager
def _cancel_on_sigint(token: CancellationToken) -> Iterator[None]:
    """Turn the first SIGINT into cooperative cancellation of ``token``."""

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: Any) -> None:
        if token.is_cancelled():
            raise KeyboardInterrupt
        token.cancel("interrupted")

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _result_payload(result: DownloadResult) -> Dict[str, Any]:
    return {
        "path": str(result.path),
        "status": result.status,
        "source": result.source,
        "checksum": str(result.spec),
        "attempts": [
            {"location": attempt.location, "outcome": attempt.outcome, "error": attempt.error}
            for attempt in result.attempts
        ],
    }


def _emit_failure(exc: BaseException, args: argparse.Namespace, exit_code: int) -> int:
    if args.json:
        payload: Dict[str, Any] = {
            "error": type(exc).__name__,
            "message": str(exc) or type(exc).__name__,
            "exit_code": exit_code,
        }
        attempts: List[Any] = list(getattr(exc, "attempts", ()))
        if attempts:
            payload["attempts"] = [
                {"location": item.location, "outcome": item.outcome, "error": item.error}
                for item in attempts
            ]
        json.dump(payload, sys.stdout, indent=2)
        sys.stdout.write("\n")
    print(f"Error: {str(exc) or type(exc).__name__}", file=sys.stderr)
    return exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run ``imagebuild-fetch``; return the process exit code."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    token = CancellationToken()
    progress: Optional[_TqdmProgress] = None
    if not args.no_progress and sys.stderr.isatty():
        progress = _TqdmProgress()

    step: Optional[DownloadStep] = None
    try:
        artifact, settings = _resolve_inputs(args)
        step = DownloadStep.from_config(artifact, settings, progress=progress)
        state: Dict[str, Any] = {}
        with _cancel_on_sigint(token):
            action = step.run(state, cancel_token=token)
        if action is StepAction.HALT:
            error = state["error"]
            return _emit_failure(error, args, error.exit_code)
    except ArtifactDownloadError as exc:
        return _emit_failure(exc, args, exc.exit_code)
    except KeyboardInterrupt as exc:
        return _emit_failure(exc, args, EXIT_CANCELLED)
    finally:
        if progress is not None:
            progress.close()
        if step is not None:
            step.cleanup({})

    result = step.result
    LOGGER.debug(
        "fetch finished",
        extra={"stage": "cli", "status": result.status, "path": str(result.path)},
    )
    if args.json:
        json.dump(_result_payload(result), sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        print(result.path)
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
