# === NAVMAP v1 ===
# {
#   "module": "tests.conftest",
#   "purpose": "Shared pytest fixtures for suite",
#   "sections": [
#     {
#       "id": "isolate-package-logging",
#       "name": "_isolate_package_logging",
#       "anchor": "function-isolate-package-logging",
#       "kind": "function"
#     },
#     {
#       "id": "clean-env",
#       "name": "_clean_env",
#       "anchor": "function-clean-env",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Pytest Configuration

Puts ``src`` on ``sys.path`` so the suite runs against the working tree, and
isolates process-wide state (package logger handlers, ``IMAGEBUILD_*``
environment variables, lock metrics) between tests.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Iterator

import pytest

ROOT = Path(__file__).resolve().parent.parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ImageBuild.ArtifactDownload.locks import lock_metrics_snapshot  # noqa: E402

PACKAGE_LOGGER = "ImageBuild.ArtifactDownload"


@pytest.fixture(autouse=True)
def _isolate_package_logging() -> Iterator[None]:
    """Restore the package logger after tests that call ``setup_logging``."""

    logger = logging.getLogger(PACKAGE_LOGGER)
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            if isinstance(handler, logging.FileHandler):
                handler.close()
    for handler in handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop ``IMAGEBUILD_*`` variables inherited from the developer shell."""

    for name in list(os.environ):
        if name.upper().startswith("IMAGEBUILD_"):
            monkeypatch.delenv(name, raising=False)
    lock_metrics_snapshot(reset=True)
    yield
