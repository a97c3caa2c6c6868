"""Build-pipeline step that acquires one artifact and publishes its path.

The surrounding pipeline runs steps in order against a shared mutable state
mapping.  :class:`DownloadStep` reads nothing from that state; it writes the
verified artifact path under ``result_key`` on success, or the failure under
``error`` / ``error_message`` and asks the pipeline to halt.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, MutableMapping, Optional, Sequence

from .cancellation import CancellationToken
from .checksums import ChecksumSpec
from .config import ArtifactConfig, DownloadSettings
from .download import DownloadOrchestrator, DownloadResult
from .errors import ArtifactDownloadError, ConfigError, DownloadCancelledError
from .transport import HttpTransport, ProgressSink

__all__ = ["StepAction", "DownloadStep", "DEFAULT_RESULT_KEY"]

LOGGER = logging.getLogger("ImageBuild.ArtifactDownload.step")

DEFAULT_RESULT_KEY = "artifact_path"


class StepAction(str, Enum):
    """Instruction returned to the pipeline runner."""

    CONTINUE = "continue"
    HALT = "halt"


class DownloadStep:
    """Pipeline step wrapping :meth:`DownloadOrchestrator.obtain`.

    Args:
        sources: Candidate locations, tried in order.
        spec: Resolved or pending checksum for the artifact.
        orchestrator: Orchestrator bound to the cache and transport.
        target_extension: Extension of the cache entry.
        result_key: State key receiving the artifact path.
        description: Human label used in log and error messages.
        progress: Optional transfer progress callback.
    """

    def __init__(
        self,
        sources: Sequence[str],
        spec: ChecksumSpec,
        orchestrator: DownloadOrchestrator,
        *,
        target_extension: str = "iso",
        result_key: str = DEFAULT_RESULT_KEY,
        description: str = "artifact",
        progress: Optional[ProgressSink] = None,
    ) -> None:
        self.sources = list(sources)
        self.spec = spec
        self.orchestrator = orchestrator
        self.target_extension = target_extension
        self.result_key = result_key
        self.description = description
        self.progress = progress
        self.result: Optional[DownloadResult] = None
        self._owned_transport: Optional[HttpTransport] = None

    @classmethod
    def from_config(
        cls,
        config: ArtifactConfig,
        settings: Optional[DownloadSettings] = None,
        result_key: str = DEFAULT_RESULT_KEY,
        *,
        progress: Optional[ProgressSink] = None,
    ) -> "DownloadStep":
        """Validate ``config`` offline and build a ready-to-run step.

        Raises:
            ConfigError: If :meth:`ArtifactConfig.prepare` reports errors.
        """

        warnings, errors = config.prepare()
        for warning in warnings:
            LOGGER.warning(warning, extra={"stage": "config"})
        if errors:
            raise ConfigError("; ".join(errors))

        settings = settings or DownloadSettings.from_env()
        transport = settings.build_transport()
        orchestrator = DownloadOrchestrator(settings.build_cache(config.target_path), transport)
        step = cls(
            config.sources(),
            config.checksum_spec(),
            orchestrator,
            target_extension=config.target_extension,
            result_key=result_key,
            progress=progress,
        )
        step._owned_transport = transport
        return step

    def run(
        self,
        state: MutableMapping[str, Any],
        cancel_token: Optional[CancellationToken] = None,
    ) -> StepAction:
        LOGGER.info(
            "retrieving %s",
            self.description,
            extra={"stage": "step", "sources": len(self.sources)},
        )
        try:
            result = self.orchestrator.obtain(
                self.sources,
                self.spec,
                self.target_extension,
                cancel_token=cancel_token,
                progress=self.progress,
            )
        except DownloadCancelledError as exc:
            LOGGER.warning("%s download cancelled", self.description, extra={"stage": "step"})
            return self._halt(state, exc, f"Download of {self.description} was cancelled")
        except ArtifactDownloadError as exc:
            LOGGER.error(
                "%s download failed: %s", self.description, exc, extra={"stage": "step"}
            )
            return self._halt(state, exc, f"Error downloading {self.description}: {exc}")

        self.result = result
        state[self.result_key] = str(result.path)
        return StepAction.CONTINUE

    def cleanup(self, state: MutableMapping[str, Any]) -> None:
        """Release the transport created by :meth:`from_config`, if any."""

        if self._owned_transport is not None:
            self._owned_transport.close()
            self._owned_transport = None

    @staticmethod
    def _halt(
        state: MutableMapping[str, Any], exc: ArtifactDownloadError, message: str
    ) -> StepAction:
        state["error"] = exc
        state["error_message"] = message
        return StepAction.HALT
