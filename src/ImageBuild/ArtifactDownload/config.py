# === NAVMAP v1 ===
# {
#   "module": "ImageBuild.ArtifactDownload.config",
#   "purpose": "Artifact configuration models, runtime settings, and file/env loading",
#   "sections": [
#     {"id": "artifactconfig", "name": "ArtifactConfig", "anchor": "class-artifactconfig", "kind": "class"},
#     {"id": "downloadsettings", "name": "DownloadSettings", "anchor": "class-downloadsettings", "kind": "class"},
#     {"id": "read-file", "name": "_read_file", "anchor": "function-read-file", "kind": "function"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""
Pydantic v2 configuration for artifact acquisition.

- :class:`ArtifactConfig` describes *what* to obtain (sources, checksum,
  extension).  It mirrors the user-facing build template keys and validates
  offline: :meth:`ArtifactConfig.prepare` never touches the network.
- :class:`DownloadSettings` describes *how* (cache directory, lock and
  transport timeouts).  Values come from a config file section and
  ``IMAGEBUILD_*`` environment variables, with file < env < explicit
  overrides precedence.

Both models use ``extra="forbid"`` so misspelled keys fail loudly.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar, List, Optional, Tuple, Union

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .cache import CacheStore
from .cache_keys import normalize_extension
from .checksums import ChecksumSpec, resolve_checksum, split_checksum_annotation
from .errors import ConfigError
from .transport import HttpTransport

__all__ = [
    "ArtifactConfig",
    "DEFAULT_CACHE_DIR",
    "DEFAULT_EXTENSION",
    "DownloadSettings",
    "load_config",
]

LOGGER = logging.getLogger("ImageBuild.ArtifactDownload.config")

DEFAULT_EXTENSION = "iso"
DEFAULT_CACHE_DIR = Path("artifact_cache")
MISSING_SOURCES_MESSAGE = "One of single_source_url or source_urls must be specified"


class ArtifactConfig(BaseModel):
    """User-facing description of one artifact to acquire."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    checksum: str = Field(default="", description="Digest, 'type:digest', 'file:<url>' or 'none'")
    checksum_url: str = Field(default="", description="URL of a checksum file")
    checksum_type: str = Field(default="", description="md5, sha1, sha256, sha512, file or none")
    source_urls: List[str] = Field(default_factory=list, description="Candidate locations")
    single_source_url: str = Field(default="", description="Preferred location, tried first")
    target_path: Optional[Path] = Field(default=None, description="Cache directory override")
    target_extension: str = Field(default=DEFAULT_EXTENSION, description="Cache entry extension")

    @field_validator("source_urls", mode="before")
    @classmethod
    def _coerce_sources(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("checksum", "checksum_url", "single_source_url")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("checksum_type")
    @classmethod
    def _normalise_type(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("target_extension")
    @classmethod
    def _normalise_extension(cls, value: str) -> str:
        return normalize_extension(value) or DEFAULT_EXTENSION

    def sources(self) -> List[str]:
        """Return the ordered source list with ``single_source_url`` first."""

        merged: List[str] = []
        if self.single_source_url:
            merged.append(self.single_source_url)
        merged.extend(url.strip() for url in self.source_urls if url and url.strip())
        return merged

    def prepare(self) -> Tuple[List[str], List[str]]:
        """Validate the configuration without network access.

        Returns:
            ``(warnings, errors)`` as human-readable strings; the configuration
            is usable only when ``errors`` is empty.
        """

        warnings: List[str] = []
        errors: List[str] = []
        sources = self.sources()
        if not sources:
            errors.append(MISSING_SOURCES_MESSAGE)

        try:
            _, checksum_warnings = self._resolve(sources)
        except ConfigError as exc:
            errors.append(str(exc))
        else:
            warnings.extend(checksum_warnings)
        return warnings, errors

    def checksum_spec(self) -> ChecksumSpec:
        """Return the resolved (possibly pending) checksum; raise :class:`ConfigError`."""

        spec, _ = self._resolve(self.sources())
        return spec

    def _resolve(self, sources: List[str]) -> Tuple[ChecksumSpec, List[str]]:
        annotations = [split_checksum_annotation(source)[1] for source in sources]
        return resolve_checksum(
            self.checksum, self.checksum_url, self.checksum_type, annotations
        )


class DownloadSettings(BaseSettings):
    """Runtime knobs for the cache, locks, and transport.

    Every field may be set through an ``IMAGEBUILD_<FIELD>`` environment
    variable, e.g. ``IMAGEBUILD_CACHE_DIR`` or ``IMAGEBUILD_LOCK_TIMEOUT_S``.
    """

    model_config = SettingsConfigDict(
        env_prefix="IMAGEBUILD_", case_sensitive=False, extra="forbid"
    )

    cache_dir: Path = Field(default=DEFAULT_CACHE_DIR, description="Artifact cache directory")
    lock_timeout_s: Optional[float] = Field(
        default=None, description="Seconds to wait for a cache lock; unset waits indefinitely"
    )
    lock_poll_interval_s: float = Field(default=0.1, gt=0, description="Lock poll interval")
    soft_locks: bool = Field(default=False, description="Use marker-file locks (network FS)")
    connect_timeout_s: float = Field(default=10.0, gt=0)
    read_timeout_s: float = Field(default=60.0, gt=0)
    operation_timeout_s: Optional[float] = Field(
        default=None, description="Wall-clock budget per transfer attempt"
    )
    max_transport_attempts: int = Field(default=3, description="Attempts per source")
    chunk_size: int = Field(default=1 << 20, gt=0, description="Bytes per streamed chunk")

    @field_validator("lock_timeout_s", "operation_timeout_s")
    @classmethod
    def _positive_or_none(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("timeouts must be > 0")
        return value

    @field_validator("max_transport_attempts")
    @classmethod
    def _validate_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_transport_attempts must be >= 1")
        return value

    @classmethod
    def from_env(cls, **overrides: Any) -> "DownloadSettings":
        """Build settings from ``IMAGEBUILD_*`` variables; ``overrides`` win."""

        try:
            return cls(**{key: value for key, value in overrides.items() if value is not None})
        except ValidationError as exc:
            raise ConfigError(f"invalid download settings: {exc}") from exc

    def build_cache(self, target_path: Optional[Path] = None) -> CacheStore:
        """Return a :class:`CacheStore` rooted at ``target_path`` or ``cache_dir``."""

        return CacheStore(
            target_path or self.cache_dir,
            lock_timeout=self.lock_timeout_s,
            poll_interval=self.lock_poll_interval_s,
            soft_locks=self.soft_locks,
        )

    def build_transport(self, client: Optional[httpx.Client] = None) -> HttpTransport:
        timeout = httpx.Timeout(
            connect=self.connect_timeout_s,
            read=self.read_timeout_s,
            write=self.read_timeout_s,
            pool=self.connect_timeout_s,
        )
        return HttpTransport(
            client,
            timeout=timeout,
            operation_timeout=self.operation_timeout_s,
            max_attempts=self.max_transport_attempts,
            chunk_size=self.chunk_size,
        )


def _read_file(path: Path) -> Mapping[str, Any]:
    """Read a YAML or JSON config file into a mapping.

    Raises:
        ConfigError: If the file is missing, unreadable, malformed, or not a
            mapping at the root.
    """

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"configuration file not found: {path}") from exc
    except OSError as exc:
        raise ConfigError(f"cannot read configuration file {path}: {exc}") from exc

    if path.suffix.lower() == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"invalid JSON in {path}: {exc}") from exc
    else:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"configuration file {path} must contain a mapping at the root")
    return data


def _section(data: Mapping[str, Any], name: str, path: Path) -> Mapping[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, Mapping):
        raise ConfigError(f"'{name}' in {path} must be a mapping")
    return section


def _env_overrides() -> dict[str, Any]:
    env = DownloadSettings()
    return env.model_dump(include=set(env.model_fields_set))


def load_config(path: Union[str, Path]) -> Tuple[ArtifactConfig, DownloadSettings]:
    """Load ``artifact:`` and ``settings:`` sections from a YAML or JSON file.

    ``IMAGEBUILD_*`` environment variables override values from the file.

    Raises:
        ConfigError: If the file cannot be parsed or fails validation.
    """

    config_path = Path(path)
    data = _read_file(config_path)
    unknown = sorted(set(data) - {"artifact", "settings"})
    if unknown:
        raise ConfigError(f"unknown top-level keys in {config_path}: {', '.join(unknown)}")

    try:
        artifact = ArtifactConfig.model_validate(dict(_section(data, "artifact", config_path)))
        file_settings = dict(_section(data, "settings", config_path))
        env = _env_overrides()
        for key in env:
            if key in file_settings:
                LOGGER.info(
                    "Config overridden: %s from environment",
                    key,
                    extra={"stage": "config"},
                )
        settings = DownloadSettings(**{**file_settings, **env})
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration in {config_path}: {exc}") from exc

    LOGGER.debug(
        "loaded configuration",
        extra={"stage": "config", "path": str(config_path), "cache_dir": str(settings.cache_dir)},
    )
    return artifact, settings
