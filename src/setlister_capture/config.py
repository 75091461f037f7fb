"""Configuration management for Setlister Capture."""
from __future__ import annotations

import json
import math
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

DATA_DIR_ENV = "SETLISTER_CAPTURE_DATA_DIR"
SERVER_URL_ENV = "SETLISTER_CAPTURE_SERVER_URL"

DEFAULT_DATA_DIR = Path("data/capture")
DEFAULT_SERVER_URL = "http://127.0.0.1:3000"

MIB = 1024 * 1024
DEFAULT_CHUNKED_THRESHOLD_BYTES = 100 * MIB
DEFAULT_CHUNK_SIZE_BYTES = 50 * MIB

DEFAULT_DETAIL_PATH_TEMPLATE = "/setlists/{session_id}/recordings/{recording_id}/split"


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Parameters requested from the capture device."""

    sample_rate: int = 48_000
    channels: int = 1
    timeslice_seconds: float = 1.0
    container_format: str = "ogg"
    codec: str = "libopus"
    bit_rate: int = 128_000
    media_type: str = "audio/ogg"
    duration_drift_tolerance: float = 2.0

    def __post_init__(self) -> None:
        if self.sample_rate < 8_000 or self.sample_rate > 192_000:
            raise ValueError("Sample rate must be between 8000 and 192000 Hz")
        if self.channels not in (1, 2):
            raise ValueError("Channel count must be 1 or 2")
        if not math.isfinite(self.timeslice_seconds) or not (0.1 <= self.timeslice_seconds <= 10.0):
            raise ValueError("Timeslice must be between 0.1 and 10 seconds")
        if self.bit_rate <= 0:
            raise ValueError("Bit rate must be positive")
        if self.duration_drift_tolerance < 0:
            raise ValueError("Duration drift tolerance must not be negative")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ChunkRetryPolicy:
    """How often a single chunk is re-sent before the transfer is abandoned."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1 or self.max_attempts > 20:
            raise ValueError("Chunk attempts must be between 1 and 20")
        if not math.isfinite(self.backoff_seconds) or self.backoff_seconds < 0:
            raise ValueError("Chunk backoff must be a non-negative number of seconds")

    def delay_for(self, attempt: int) -> float:
        """Return the pause before *attempt* (1-based) is re-sent."""

        return self.backoff_seconds * max(0, attempt - 1)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class UploadSettings:
    """Upload endpoint and strategy selection."""

    base_url: str = DEFAULT_SERVER_URL
    chunked_threshold_bytes: int = DEFAULT_CHUNKED_THRESHOLD_BYTES
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE_BYTES
    progress_slice_bytes: int = 256 * 1024
    timeout: float = 120.0
    retry: ChunkRetryPolicy = field(default_factory=ChunkRetryPolicy)
    detail_path_template: str = DEFAULT_DETAIL_PATH_TEMPLATE

    def __post_init__(self) -> None:
        if not isinstance(self.base_url, str) or not self.base_url.strip():
            raise ValueError("Upload base URL must be provided")
        if self.chunked_threshold_bytes <= 0:
            raise ValueError("Chunked upload threshold must be positive")
        if self.chunk_size_bytes <= 0:
            raise ValueError("Chunk size must be positive")
        if self.progress_slice_bytes <= 0:
            raise ValueError("Progress slice size must be positive")
        if not math.isfinite(self.timeout) or self.timeout <= 0:
            raise ValueError("Upload timeout must be positive")

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["retry"] = self.retry.to_dict()
        return payload


@dataclass(frozen=True, slots=True)
class GuardSettings:
    """Thresholds used by the memory preflight check."""

    warn_percent: float = 80.0
    scratch_bytes: int = 64 * MIB

    def __post_init__(self) -> None:
        if not math.isfinite(self.warn_percent) or not (1.0 <= self.warn_percent <= 100.0):
            raise ValueError("Memory warning threshold must be between 1 and 100 percent")
        if self.scratch_bytes < 0:
            raise ValueError("Scratch allocation size must not be negative")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class CaptureConfig:
    """Complete configuration for one capture client."""

    data_dir: Path = DEFAULT_DATA_DIR
    device: str = "auto"
    capture: CaptureSettings = field(default_factory=CaptureSettings)
    upload: UploadSettings = field(default_factory=UploadSettings)
    guard: GuardSettings = field(default_factory=GuardSettings)

    @property
    def segments_path(self) -> Path:
        return self.data_dir / "segments.db"

    @property
    def backups_path(self) -> Path:
        return self.data_dir / "backups.db"

    @property
    def marker_path(self) -> Path:
        return self.data_dir / "active_session.json"

    @property
    def event_log_path(self) -> Path:
        return self.data_dir / "session_events.jsonl"

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "device": self.device,
            "capture": self.capture.to_dict(),
            "upload": self.upload.to_dict(),
            "guard": self.guard.to_dict(),
        }


def _coerce_int(value: Any, name: str) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _coerce_float(value: Any, name: str) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(numeric):
        raise ValueError(f"{name} must be finite")
    return numeric


def _parse_capture_settings(value: Any, *, default: CaptureSettings) -> CaptureSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Capture settings must be provided as a mapping")
    return CaptureSettings(
        sample_rate=_coerce_int(value.get("sample_rate", default.sample_rate), "Sample rate"),
        channels=_coerce_int(value.get("channels", default.channels), "Channel count"),
        timeslice_seconds=_coerce_float(
            value.get("timeslice_seconds", default.timeslice_seconds), "Timeslice"
        ),
        container_format=str(value.get("container_format", default.container_format)),
        codec=str(value.get("codec", default.codec)),
        bit_rate=_coerce_int(value.get("bit_rate", default.bit_rate), "Bit rate"),
        media_type=str(value.get("media_type", default.media_type)),
        duration_drift_tolerance=_coerce_float(
            value.get("duration_drift_tolerance", default.duration_drift_tolerance),
            "Duration drift tolerance",
        ),
    )


def _parse_retry_policy(value: Any, *, default: ChunkRetryPolicy) -> ChunkRetryPolicy:
    if value is None:
        return default
    if isinstance(value, ChunkRetryPolicy):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Chunk retry policy must be provided as a mapping")
    return ChunkRetryPolicy(
        max_attempts=_coerce_int(value.get("max_attempts", default.max_attempts), "Chunk attempts"),
        backoff_seconds=_coerce_float(
            value.get("backoff_seconds", default.backoff_seconds), "Chunk backoff"
        ),
    )


def _parse_upload_settings(value: Any, *, default: UploadSettings) -> UploadSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Upload settings must be provided as a mapping")
    return UploadSettings(
        base_url=str(value.get("base_url", default.base_url)).strip(),
        chunked_threshold_bytes=_coerce_int(
            value.get("chunked_threshold_bytes", default.chunked_threshold_bytes),
            "Chunked upload threshold",
        ),
        chunk_size_bytes=_coerce_int(
            value.get("chunk_size_bytes", default.chunk_size_bytes), "Chunk size"
        ),
        progress_slice_bytes=_coerce_int(
            value.get("progress_slice_bytes", default.progress_slice_bytes), "Progress slice"
        ),
        timeout=_coerce_float(value.get("timeout", default.timeout), "Upload timeout"),
        retry=_parse_retry_policy(value.get("retry"), default=default.retry),
        detail_path_template=str(
            value.get("detail_path_template", default.detail_path_template)
        ),
    )


def _parse_guard_settings(value: Any, *, default: GuardSettings) -> GuardSettings:
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError("Guard settings must be provided as a mapping")
    return GuardSettings(
        warn_percent=_coerce_float(value.get("warn_percent", default.warn_percent), "Warn percent"),
        scratch_bytes=_coerce_int(
            value.get("scratch_bytes", default.scratch_bytes), "Scratch allocation size"
        ),
    )


def parse_config(payload: Mapping[str, Any], *, default: CaptureConfig | None = None) -> CaptureConfig:
    """Build a :class:`CaptureConfig` from a JSON-compatible mapping."""

    base = default or CaptureConfig()
    data_dir_raw = payload.get("data_dir")
    data_dir = Path(data_dir_raw) if isinstance(data_dir_raw, str) and data_dir_raw else base.data_dir
    device_raw = payload.get("device", base.device)
    device = device_raw.strip().lower() if isinstance(device_raw, str) and device_raw.strip() else base.device
    return CaptureConfig(
        data_dir=data_dir,
        device=device,
        capture=_parse_capture_settings(payload.get("capture"), default=base.capture),
        upload=_parse_upload_settings(payload.get("upload"), default=base.upload),
        guard=_parse_guard_settings(payload.get("guard"), default=base.guard),
    )


def _apply_environment(config: CaptureConfig, environ: Mapping[str, str]) -> CaptureConfig:
    data_dir = config.data_dir
    env_dir = environ.get(DATA_DIR_ENV, "").strip()
    if env_dir:
        data_dir = Path(env_dir)
    upload = config.upload
    env_url = environ.get(SERVER_URL_ENV, "").strip()
    if env_url:
        upload = _parse_upload_settings({"base_url": env_url}, default=upload)
    if data_dir == config.data_dir and upload is config.upload:
        return config
    return CaptureConfig(
        data_dir=data_dir,
        device=config.device,
        capture=config.capture,
        upload=upload,
        guard=config.guard,
    )


class ConfigManager:
    """Loads the configuration file once and layers environment overrides on top."""

    def __init__(self, config_path: Path, *, environ: Mapping[str, str] | None = None) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._environ = os.environ if environ is None else environ
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._config = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> CaptureConfig:
        if not self._path.exists():
            return _apply_environment(CaptureConfig(), self._environ)
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            config = parse_config(payload)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc
        return _apply_environment(config, self._environ)

    def get(self) -> CaptureConfig:
        with self._lock:
            return self._config


__all__ = [
    "CaptureConfig",
    "CaptureSettings",
    "ChunkRetryPolicy",
    "ConfigManager",
    "DATA_DIR_ENV",
    "DEFAULT_CHUNKED_THRESHOLD_BYTES",
    "DEFAULT_CHUNK_SIZE_BYTES",
    "DEFAULT_DETAIL_PATH_TEMPLATE",
    "GuardSettings",
    "SERVER_URL_ENV",
    "UploadSettings",
    "parse_config",
]
