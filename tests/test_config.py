from pathlib import Path
import json

import pytest

from setlister_capture.config import (
    CaptureConfig,
    CaptureSettings,
    ChunkRetryPolicy,
    ConfigManager,
    DATA_DIR_ENV,
    DEFAULT_CHUNKED_THRESHOLD_BYTES,
    DEFAULT_CHUNK_SIZE_BYTES,
    GuardSettings,
    SERVER_URL_ENV,
    UploadSettings,
    parse_config,
)


def test_defaults_match_capture_contract() -> None:
    config = CaptureConfig()
    assert config.capture.sample_rate == 48_000
    assert config.capture.timeslice_seconds == 1.0
    assert config.upload.chunked_threshold_bytes == DEFAULT_CHUNKED_THRESHOLD_BYTES == 100 * 1024 * 1024
    assert config.upload.chunk_size_bytes == DEFAULT_CHUNK_SIZE_BYTES == 50 * 1024 * 1024
    assert config.upload.retry.max_attempts == 3
    assert config.guard.warn_percent == 80.0


def test_store_paths_live_under_data_dir(tmp_path: Path) -> None:
    config = CaptureConfig(data_dir=tmp_path)
    assert config.segments_path == tmp_path / "segments.db"
    assert config.backups_path == tmp_path / "backups.db"
    assert config.marker_path == tmp_path / "active_session.json"
    assert config.event_log_path == tmp_path / "session_events.jsonl"


@pytest.mark.parametrize(
    "factory",
    [
        lambda: CaptureSettings(sample_rate=4_000),
        lambda: CaptureSettings(channels=3),
        lambda: CaptureSettings(timeslice_seconds=0.0),
        lambda: ChunkRetryPolicy(max_attempts=0),
        lambda: ChunkRetryPolicy(backoff_seconds=-1.0),
        lambda: UploadSettings(base_url=" "),
        lambda: UploadSettings(chunk_size_bytes=0),
        lambda: GuardSettings(warn_percent=150.0),
    ],
)
def test_invalid_settings_are_rejected(factory) -> None:
    with pytest.raises(ValueError):
        factory()


def test_retry_policy_backoff_is_linear() -> None:
    policy = ChunkRetryPolicy(max_attempts=4, backoff_seconds=2.0)
    assert [policy.delay_for(attempt) for attempt in range(1, 5)] == [0.0, 2.0, 4.0, 6.0]


def test_parse_config_merges_over_defaults() -> None:
    config = parse_config(
        {
            "data_dir": "/tmp/capture",
            "device": " Synthetic ",
            "upload": {"base_url": "https://setlister.example", "retry": {"max_attempts": "5"}},
        }
    )
    assert config.data_dir == Path("/tmp/capture")
    assert config.device == "synthetic"
    assert config.upload.base_url == "https://setlister.example"
    assert config.upload.retry.max_attempts == 5
    assert config.upload.retry.backoff_seconds == 1.0
    assert config.capture == CaptureSettings()


def test_parse_config_rejects_non_mapping_sections() -> None:
    with pytest.raises(ValueError):
        parse_config({"upload": ["not", "a", "mapping"]})


def test_environment_overrides_leave_the_file_untouched(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"upload": {"chunk_size_bytes": 1024}}), encoding="utf-8")
    original = path.read_text(encoding="utf-8")

    config = ConfigManager(
        path, environ={DATA_DIR_ENV: str(tmp_path / "data"), SERVER_URL_ENV: "https://api.example"}
    ).get()

    assert config.upload.chunk_size_bytes == 1024
    assert config.upload.base_url == "https://api.example"
    assert path.read_text(encoding="utf-8") == original
    assert ConfigManager(path, environ={}).get().data_dir != tmp_path / "data"


def test_environment_overrides_data_dir_and_server(tmp_path: Path) -> None:
    manager = ConfigManager(
        tmp_path / "config.json",
        environ={DATA_DIR_ENV: str(tmp_path / "data"), SERVER_URL_ENV: "https://api.example"},
    )
    config = manager.get()
    assert config.data_dir == tmp_path / "data"
    assert config.upload.base_url == "https://api.example"


def test_corrupt_config_file_raises(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(RuntimeError):
        ConfigManager(path, environ={})
