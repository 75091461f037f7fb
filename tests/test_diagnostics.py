import json
import sys
from pathlib import Path

import pytest

from setlister_capture import diagnostics
from setlister_capture.config import CaptureConfig, GuardSettings
from setlister_capture.marker import SessionMarker, SessionMarkerStore
from setlister_capture.resources import ResourceGuard
from setlister_capture.storage import BackupRecord, BackupStore, Segment, SegmentStore
from setlister_capture.version import APP_VERSION


def _populate(config: CaptureConfig) -> None:
    SessionMarkerStore(config.marker_path).set(SessionMarker("S1", "Friday", 1.0, "processing"))
    BackupStore(config.backups_path).put(BackupRecord("S1", b"x" * 2048, 61.5, 2.0))
    segments = SegmentStore(config.segments_path)
    segments.append(Segment("S1", 0, 1.0, b"a"))
    segments.append(Segment("OLD", 0, 1.0, b"b"))


def test_collect_storage_status(tmp_path: Path) -> None:
    config = CaptureConfig(data_dir=tmp_path)
    _populate(config)

    status = diagnostics.collect_storage_status(config)

    assert status["marker"]["session_id"] == "S1"
    assert status["pending_backups"] == [
        {"session_id": "S1", "size_bytes": 2048, "duration": 61.5, "created_at": 2.0}
    ]
    assert status["orphaned_sessions"] == ["OLD"]


def test_diagnose_audio_stack_reports_missing_sounddevice(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "sounddevice", None)
    payload = diagnostics.diagnose_audio_stack()
    assert payload["status"] == "error"
    assert any("sounddevice" in detail for detail in payload["details"])
    assert diagnostics.SOUNDDEVICE_INSTALL_HINT in payload["hints"]


def test_collect_diagnostics_includes_resources(tmp_path: Path) -> None:
    meminfo = tmp_path / "meminfo"
    meminfo.write_text("MemTotal: 1000 kB\nMemAvailable: 50 kB\n", encoding="utf-8")
    guard = ResourceGuard(GuardSettings(warn_percent=80), meminfo_path=meminfo)

    payload = diagnostics.collect_diagnostics(CaptureConfig(data_dir=tmp_path), guard=guard)

    assert payload["version"] == APP_VERSION
    assert payload["resources"]["ok"] is False
    assert payload["device"] == {
        "choice": "auto",
        "backend": "sounddevice",
        "label": "System microphone (PortAudio)",
    }
    assert payload["storage"]["pending_backups"] == []


def test_cli_json_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setenv("SETLISTER_CAPTURE_DATA_DIR", str(tmp_path / "data"))
    _populate(CaptureConfig(data_dir=tmp_path / "data"))

    exit_code = diagnostics.run(["--json", "--config", str(tmp_path / "config.json")])

    assert exit_code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["version"] == APP_VERSION
    assert payload["storage"]["marker"]["status"] == "processing"
    assert {"resources", "audio", "storage"} <= set(payload)


def test_cli_text_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setenv("SETLISTER_CAPTURE_DATA_DIR", str(tmp_path / "data"))
    _populate(CaptureConfig(data_dir=tmp_path / "data"))

    assert diagnostics.main(["--config", str(tmp_path / "config.json")]) == 0

    output = capsys.readouterr().out
    assert f"Setlister Capture diagnostics (version {APP_VERSION})" in output
    assert "Capture device: System microphone (PortAudio) (sounddevice)" in output
    assert "Active session: S1 (processing)" in output
    assert "S1: 2.0 KiB, 61.5s" in output
    assert "Orphaned segments for: OLD" in output


def test_cli_reports_broken_config(tmp_path: Path, capsys) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[]", encoding="utf-8")
    assert diagnostics.run(["--config", str(config_path)]) == 2
    assert "Unable to load configuration" in capsys.readouterr().err


def test_unknown_device_choice_is_reported(tmp_path: Path) -> None:
    config = CaptureConfig(data_dir=tmp_path, device="webcam")
    payload = diagnostics.collect_diagnostics(config)
    assert payload["device"]["choice"] == "webcam"
    assert "Unknown capture device choice" in payload["device"]["error"]
