"""Tests for the recording control API."""

from __future__ import annotations

from pathlib import Path

import pytest

httpx = pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from setlister_capture.app import create_app, status_for_error
from setlister_capture.config import GuardSettings, UploadSettings
from setlister_capture.controller import SessionController
from setlister_capture.device import SyntheticCaptureDevice
from setlister_capture.errors import (
    DeviceDenied,
    DeviceUnavailable,
    QuotaExceeded,
    StorageFault,
    TransientTransferFault,
)
from setlister_capture.event_log import SessionEventLog
from setlister_capture.marker import SessionMarkerStore
from setlister_capture.resources import ResourceGuard
from setlister_capture.storage import BackupStore, SegmentStore
from setlister_capture.transport import UploadTransport


class DeniedDevice(SyntheticCaptureDevice):
    async def acquire(self) -> None:
        raise DeviceDenied("permission denied")


def _build(tmp_path: Path, handler, *, device=None, used_percent: int = 20) -> TestClient:
    meminfo = tmp_path / "meminfo"
    total = 1_000_000
    meminfo.write_text(
        f"MemTotal: {total} kB\nMemAvailable: {total - total * used_percent // 100} kB\n",
        encoding="utf-8",
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    controller = SessionController(
        device=device or SyntheticCaptureDevice(segment_bytes=8),
        segments=SegmentStore(tmp_path / "segments.db"),
        backups=BackupStore(tmp_path / "backups.db"),
        markers=SessionMarkerStore(tmp_path / "active_session.json"),
        transport=UploadTransport(UploadSettings(base_url="http://capture.test"), client=client),
        guard=ResourceGuard(GuardSettings(), meminfo_path=meminfo),
        event_log=SessionEventLog(tmp_path / "events.jsonl"),
        probe=lambda payload: None,
    )
    app = create_app(tmp_path / "config.json", controller=controller)
    return TestClient(app)


def _accept(request: httpx.Request) -> httpx.Response:
    return httpx.Response(201, json={"recordingId": 42})


def test_full_session_through_api(tmp_path: Path) -> None:
    with _build(tmp_path, _accept) as client:
        status = client.get("/api/recording")
        assert status.status_code == 200
        assert status.json()["state"] == "idle"

        preflight = client.get("/api/recording/preflight")
        assert preflight.json()["ok"] is True

        started = client.post("/api/recording/start", json={"session_id": "12", "title": "Friday"})
        assert started.status_code == 200
        assert started.json()["state"] == "recording"

        warning = client.get("/api/recording/leave-warning").json()
        assert warning["warn"] is True

        stopped = client.post("/api/recording/stop")
        assert stopped.status_code == 200
        payload = stopped.json()
        assert payload["outcome"]["success"] is True
        assert payload["outcome"]["recording_id"] == 42
        assert payload["outcome"]["detail_path"] == "/setlists/12/recordings/42/split"
        assert payload["session"]["state"] == "complete"

        events = client.get("/api/recording/events", params={"session_id": "12"}).json()
        assert events["entries"][-1]["state"] == "complete"

        assert client.get("/api/recording/leave-warning").json() == {"warn": False, "message": None}


def test_second_start_is_a_conflict(tmp_path: Path) -> None:
    with _build(tmp_path, _accept) as client:
        assert client.post("/api/recording/start", json={"session_id": "1"}).status_code == 200
        response = client.post("/api/recording/start", json={"session_id": "2"})
        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "session-busy"
        assert client.post("/api/recording/cancel").status_code == 200


def test_resource_warning_needs_override(tmp_path: Path) -> None:
    with _build(tmp_path, _accept, used_percent=95) as client:
        response = client.post("/api/recording/start", json={"session_id": "1"})
        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["kind"] == "resource-warning"
        assert detail["report"]["ok"] is False

        response = client.post(
            "/api/recording/start", json={"session_id": "1", "override_warning": True}
        )
        assert response.status_code == 200
        client.post("/api/recording/cancel")


def test_device_denied_maps_to_forbidden(tmp_path: Path) -> None:
    with _build(tmp_path, _accept, device=DeniedDevice()) as client:
        response = client.post("/api/recording/start", json={"session_id": "1"})
        assert response.status_code == 403
        assert response.json()["detail"]["kind"] == "device-denied"


def test_quota_failure_then_forced_retry(tmp_path: Path) -> None:
    responses = [
        httpx.Response(413, json={"error": "quota_exceeded", "message": "Quota exceeded"}),
        httpx.Response(201, json={"recordingId": 7}),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    with _build(tmp_path, handler) as client:
        client.post("/api/recording/start", json={"session_id": "5", "title": "Gig"})
        stopped = client.post("/api/recording/stop").json()
        assert stopped["outcome"]["success"] is False
        assert stopped["outcome"]["error"]["kind"] == "quota-exceeded"
        assert stopped["session"]["state"] == "failed"
        assert stopped["session"]["retryable"] is False

        refused = client.post("/api/recording/retry")
        assert refused.status_code == 409

        retried = client.post("/api/recording/retry", json={"force": True})
        assert retried.status_code == 200
        assert retried.json()["outcome"]["recording_id"] == 7


def test_invalid_transitions_are_conflicts(tmp_path: Path) -> None:
    with _build(tmp_path, _accept) as client:
        assert client.post("/api/recording/stop").status_code == 409
        assert client.post("/api/recording/retry").status_code == 409
        assert client.post("/api/recording/cancel").status_code == 409


def test_blank_session_id_is_rejected(tmp_path: Path) -> None:
    with _build(tmp_path, _accept) as client:
        response = client.post("/api/recording/start", json={"session_id": "  "})
        assert response.status_code == 400


def test_error_status_mapping() -> None:
    assert status_for_error(DeviceDenied()) == 403
    assert status_for_error(DeviceUnavailable()) == 503
    assert status_for_error(QuotaExceeded()) == 413
    assert status_for_error(StorageFault()) == 507
    assert status_for_error(TransientTransferFault()) == 502
