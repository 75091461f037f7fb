import asyncio
import sys

import pytest

import setlister_capture.device as device_module
from setlister_capture.device import (
    DEVICE_ENV,
    SoundDeviceCapture,
    SyntheticCaptureDevice,
    create_capture_device,
    describe_capture_device,
)
from setlister_capture.errors import DeviceDenied, DeviceUnavailable


def test_synthetic_device_emits_segments_and_tail_on_stop() -> None:
    received: list[bytes] = []

    async def sink(payload: bytes, captured_at: float) -> None:
        received.append(payload)

    async def _test() -> None:
        device = SyntheticCaptureDevice(segment_bytes=4)
        await device.acquire()
        await device.start(sink, lambda fault: None, timeslice=0.01)
        await asyncio.sleep(0.05)
        await device.stop()
        count = len(received)
        await asyncio.sleep(0.03)
        assert len(received) == count
        await device.release()

    asyncio.run(_test())
    assert len(received) >= 2
    assert received[0] == b"\x00" * 4
    assert received[1] == b"\x01" * 4


def test_synthetic_device_requires_acquire() -> None:
    async def sink(payload: bytes, captured_at: float) -> None:  # pragma: no cover - not reached
        return None

    device = SyntheticCaptureDevice()
    with pytest.raises(DeviceUnavailable):
        asyncio.run(device.start(sink, lambda fault: None, timeslice=1.0))


def test_create_capture_device_choices(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(create_capture_device("synthetic"), SyntheticCaptureDevice)
    assert isinstance(create_capture_device("microphone"), SoundDeviceCapture)
    assert isinstance(create_capture_device(" AUTO "), SoundDeviceCapture)

    monkeypatch.setenv(DEVICE_ENV, "synthetic")
    assert isinstance(create_capture_device(), SyntheticCaptureDevice)

    with pytest.raises(ValueError):
        create_capture_device("webcam")


def test_missing_portaudio_is_reported_as_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "sounddevice", None)
    with pytest.raises(DeviceUnavailable):
        asyncio.run(SoundDeviceCapture().acquire())


def test_permission_errors_are_reported_as_denied(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakePortAudioError(Exception):
        pass

    class FakeSoundDevice:
        PortAudioError = FakePortAudioError

        @staticmethod
        def check_input_settings(**kwargs) -> None:
            raise FakePortAudioError("Error opening InputStream: Permission denied")

    monkeypatch.setattr(device_module, "_load_sounddevice", lambda: FakeSoundDevice)
    with pytest.raises(DeviceDenied):
        asyncio.run(SoundDeviceCapture().acquire())


def test_invalid_input_settings_are_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakePortAudioError(Exception):
        pass

    class FakeSoundDevice:
        PortAudioError = FakePortAudioError

        @staticmethod
        def check_input_settings(**kwargs) -> None:
            raise FakePortAudioError("Invalid number of channels")

    monkeypatch.setattr(device_module, "_load_sounddevice", lambda: FakeSoundDevice)
    with pytest.raises(DeviceUnavailable):
        asyncio.run(SoundDeviceCapture().acquire())


def test_describe_capture_device_resolves_aliases() -> None:
    assert describe_capture_device("Microphone") == {
        "backend": "sounddevice",
        "label": "System microphone (PortAudio)",
    }
    assert describe_capture_device("synthetic")["label"] == "Synthetic test tone"
    with pytest.raises(ValueError):
        describe_capture_device("webcam")
