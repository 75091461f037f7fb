"""Capture device abstractions."""
from __future__ import annotations

import asyncio
import importlib
import logging
import os
import time
from abc import ABC, abstractmethod
from types import ModuleType
from typing import Awaitable, Callable

import av
import numpy as np

from .config import CaptureSettings
from .errors import CaptureFault, DeviceDenied, DeviceUnavailable

logger = logging.getLogger(__name__)

DEVICE_ENV = "SETLISTER_CAPTURE_DEVICE"

# User visible identifiers for capture backends.
DEVICE_SOURCES: dict[str, str] = {
    "sounddevice": "System microphone (PortAudio)",
    "synthetic": "Synthetic test tone",
}

DEFAULT_DEVICE_CHOICE = "auto"

_DEVICE_ALIASES = {
    "auto": "sounddevice",
    "microphone": "sounddevice",
    "portaudio": "sounddevice",
}

_DENIED_TOKENS = ("permission", "denied", "not allowed", "access")

SegmentSink = Callable[[bytes, float], Awaitable[None]]
ErrorHandler = Callable[[CaptureFault], None]


class BaseCaptureDevice(ABC):
    """Exclusive audio input that emits already-encoded segments.

    ``acquire`` requests access, ``start`` begins emitting one segment per
    timeslice into ``sink``, ``stop`` flushes the tail segment through the
    sink before returning, and ``release`` hands the hardware back.
    """

    @abstractmethod
    async def acquire(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def start(
        self, sink: SegmentSink, on_error: ErrorHandler, *, timeslice: float
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def release(self) -> None:  # pragma: no cover - optional override
        return None

    @property
    def media_type(self) -> str:
        return "application/octet-stream"


class _EncodedSink:
    """Write target for the PyAV muxer; drained once per timeslice."""

    def __init__(self) -> None:
        self._data = bytearray()

    def write(self, data: bytes) -> int:
        self._data.extend(data)
        return len(data)

    def drain(self) -> bytes:
        payload = bytes(self._data)
        self._data.clear()
        return payload


def _load_sounddevice() -> ModuleType:
    try:
        return importlib.import_module("sounddevice")
    except (ImportError, OSError) as exc:
        raise DeviceUnavailable(
            f"sounddevice/PortAudio is not available: {exc}"
        ) from exc


def _classify_device_error(exc: BaseException) -> DeviceDenied | DeviceUnavailable:
    detail = str(exc).strip() or exc.__class__.__name__
    if isinstance(exc, PermissionError) or any(
        token in detail.lower() for token in _DENIED_TOKENS
    ):
        return DeviceDenied(detail)
    return DeviceUnavailable(detail)


class SoundDeviceCapture(BaseCaptureDevice):
    """Record the system microphone and encode it with PyAV.

    Raw fidelity is intentional: PortAudio applies no noise suppression or
    echo cancellation, and the stream runs at a fixed sample rate.
    """

    def __init__(
        self,
        settings: CaptureSettings | None = None,
        *,
        device: int | str | None = None,
    ) -> None:
        self._settings = settings or CaptureSettings()
        self._device = device
        self._sd: ModuleType | None = None
        self._stream = None
        self._queue: asyncio.Queue[np.ndarray | None] | None = None
        self._encoder_task: asyncio.Task[None] | None = None
        self._container = None
        self._audio_stream = None
        self._output = _EncodedSink()
        self._samples_written = 0

    @property
    def media_type(self) -> str:
        return self._settings.media_type

    @property
    def _layout(self) -> str:
        return "mono" if self._settings.channels == 1 else "stereo"

    async def acquire(self) -> None:
        sd = _load_sounddevice()
        try:
            await asyncio.to_thread(
                sd.check_input_settings,
                device=self._device,
                channels=self._settings.channels,
                dtype="int16",
                samplerate=self._settings.sample_rate,
            )
        except (sd.PortAudioError, ValueError, OSError) as exc:
            raise _classify_device_error(exc) from exc
        self._sd = sd

    async def start(self, sink: SegmentSink, on_error: ErrorHandler, *, timeslice: float) -> None:
        if self._sd is None:
            raise DeviceUnavailable("Capture device has not been acquired")
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[np.ndarray | None] = asyncio.Queue()
        self._queue = queue
        self._open_encoder()

        def _callback(indata, frames, time_info, status) -> None:  # pragma: no cover - PortAudio thread
            if status:
                logger.warning("Audio input status: %s", status)
            loop.call_soon_threadsafe(queue.put_nowait, indata.copy())

        def _finished() -> None:  # pragma: no cover - PortAudio thread
            loop.call_soon_threadsafe(queue.put_nowait, None)

        try:
            self._stream = self._sd.InputStream(
                samplerate=self._settings.sample_rate,
                channels=self._settings.channels,
                dtype="int16",
                device=self._device,
                callback=_callback,
                finished_callback=_finished,
            )
            self._stream.start()
        except (self._sd.PortAudioError, ValueError, OSError) as exc:
            self._close_encoder()
            raise _classify_device_error(exc) from exc

        self._encoder_task = asyncio.create_task(
            self._run_encoder(queue, sink, on_error, timeslice)
        )

    async def stop(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                await asyncio.to_thread(stream.stop)
                await asyncio.to_thread(stream.close)
            except (self._sd.PortAudioError, OSError) as exc:  # pragma: no cover - hardware dependent
                logger.warning("Error while closing audio input: %s", exc)
        if self._queue is not None:
            self._queue.put_nowait(None)
        task = self._encoder_task
        self._encoder_task = None
        if task is not None:
            await task

    async def release(self) -> None:
        if self._stream is not None or self._encoder_task is not None:
            await self.stop()
        self._sd = None

    def _open_encoder(self) -> None:
        self._output = _EncodedSink()
        self._samples_written = 0
        self._container = av.open(self._output, mode="w", format=self._settings.container_format)
        stream = self._container.add_stream(self._settings.codec, rate=self._settings.sample_rate)
        stream.codec_context.layout = self._layout
        stream.codec_context.format = "s16"
        stream.codec_context.bit_rate = self._settings.bit_rate
        self._audio_stream = stream

    def _encode_block(self, block: np.ndarray | None) -> None:
        if block is None:
            packets = self._audio_stream.encode(None)
        else:
            frame = av.AudioFrame.from_ndarray(
                np.ascontiguousarray(block.reshape(1, -1)), format="s16", layout=self._layout
            )
            frame.sample_rate = self._settings.sample_rate
            frame.pts = self._samples_written
            self._samples_written += int(block.shape[0])
            packets = self._audio_stream.encode(frame)
        for packet in packets:
            self._container.mux(packet)

    def _close_encoder(self) -> None:
        container = self._container
        self._container = None
        self._audio_stream = None
        if container is not None:
            container.close()

    async def _run_encoder(
        self,
        queue: asyncio.Queue[np.ndarray | None],
        sink: SegmentSink,
        on_error: ErrorHandler,
        timeslice: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        next_emit = loop.time() + timeslice
        try:
            while True:
                block = await queue.get()
                if block is None:
                    self._encode_block(None)
                    self._close_encoder()
                    tail = self._output.drain()
                    if tail:
                        await sink(tail, time.time())
                    return
                self._encode_block(block)
                if loop.time() >= next_emit:
                    next_emit += timeslice
                    payload = self._output.drain()
                    if payload:
                        await sink(payload, time.time())
        except asyncio.CancelledError:
            raise
        except (av.error.FFmpegError, ValueError, OSError) as exc:
            logger.exception("Audio encoder failed")
            self._close_encoder()
            on_error(CaptureFault(f"Audio encoder failed: {exc}"))


class SyntheticCaptureDevice(BaseCaptureDevice):
    """Emits deterministic segments for development and testing."""

    def __init__(self, *, segment_bytes: int = 4096, media_type: str = "audio/ogg") -> None:
        if segment_bytes <= 0:
            raise ValueError("segment_bytes must be positive")
        self._segment_bytes = int(segment_bytes)
        self._media_type = media_type
        self._task: asyncio.Task[None] | None = None
        self._sink: SegmentSink | None = None
        self._emitted = 0
        self._acquired = False

    @property
    def media_type(self) -> str:
        return self._media_type

    async def acquire(self) -> None:
        self._acquired = True

    def _next_payload(self) -> bytes:
        value = self._emitted % 256
        self._emitted += 1
        return bytes([value]) * self._segment_bytes

    async def start(self, sink: SegmentSink, on_error: ErrorHandler, *, timeslice: float) -> None:
        if not self._acquired:
            raise DeviceUnavailable("Capture device has not been acquired")
        self._sink = sink

        async def _emit() -> None:
            while True:
                await asyncio.sleep(timeslice)
                await sink(self._next_payload(), time.time())

        self._task = asyncio.create_task(_emit())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._sink is not None:
            await self._sink(self._next_payload(), time.time())
            self._sink = None

    async def release(self) -> None:
        if self._task is not None:
            await self.stop()
        self._acquired = False


def _normalise_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv(DEVICE_ENV, DEFAULT_DEVICE_CHOICE)
    normalised = choice.strip().lower()
    return _DEVICE_ALIASES.get(normalised, normalised)


def create_capture_device(
    choice: str | None = None,
    *,
    settings: CaptureSettings | None = None,
) -> BaseCaptureDevice:
    """Create the capture device named by *choice* or the environment."""

    resolved = _normalise_choice(choice)
    if resolved == "synthetic":
        return SyntheticCaptureDevice(media_type=(settings or CaptureSettings()).media_type)
    if resolved == "sounddevice":
        return SoundDeviceCapture(settings)
    raise ValueError(f"Unknown capture device choice: {choice}")


def describe_capture_device(choice: str | None = None) -> dict[str, str]:
    """Return the backend a device choice resolves to and its display name."""

    resolved = _normalise_choice(choice)
    label = DEVICE_SOURCES.get(resolved)
    if label is None:
        raise ValueError(f"Unknown capture device choice: {choice}")
    return {"backend": resolved, "label": label}


__all__ = [
    "BaseCaptureDevice",
    "DEFAULT_DEVICE_CHOICE",
    "DEVICE_ENV",
    "DEVICE_SOURCES",
    "ErrorHandler",
    "SegmentSink",
    "SoundDeviceCapture",
    "SyntheticCaptureDevice",
    "create_capture_device",
    "describe_capture_device",
]
