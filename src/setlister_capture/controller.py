"""Session state machine tying capture, storage, finalize and upload together."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .config import CaptureConfig, CaptureSettings, DEFAULT_DETAIL_PATH_TEMPLATE
from .device import BaseCaptureDevice, create_capture_device
from .errors import (
    CaptureError,
    CaptureFault,
    DeviceDenied,
    DeviceUnavailable,
    InvalidTransitionError,
    ResourceWarningError,
    ResumeFault,
    SessionBusyError,
    StorageFault,
    TransientTransferFault,
)
from .event_log import SessionEventLog
from .finalize import assemble, finalize_recording, probe_duration
from .marker import SessionMarker, SessionMarkerStore
from .resources import FeasibilityReport, ResourceGuard
from .storage import BackupRecord, BackupStore, Segment, SegmentStore
from .timer import ElapsedTicker, TickHandler, format_elapsed
from .transport import UploadProgress, UploadTransport

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_DEVICE = "awaiting-device"
    RECORDING = "recording"
    STOPPING = "stopping"
    FINALIZING = "finalizing"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    FAILED = "failed"


_STARTABLE_STATES = frozenset({SessionState.IDLE, SessionState.COMPLETE, SessionState.FAILED})
_CAPTURE_STATES = frozenset(
    {SessionState.AWAITING_DEVICE, SessionState.RECORDING, SessionState.STOPPING, SessionState.FINALIZING}
)


@dataclass(frozen=True, slots=True)
class UploadOutcome:
    """Result of a stop or retry: either a recording id or the classified failure."""

    success: bool
    session_id: str
    recording_id: int | str | None = None
    detail_path: str | None = None
    error: CaptureError | None = None

    @property
    def reason(self) -> str | None:
        return None if self.error is None else str(self.error)

    @property
    def retryable(self) -> bool:
        return bool(self.error is not None and self.error.retryable)

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "session_id": self.session_id,
            "recording_id": self.recording_id,
            "detail_path": self.detail_path,
            "error": None if self.error is None else self.error.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    state: SessionState
    session_id: str | None = None
    title: str | None = None
    started_at: float | None = None
    elapsed_seconds: float = 0.0
    segment_count: int = 0
    durable: bool = True
    retryable: bool = False
    progress: UploadProgress | None = None
    last_error: CaptureError | None = None
    recording_id: int | str | None = None
    detail_path: str | None = None

    @property
    def elapsed(self) -> str:
        return format_elapsed(self.elapsed_seconds)

    def to_dict(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "session_id": self.session_id,
            "title": self.title,
            "started_at": self.started_at,
            "elapsed": self.elapsed,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "segment_count": self.segment_count,
            "durable": self.durable,
            "retryable": self.retryable,
            "progress": None if self.progress is None else self.progress.to_dict(),
            "last_error": None if self.last_error is None else self.last_error.to_dict(),
            "recording_id": self.recording_id,
            "detail_path": self.detail_path,
        }


class SessionController:
    """Own the single capture session of this client.

    Exactly one session exists at a time. Its identity survives restarts
    through the :class:`SessionMarkerStore`; segments and the assembled
    backup live in their own stores. Operations that change state are
    serialised through an ``asyncio.Lock``, while :meth:`snapshot` and
    :meth:`leave_warning` only read.
    """

    def __init__(
        self,
        *,
        device: BaseCaptureDevice,
        segments: SegmentStore,
        backups: BackupStore,
        markers: SessionMarkerStore,
        transport: UploadTransport,
        guard: ResourceGuard | None = None,
        event_log: SessionEventLog | None = None,
        settings: CaptureSettings | None = None,
        detail_path_template: str = DEFAULT_DETAIL_PATH_TEMPLATE,
        clock: Callable[[], float] = time.time,
        probe: Callable[[bytes], float | None] = probe_duration,
        tick_interval: float = 1.0,
        on_tick: TickHandler | None = None,
    ) -> None:
        self._device = device
        self._segments = segments
        self._backups = backups
        self._markers = markers
        self._transport = transport
        self._guard = guard or ResourceGuard()
        self._event_log = event_log
        self._settings = settings or CaptureSettings()
        self._detail_path_template = detail_path_template
        self._clock = clock
        self._probe = probe
        self._tick_interval = tick_interval
        self._on_tick = on_tick
        self._lock = asyncio.Lock()
        self._state = SessionState.IDLE
        self._ticker: ElapsedTicker | None = None
        self._abort_task: asyncio.Task[None] | None = None
        self._reset_session(None, None)
        self._last_error: CaptureError | None = None

    @classmethod
    def from_config(
        cls,
        config: CaptureConfig,
        *,
        device: BaseCaptureDevice | None = None,
        transport: UploadTransport | None = None,
        event_log: SessionEventLog | None = None,
    ) -> "SessionController":
        """Wire a controller from *config* with stores under ``config.data_dir``."""

        return cls(
            device=device or create_capture_device(config.device, settings=config.capture),
            segments=SegmentStore(config.segments_path),
            backups=BackupStore(config.backups_path),
            markers=SessionMarkerStore(config.marker_path),
            transport=transport or UploadTransport(config.upload),
            guard=ResourceGuard(config.guard),
            event_log=event_log or SessionEventLog(config.event_log_path),
            settings=config.capture,
            detail_path_template=config.upload.detail_path_template,
        )

    # ------------------------------------------------------------------
    # Read-only views

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def event_log(self) -> SessionEventLog | None:
        return self._event_log

    def buffered_payload(self) -> bytes:
        """Return the in-memory capture buffer assembled in capture order."""

        return assemble(self._buffer)

    def snapshot(self) -> SessionSnapshot:
        elapsed = 0.0
        if self._started_at is not None:
            end = self._stopped_at if self._stopped_at is not None else self._clock()
            elapsed = max(0.0, end - self._started_at)
        return SessionSnapshot(
            state=self._state,
            session_id=self._session_id,
            title=self._title,
            started_at=self._started_at,
            elapsed_seconds=elapsed,
            segment_count=len(self._buffer),
            durable=self._durable,
            retryable=self._state is SessionState.FAILED and self._retryable,
            progress=self._progress,
            last_error=self._last_error,
            recording_id=self._recording_id,
            detail_path=self._detail_path,
        )

    def leave_warning(self) -> str | None:
        """Return the prompt to show when the user tries to leave, if any."""

        if self._state is SessionState.UPLOADING:
            return (
                "Upload in progress. Leaving now may interrupt it; "
                "your recording is saved on this device."
            )
        if self._state in _CAPTURE_STATES:
            return "Recording in progress. Are you sure you want to leave?"
        if self._state is SessionState.FAILED:
            return "Your recording has not been uploaded yet. It is saved on this device."
        return None

    def check_feasibility(self) -> FeasibilityReport:
        return self._guard.check_feasibility()

    # ------------------------------------------------------------------
    # Transitions

    async def start_session(
        self,
        session_id: str,
        title: str,
        *,
        attribution_id: str | None = None,
        override_warning: bool = False,
    ) -> SessionSnapshot:
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValueError("Session id must be a non-empty string")
        session_id = session_id.strip()
        self._require_startable()
        async with self._lock:
            self._require_startable()
            report = self._guard.check_feasibility()
            if not report.ok and not override_warning:
                raise ResourceWarningError(report, report.reason)
            if not report.ok:
                self._record("preflight-override", report.reason or "Resource warning overridden")

            self._reset_session(session_id, title, attribution_id)
            self._last_error = None
            self._set_state(SessionState.AWAITING_DEVICE, f"Requesting capture device for {session_id}")
            try:
                await self._device.acquire()
            except (DeviceDenied, DeviceUnavailable) as exc:
                self._enter_idle(exc)
                raise

            start_time = self._clock()
            try:
                await asyncio.to_thread(self._discard_stale_recordings, session_id)
                await asyncio.to_thread(
                    self._markers.set, SessionMarker(session_id, title, start_time)
                )
            except StorageFault as exc:
                await self._device.release()
                self._enter_idle(exc)
                raise

            self._started_at = start_time
            return await self._begin_capture(fault_type=None)

    async def stop_session(self) -> UploadOutcome:
        if self._state is not SessionState.RECORDING:
            raise InvalidTransitionError(f"Cannot stop while {self._state.value}")
        async with self._lock:
            if self._state is not SessionState.RECORDING:
                raise InvalidTransitionError(f"Cannot stop while {self._state.value}")
            session_id = self._session_id
            assert session_id is not None
            self._set_state(SessionState.STOPPING, "Stopping capture")
            await self._stop_ticker()
            try:
                await self._device.stop()
            except CaptureError as exc:
                logger.warning("Capture device did not flush cleanly: %s", exc)
            finally:
                self._capturing = False
                await self._device.release()
            self._stopped_at = self._clock()
            await self._mark_processing(session_id)

            self._set_state(SessionState.FINALIZING, "Assembling recording")
            payload = assemble(self._buffer)
            backup = await self._store_backup(session_id, payload)
            if backup is None:
                return UploadOutcome(False, session_id, error=self._last_error)
            return await self._upload(backup)

    async def retry(self, *, force: bool = False) -> UploadOutcome:
        """Re-attempt the upload of a failed session from its backup."""

        if self._state is not SessionState.FAILED:
            raise InvalidTransitionError(f"Cannot retry while {self._state.value}")
        async with self._lock:
            if self._state is not SessionState.FAILED:
                raise InvalidTransitionError(f"Cannot retry while {self._state.value}")
            if not self._retryable and not force:
                raise InvalidTransitionError(
                    "This upload cannot be retried until the problem is resolved",
                    user_message=(
                        self._last_error.user_message
                        if self._last_error is not None
                        else InvalidTransitionError.default_message
                    ),
                )
            session_id = self._session_id
            assert session_id is not None
            self._record("retry", f"Retrying upload (force={force})")
            if self._unsaved_payload is not None:
                backup = await self._store_backup(session_id, self._unsaved_payload)
                if backup is None:
                    return UploadOutcome(False, session_id, error=self._last_error)
            else:
                backup = await asyncio.to_thread(self._backups.get, session_id)
            if backup is None:
                fault = StorageFault(f"No backup is stored for session {session_id}")
                self._enter_failed(fault, retryable=False)
                return UploadOutcome(False, session_id, error=fault)
            return await self._upload(backup)

    async def cancel(self) -> SessionSnapshot:
        """Abandon the current session and discard its local data."""

        allowed = (SessionState.RECORDING, SessionState.FAILED)
        if self._state not in allowed:
            raise InvalidTransitionError(f"Cannot cancel while {self._state.value}")
        async with self._lock:
            if self._state not in allowed:
                raise InvalidTransitionError(f"Cannot cancel while {self._state.value}")
            session_id = self._session_id
            assert session_id is not None
            if self._state is SessionState.RECORDING:
                self._capturing = False
                await self._stop_ticker()
                try:
                    await self._device.stop()
                finally:
                    await self._device.release()
            await asyncio.to_thread(self._segments.delete_all, session_id)
            await asyncio.to_thread(self._backups.delete, session_id)
            await asyncio.to_thread(self._markers.clear)
            self._buffer = []
            self._unsaved_payload = None
            self._last_error = None
            self._set_state(SessionState.IDLE, f"Session {session_id} cancelled")
            self._reset_session(None, None)
            return self.snapshot()

    async def resume(self) -> SessionSnapshot | None:
        """Pick up a session that was interrupted by a restart.

        Returns ``None`` when there was nothing to resume.
        """

        async with self._lock:
            if self._state is not SessionState.IDLE:
                return None
            marker = await asyncio.to_thread(self._markers.get)
            if marker is None:
                await self._collect_orphans(keep=())
                return None
            if marker.status == "processing":
                snapshot = await self._recover_processing(marker)
                await self._collect_orphans(keep=(marker.session_id,))
                return snapshot

            segments = await asyncio.to_thread(self._segments.list_ordered, marker.session_id)
            next_sequence = await asyncio.to_thread(self._segments.next_sequence, marker.session_id)
            self._reset_session(marker.session_id, marker.title)
            self._started_at = marker.start_time
            self._buffer = [segment.payload for segment in segments]
            self._next_sequence = next_sequence
            self._last_error = None
            self._set_state(
                SessionState.AWAITING_DEVICE,
                f"Resuming {marker.session_id} with {len(segments)} stored segments",
            )
            try:
                await self._device.acquire()
            except (DeviceDenied, DeviceUnavailable) as exc:
                await self._abandon_resume(exc)
                return self.snapshot()
            snapshot = await self._begin_capture(fault_type=ResumeFault)
            await self._collect_orphans(keep=(marker.session_id,))
            return snapshot

    async def shutdown(self) -> None:
        """Stop background work without touching the persisted session."""

        await self._stop_ticker()
        if self._state is SessionState.RECORDING:
            self._capturing = False
            try:
                await self._device.stop()
            finally:
                await self._device.release()
        await self._transport.close()

    # ------------------------------------------------------------------
    # Internals

    def _require_startable(self) -> None:
        if self._state not in _STARTABLE_STATES:
            raise SessionBusyError(
                f"Session {self._session_id} is {self._state.value}; finish it before starting another"
            )

    def _reset_session(
        self, session_id: str | None, title: str | None, attribution_id: str | None = None
    ) -> None:
        self._session_id = session_id
        self._title = title
        self._attribution_id = attribution_id
        self._started_at: float | None = None
        self._stopped_at: float | None = None
        self._buffer: list[bytes] = []
        self._next_sequence = 0
        self._durable = True
        self._capturing = False
        self._retryable = False
        self._progress: UploadProgress | None = None
        self._recording_id: int | str | None = None
        self._detail_path: str | None = None
        self._unsaved_payload: bytes | None = None

    def _discard_stale_recordings(self, session_id: str) -> None:
        removed = self._segments.purge_orphans(keep=())
        if removed:
            logger.info(
                "Discarded stale segments of %s before starting %s", ", ".join(removed), session_id
            )
        abandoned = self._backups.list_session_ids()
        for stale_id in abandoned:
            self._backups.delete(stale_id)
        if abandoned:
            logger.info(
                "Discarded un-uploaded backups of %s before starting %s",
                ", ".join(abandoned),
                session_id,
            )

    async def _begin_capture(self, *, fault_type: type[CaptureError] | None) -> SessionSnapshot:
        self._capturing = True
        self._set_state(SessionState.RECORDING, f"Recording {self._session_id}")
        try:
            await self._device.start(
                self._on_segment,
                self._on_device_error,
                timeslice=self._settings.timeslice_seconds,
            )
        except CaptureError as exc:
            self._capturing = False
            await self._device.release()
            if fault_type is not None:
                await self._abandon_resume(exc)
                return self.snapshot()
            await asyncio.to_thread(self._markers.clear)
            self._enter_idle(exc)
            raise
        self._start_ticker()
        return self.snapshot()

    async def _abandon_resume(self, exc: CaptureError) -> None:
        fault = ResumeFault(f"Could not resume {self._session_id}: {exc}")
        try:
            await asyncio.to_thread(self._markers.clear)
        except StorageFault as clear_exc:
            logger.error("Unable to clear session marker after failed resume: %s", clear_exc)
        self._enter_idle(fault)

    async def _recover_processing(self, marker: SessionMarker) -> SessionSnapshot | None:
        session_id = marker.session_id
        self._reset_session(session_id, marker.title)
        self._started_at = marker.start_time
        backup = await asyncio.to_thread(self._backups.get, session_id)
        if backup is None:
            segments = await asyncio.to_thread(self._segments.list_ordered, session_id)
            if not segments:
                logger.warning("Session %s was stopped but left no audio; clearing marker", session_id)
                await asyncio.to_thread(self._markers.clear)
                self._reset_session(None, None)
                return None
            self._buffer = [segment.payload for segment in segments]
            self._stopped_at = segments[-1].captured_at
            self._set_state(SessionState.FINALIZING, "Assembling recording left by a restart")
            backup = await self._store_backup(session_id, assemble(self._buffer))
            if backup is None:
                return self.snapshot()
        else:
            self._stopped_at = backup.created_at
        fault = TransientTransferFault(f"Upload of {session_id} was interrupted by a restart")
        self._enter_failed(fault, retryable=True)
        return self.snapshot()

    async def _collect_orphans(self, *, keep: tuple[str, ...]) -> None:
        try:
            removed = await asyncio.to_thread(self._segments.purge_orphans, keep)
        except StorageFault as exc:
            logger.warning("Unable to collect orphaned segments: %s", exc)
            return
        if removed:
            logger.info("Removed orphaned segments for %s", ", ".join(removed))

    async def _mark_processing(self, session_id: str) -> None:
        if self._started_at is None:
            return
        marker = SessionMarker(session_id, self._title or "", self._started_at, "processing")
        try:
            await asyncio.to_thread(self._markers.set, marker)
        except StorageFault as exc:
            logger.warning("Unable to update session marker: %s", exc)

    async def _store_backup(self, session_id: str, payload: bytes) -> BackupRecord | None:
        assert self._started_at is not None
        stopped_at = self._stopped_at if self._stopped_at is not None else self._clock()
        try:
            finalized = await finalize_recording(
                self._backups,
                session_id=session_id,
                payload=payload,
                started_at=self._started_at,
                stopped_at=stopped_at,
                drift_tolerance=self._settings.duration_drift_tolerance,
                probe=self._probe,
            )
        except StorageFault as exc:
            self._unsaved_payload = payload
            self._enter_failed(exc, retryable=True)
            return None
        self._unsaved_payload = None
        self._record(
            "backup-stored",
            f"Backup stored ({finalized.backup.size} bytes)",
            metadata={"duration": finalized.duration, "duration_source": finalized.duration_source},
        )
        try:
            await asyncio.to_thread(self._segments.delete_all, session_id)
        except StorageFault as exc:
            logger.warning("Segments for %s left behind after backup: %s", session_id, exc)
        self._buffer = []
        return finalized.backup

    async def _upload(self, backup: BackupRecord) -> UploadOutcome:
        session_id = backup.session_id
        self._progress = UploadProgress(0, backup.size, "bytes")
        self._set_state(SessionState.UPLOADING, f"Uploading {backup.size} bytes")
        try:
            receipt = await self._transport.upload(
                backup.payload,
                session_id,
                backup.duration,
                self._attribution_id,
                media_type=self._device.media_type,
                on_progress=self._on_progress,
            )
        except CaptureError as exc:
            self._enter_failed(exc, retryable=exc.retryable)
            return UploadOutcome(False, session_id, error=exc)

        await asyncio.to_thread(self._discard_delivered, session_id)
        self._recording_id = receipt.recording_id
        self._detail_path = self._detail_path_template.format(
            session_id=session_id, recording_id=receipt.recording_id
        )
        self._retryable = False
        self._last_error = None
        self._set_state(
            SessionState.COMPLETE,
            f"Upload complete, recording {receipt.recording_id}",
            metadata={"recording_id": receipt.recording_id, "strategy": receipt.strategy},
        )
        return UploadOutcome(
            True,
            session_id,
            recording_id=receipt.recording_id,
            detail_path=self._detail_path,
        )

    def _discard_delivered(self, session_id: str) -> None:
        try:
            self._segments.delete_all(session_id)
            self._backups.delete(session_id)
            self._markers.clear()
        except StorageFault as exc:
            logger.warning("Cleanup after upload of %s incomplete: %s", session_id, exc)

    async def _on_segment(self, payload: bytes, captured_at: float) -> None:
        if not self._capturing or self._session_id is None:
            logger.debug("Dropping segment emitted outside an active capture")
            return
        self._buffer.append(payload)
        sequence = self._next_sequence
        self._next_sequence += 1
        if not self._durable:
            return
        segment = Segment(self._session_id, sequence, captured_at, payload)
        try:
            await asyncio.to_thread(self._segments.append, segment)
        except StorageFault as exc:
            self._durable = False
            logger.error("Segment store failed, continuing in memory only: %s", exc)
            self._record("storage-fault", str(exc), metadata={"kind": exc.kind})

    def _on_device_error(self, fault: CaptureFault) -> None:
        logger.error("Capture device failed: %s", fault)
        self._abort_task = asyncio.create_task(self._abort_capture(fault))

    async def _abort_capture(self, fault: CaptureError) -> None:
        async with self._lock:
            if self._state is not SessionState.RECORDING:
                return
            self._capturing = False
            await self._stop_ticker()
            try:
                await self._device.release()
            except CaptureError as exc:
                logger.warning("Error releasing failed capture device: %s", exc)
            try:
                await asyncio.to_thread(self._markers.clear)
            except StorageFault as exc:
                logger.error("Unable to clear session marker after capture fault: %s", exc)
            self._enter_idle(fault)

    def _on_progress(self, progress: UploadProgress) -> None:
        self._progress = progress

    def _start_ticker(self) -> None:
        assert self._started_at is not None
        self._ticker = ElapsedTicker(
            self._started_at,
            self._on_tick,
            interval=self._tick_interval,
            clock=self._clock,
        )
        self._ticker.start()

    async def _stop_ticker(self) -> None:
        ticker = self._ticker
        self._ticker = None
        if ticker is not None:
            await ticker.stop()

    def _enter_idle(self, error: CaptureError) -> None:
        session_id = self._session_id
        self._last_error = error
        self._set_state(
            SessionState.IDLE,
            str(error),
            event=error.kind,
            metadata={"kind": error.kind},
        )
        self._reset_session(None, None)
        logger.info("Session %s ended: %s", session_id, error)

    def _enter_failed(self, error: CaptureError, *, retryable: bool) -> None:
        self._last_error = error
        self._retryable = retryable
        self._set_state(
            SessionState.FAILED,
            str(error),
            event=error.kind,
            metadata={"kind": error.kind, "retryable": retryable},
        )

    def _set_state(
        self,
        state: SessionState,
        message: str,
        *,
        event: str = "state",
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        previous = self._state
        self._state = state
        logger.info("Session %s: %s -> %s (%s)", self._session_id, previous.value, state.value, message)
        self._record(event, message, state=state, metadata=metadata)

    def _record(
        self,
        event: str,
        message: str,
        *,
        state: SessionState | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        if self._event_log is None:
            return
        self._event_log.record(
            event,
            message,
            session_id=self._session_id,
            state=(state or self._state).value,
            metadata=metadata,
        )


__all__ = [
    "SessionController",
    "SessionSnapshot",
    "SessionState",
    "UploadOutcome",
]
