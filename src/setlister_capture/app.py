"""FastAPI application exposing the capture session controls."""
from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import ConfigManager
from .controller import SessionController
from .device import BaseCaptureDevice
from .errors import (
    CaptureError,
    DeviceDenied,
    DeviceUnavailable,
    InvalidTransitionError,
    QuotaExceeded,
    ResourceWarningError,
    SessionBusyError,
    StorageFault,
    TransientTransferFault,
)
from .transport import UploadTransport
from .version import APP_VERSION

DEFAULT_CONFIG_PATH = Path("data/capture/config.json")

_STATUS_CODES: tuple[tuple[type[CaptureError], int], ...] = (
    (SessionBusyError, 409),
    (InvalidTransitionError, 409),
    (ResourceWarningError, 409),
    (DeviceDenied, 403),
    (DeviceUnavailable, 503),
    (QuotaExceeded, 413),
    (StorageFault, 507),
    (TransientTransferFault, 502),
)


class StartPayload(BaseModel):
    session_id: str = Field(min_length=1)
    title: str = ""
    attribution_id: str | None = None
    override_warning: bool = False


class RetryPayload(BaseModel):
    force: bool = False


def status_for_error(exc: CaptureError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _http_error(exc: CaptureError) -> HTTPException:
    return HTTPException(status_code=status_for_error(exc), detail=exc.to_dict())


def create_app(
    config_path: Path | str = DEFAULT_CONFIG_PATH,
    *,
    controller: SessionController | None = None,
    device: BaseCaptureDevice | None = None,
    transport: UploadTransport | None = None,
) -> FastAPI:
    app = FastAPI(title="Setlister Capture", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(Path(config_path))
    if controller is None:
        controller = SessionController.from_config(
            config_manager.get(), device=device, transport=transport
        )
    session = controller

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        try:
            resumed = await session.resume()
        except CaptureError as exc:
            logger.error("Unable to resume interrupted session: %s", exc)
            return
        if resumed is not None:
            logger.info("Resumed session %s in state %s", resumed.session_id, resumed.state.value)

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        await session.shutdown()

    @app.get("/api/recording")
    async def get_status() -> dict[str, object]:
        return session.snapshot().to_dict()

    @app.get("/api/recording/preflight")
    async def preflight() -> dict[str, object]:
        return session.check_feasibility().to_dict()

    @app.post("/api/recording/start")
    async def start_recording(payload: StartPayload) -> dict[str, object]:
        try:
            snapshot = await session.start_session(
                payload.session_id,
                payload.title,
                attribution_id=payload.attribution_id,
                override_warning=payload.override_warning,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except CaptureError as exc:
            raise _http_error(exc) from exc
        return snapshot.to_dict()

    @app.post("/api/recording/stop")
    async def stop_recording() -> dict[str, object]:
        try:
            outcome = await session.stop_session()
        except CaptureError as exc:
            raise _http_error(exc) from exc
        return {"outcome": outcome.to_dict(), "session": session.snapshot().to_dict()}

    @app.post("/api/recording/retry")
    async def retry_upload(payload: RetryPayload | None = None) -> dict[str, object]:
        force = payload.force if payload is not None else False
        try:
            outcome = await session.retry(force=force)
        except CaptureError as exc:
            raise _http_error(exc) from exc
        return {"outcome": outcome.to_dict(), "session": session.snapshot().to_dict()}

    @app.post("/api/recording/cancel")
    async def cancel_recording() -> dict[str, object]:
        try:
            snapshot = await session.cancel()
        except CaptureError as exc:
            raise _http_error(exc) from exc
        return snapshot.to_dict()

    @app.get("/api/recording/leave-warning")
    async def leave_warning() -> dict[str, object]:
        message = session.leave_warning()
        return {"warn": message is not None, "message": message}

    @app.get("/api/recording/events")
    async def session_events(limit: int | None = None, session_id: str | None = None) -> dict[str, object]:
        log = session.event_log
        if log is None:
            return {"entries": []}
        entries = log.tail(limit, session_id=session_id)
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["create_app", "status_for_error"]
