"""HTTP upload of finished recordings, regular or chunked."""
from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Mapping

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import UploadSettings
from .errors import CaptureError, QuotaExceeded, TransientTransferFault

logger = logging.getLogger(__name__)

REGULAR = "regular"
CHUNKED = "chunked"

_RETRYABLE_STATUSES = frozenset({408, 429})


@dataclass(frozen=True, slots=True)
class UploadProgress:
    """Progress of the current transfer in bytes (regular) or chunks (chunked)."""

    loaded: int
    total: int
    unit: str

    @property
    def percentage(self) -> int:
        if self.total <= 0:
            return 100
        return int(round((self.loaded / self.total) * 100))

    def to_dict(self) -> dict[str, object]:
        return {
            "loaded": self.loaded,
            "total": self.total,
            "unit": self.unit,
            "percentage": self.percentage,
        }


ProgressCallback = Callable[[UploadProgress], None]


@dataclass(frozen=True, slots=True)
class UploadReceipt:
    """Server acknowledgement of a completed upload."""

    recording_id: int | str
    strategy: str
    upload_token: str | None = None
    chunks: int = 1


class _RecordingCreated(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    recording_id: int | str = Field(alias="recordingId")


def _join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def _extract_reason(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, Mapping):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return f"HTTP {response.status_code}: {value.strip()}"
    text = response.text.strip()
    if text:
        return f"HTTP {response.status_code}: {text[:200]}"
    return f"HTTP {response.status_code}"


def classify_response(response: httpx.Response) -> CaptureError:
    """Translate a non-2xx upload response into the error taxonomy."""

    reason = _extract_reason(response)
    if response.status_code == 413:
        return QuotaExceeded(reason)
    return TransientTransferFault(reason)


def _is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in _RETRYABLE_STATUSES


class UploadTransport:
    """Deliver an assembled recording to the server.

    Payloads larger than ``chunked_threshold_bytes`` are split into
    ``chunk_size_bytes`` pieces sharing one upload token; each chunk is
    re-sent up to ``retry.max_attempts`` times before the whole transfer is
    reported as a :class:`TransientTransferFault`. Smaller payloads are sent
    in a single streamed request. There is no cancellation: a fault is the
    only way out of an upload in progress.
    """

    def __init__(
        self,
        settings: UploadSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or UploadSettings()
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @property
    def settings(self) -> UploadSettings:
        return self._settings

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def select_strategy(self, size: int) -> str:
        return CHUNKED if size > self._settings.chunked_threshold_bytes else REGULAR

    def recordings_url(self, session_id: str) -> str:
        return _join_url(self._settings.base_url, f"setlists/{session_id}/recordings")

    async def upload(
        self,
        payload: bytes,
        session_id: str,
        duration: float,
        attribution_id: str | None = None,
        *,
        media_type: str = "application/octet-stream",
        on_progress: ProgressCallback | None = None,
    ) -> UploadReceipt:
        strategy = self.select_strategy(len(payload))
        logger.info(
            "Uploading %d bytes for %s using %s transfer", len(payload), session_id, strategy
        )
        if strategy == CHUNKED:
            return await self.upload_chunked(
                payload,
                session_id,
                duration,
                attribution_id,
                media_type=media_type,
                on_progress=on_progress,
            )
        return await self.upload_regular(
            payload,
            session_id,
            duration,
            attribution_id,
            media_type=media_type,
            on_progress=on_progress,
        )

    async def upload_regular(
        self,
        payload: bytes,
        session_id: str,
        duration: float,
        attribution_id: str | None = None,
        *,
        media_type: str = "application/octet-stream",
        on_progress: ProgressCallback | None = None,
    ) -> UploadReceipt:
        client = await self._get_client()
        total = len(payload)
        slice_size = self._settings.progress_slice_bytes

        async def _body() -> AsyncIterator[bytes]:
            sent = 0
            for offset in range(0, total, slice_size):
                piece = payload[offset : offset + slice_size]
                yield piece
                sent += len(piece)
                _notify(on_progress, UploadProgress(sent, total, "bytes"))

        params: dict[str, str] = {"duration": _format_duration(duration)}
        if attribution_id:
            params["attribution"] = str(attribution_id)
        url = self.recordings_url(session_id)
        try:
            response = await client.post(
                url,
                content=_body(),
                params=params,
                headers={"Content-Type": media_type, "Content-Length": str(total)},
            )
        except httpx.TransportError as exc:
            raise TransientTransferFault(f"Upload to {url} failed: {exc}") from exc
        if not response.is_success:
            raise classify_response(response)
        if total == 0:
            _notify(on_progress, UploadProgress(0, 0, "bytes"))
        recording_id = _parse_recording_id(response)
        return UploadReceipt(recording_id=recording_id, strategy=REGULAR)

    async def upload_chunked(
        self,
        payload: bytes,
        session_id: str,
        duration: float,
        attribution_id: str | None = None,
        *,
        media_type: str = "application/octet-stream",
        on_progress: ProgressCallback | None = None,
    ) -> UploadReceipt:
        client = await self._get_client()
        chunk_size = self._settings.chunk_size_bytes
        size = len(payload)
        total_chunks = max(1, math.ceil(size / chunk_size))
        token = uuid.uuid4().hex
        chunk_url = _join_url(self.recordings_url(session_id), "upload-chunk")
        for index in range(total_chunks):
            chunk = payload[index * chunk_size : (index + 1) * chunk_size]
            await self._post_with_retry(
                client,
                chunk_url,
                description=f"chunk {index + 1}/{total_chunks}",
                content=chunk,
                params={
                    "chunkIndex": str(index),
                    "totalChunks": str(total_chunks),
                    "uploadToken": token,
                    "fileSize": str(size),
                },
                headers={"Content-Type": "application/octet-stream"},
            )
            _notify(on_progress, UploadProgress(index + 1, total_chunks, "chunks"))

        finalize_url = _join_url(self.recordings_url(session_id), "reassemble")
        body: dict[str, object] = {
            "uploadToken": token,
            "totalChunks": total_chunks,
            "fileSize": size,
            "duration": duration,
            "mediaType": media_type,
        }
        if attribution_id:
            body["attribution"] = str(attribution_id)
        response = await self._post_with_retry(
            client, finalize_url, description="reassemble", json=body
        )
        recording_id = _parse_recording_id(response)
        return UploadReceipt(
            recording_id=recording_id,
            strategy=CHUNKED,
            upload_token=token,
            chunks=total_chunks,
        )

    async def _post_with_retry(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        description: str,
        **request: object,
    ) -> httpx.Response:
        policy = self._settings.retry
        last_reason = "no attempt made"
        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                delay = policy.delay_for(attempt)
                if delay > 0:
                    await self._sleep(delay)
            try:
                response = await client.post(url, **request)
            except httpx.TransportError as exc:
                last_reason = f"{exc.__class__.__name__}: {exc}"
                logger.warning(
                    "Upload %s attempt %d/%d failed: %s",
                    description,
                    attempt,
                    policy.max_attempts,
                    last_reason,
                )
                continue
            if response.is_success:
                return response
            error = classify_response(response)
            if not _is_retryable_status(response.status_code):
                raise error
            last_reason = str(error)
            logger.warning(
                "Upload %s attempt %d/%d rejected: %s",
                description,
                attempt,
                policy.max_attempts,
                last_reason,
            )
        raise TransientTransferFault(
            f"Upload {description} failed after {policy.max_attempts} attempts: {last_reason}"
        )


def _format_duration(duration: float) -> str:
    return f"{max(0.0, float(duration)):.3f}"


def _parse_recording_id(response: httpx.Response) -> int | str:
    try:
        created = _RecordingCreated.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        raise TransientTransferFault(
            f"Server accepted the upload but returned no recording id: {exc}"
        ) from exc
    return created.recording_id


def _notify(callback: ProgressCallback | None, progress: UploadProgress) -> None:
    if callback is None:
        return
    try:
        callback(progress)
    except Exception:  # pragma: no cover - defensive callback guard
        logger.exception("Upload progress callback failed")


__all__ = [
    "CHUNKED",
    "REGULAR",
    "ProgressCallback",
    "UploadProgress",
    "UploadReceipt",
    "UploadTransport",
    "classify_response",
]
