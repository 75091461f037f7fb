"""Assembly, duration probing and backup of a stopped recording."""
from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from fractions import Fraction
from typing import Callable, Iterable

import av

from .storage import BackupRecord, BackupStore, Segment

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FinalizedRecording:
    """Assembled payload with its chosen duration and how it was measured."""

    backup: BackupRecord
    duration_source: str
    wall_clock_duration: float

    @property
    def payload(self) -> bytes:
        return self.backup.payload

    @property
    def duration(self) -> float:
        return self.backup.duration


def assemble(segments: Iterable[Segment | bytes]) -> bytes:
    """Concatenate segment payloads in the order given."""

    parts: list[bytes] = []
    for segment in segments:
        parts.append(segment if isinstance(segment, (bytes, bytearray)) else segment.payload)
    return b"".join(parts)


_OGG_MAGIC = b"OggS"
_OGG_HEADER_SIZE = 27
_OGG_BOS_FLAG = 0x02


def split_ogg_chains(payload: bytes) -> list[bytes]:
    """Split a chained Ogg payload into its physical streams.

    Each capture run starts a fresh encoder, so a recording resumed after a
    restart is several complete Ogg streams back to back. Anything that does
    not parse as a sequence of Ogg pages is returned whole.
    """

    starts: list[int] = []
    offset = 0
    previous_bos = False
    size = len(payload)
    while offset < size:
        if payload[offset : offset + 4] != _OGG_MAGIC or offset + _OGG_HEADER_SIZE > size:
            return [payload]
        segment_count = payload[offset + 26]
        lacing_end = offset + _OGG_HEADER_SIZE + segment_count
        if lacing_end > size:
            return [payload]
        page_end = lacing_end + sum(payload[offset + _OGG_HEADER_SIZE : lacing_end])
        if page_end > size:
            return [payload]
        bos = bool(payload[offset + 5] & _OGG_BOS_FLAG)
        if bos and not previous_bos:
            starts.append(offset)
        previous_bos = bos
        offset = page_end
    if len(starts) <= 1:
        return [payload]
    bounds = starts[1:] + [size]
    return [payload[start:end] for start, end in zip(starts, bounds)]


def _probe_stream(payload: bytes) -> float | None:
    try:
        with av.open(io.BytesIO(payload), mode="r") as container:
            if container.duration is not None and container.duration > 0:
                return float(Fraction(container.duration, av.time_base))
            audio_streams = [stream for stream in container.streams if stream.type == "audio"]
            if not audio_streams:
                return None
            stream = audio_streams[0]
            time_base = stream.time_base
            end_ticks: int | None = None
            for packet in container.demux(stream):
                if packet.pts is None:
                    continue
                candidate = int(packet.pts) + int(packet.duration or 0)
                if end_ticks is None or candidate > end_ticks:
                    end_ticks = candidate
            if end_ticks is None or time_base is None:
                return None
            start = stream.start_time or 0
            seconds = float((end_ticks - start) * time_base)
            return seconds if seconds > 0 else None
    except (av.error.FFmpegError, ValueError, OSError, EOFError) as exc:
        logger.debug("Unable to decode recording duration: %s", exc)
        return None


def probe_duration(payload: bytes) -> float | None:
    """Return the playback duration embedded in *payload*, in seconds.

    The container header is consulted first. Live-muxed streams often carry
    no duration there, so the end time of the last audio packet is used as a
    second source. Chained streams are probed one by one and summed.
    ``None`` means the payload could not be decoded.
    """

    if not payload:
        return None
    chains = split_ogg_chains(payload)
    if len(chains) == 1:
        return _probe_stream(payload)
    total = 0.0
    for index, chain in enumerate(chains):
        seconds = _probe_stream(chain)
        if seconds is None:
            logger.debug("Chained stream %d of %d is undecodable", index + 1, len(chains))
            return _probe_stream(payload)
        total += seconds
    return total


def choose_duration(
    payload: bytes,
    started_at: float,
    stopped_at: float,
    *,
    drift_tolerance: float = 2.0,
    probe: Callable[[bytes], float | None] = probe_duration,
) -> tuple[float, str, float]:
    """Return ``(duration, source, wall_clock)`` for a finished recording.

    Decoded metadata is canonical. Wall-clock elapsed time is the fallback
    and is also reported so callers can see drift after a suspended process.
    """

    wall_clock = max(0.0, float(stopped_at) - float(started_at))
    decoded = probe(payload)
    if decoded is None:
        return wall_clock, "wall-clock", wall_clock
    if abs(decoded - wall_clock) > drift_tolerance:
        logger.info(
            "Decoded duration %.2fs differs from wall clock %.2fs; using decoded value",
            decoded,
            wall_clock,
        )
    return decoded, "decoded", wall_clock


async def finalize_recording(
    backups: BackupStore,
    *,
    session_id: str,
    payload: bytes,
    started_at: float,
    stopped_at: float,
    drift_tolerance: float = 2.0,
    probe: Callable[[bytes], float | None] = probe_duration,
) -> FinalizedRecording:
    """Compute the duration and durably store the backup before returning."""

    duration, source, wall_clock = await asyncio.to_thread(
        choose_duration,
        payload,
        started_at,
        stopped_at,
        drift_tolerance=drift_tolerance,
        probe=probe,
    )
    record = BackupRecord(
        session_id=session_id,
        payload=payload,
        duration=duration,
        created_at=stopped_at,
    )
    await asyncio.to_thread(backups.put, record)
    logger.info(
        "Backup stored for %s: %d bytes, %.2fs (%s)", session_id, record.size, duration, source
    )
    return FinalizedRecording(backup=record, duration_source=source, wall_clock_duration=wall_clock)


__all__ = [
    "FinalizedRecording",
    "assemble",
    "choose_duration",
    "finalize_recording",
    "probe_duration",
    "split_ogg_chains",
]
