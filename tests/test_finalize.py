import asyncio
from pathlib import Path

import numpy as np
import pytest

from setlister_capture.config import CaptureSettings
from setlister_capture.device import SoundDeviceCapture
from setlister_capture.errors import StorageFault
from setlister_capture.finalize import (
    assemble,
    choose_duration,
    finalize_recording,
    probe_duration,
    split_ogg_chains,
)
from setlister_capture.storage import BackupRecord, BackupStore, Segment


def test_assemble_concatenates_in_given_order() -> None:
    segments = [Segment("S1", 0, 1.0, b"ab"), b"cd", Segment("S1", 2, 3.0, b"ef")]
    assert assemble(segments) == b"abcdef"
    assert assemble([]) == b""


def test_probe_duration_rejects_undecodable_payload() -> None:
    assert probe_duration(b"") is None
    assert probe_duration(b"definitely not an ogg stream") is None


def _encode_run(seconds: float) -> bytes:
    """Encode a tone exactly the way one microphone capture run does."""

    capture = SoundDeviceCapture(CaptureSettings())
    capture._open_encoder()
    block_size = 960
    offsets = np.arange(block_size)
    for index in range(int(seconds * 48_000) // block_size):
        phase = offsets + index * block_size
        tone = (np.sin(2 * np.pi * 440 * phase / 48_000) * 8000).astype(np.int16)
        capture._encode_block(tone.reshape(-1, 1))
    capture._encode_block(None)
    capture._close_encoder()
    return capture._output.drain()


def test_probe_duration_of_single_capture_run() -> None:
    payload = _encode_run(3.0)
    assert split_ogg_chains(payload) == [payload]
    assert probe_duration(payload) == pytest.approx(3.0, abs=0.1)


def test_probe_duration_sums_runs_joined_after_resume() -> None:
    before, after = _encode_run(5.0), _encode_run(2.0)

    assert split_ogg_chains(before + after) == [before, after]
    assert probe_duration(before + after) == pytest.approx(7.0, abs=0.2)


def test_split_ogg_chains_leaves_unparsable_payload_whole() -> None:
    payload = _encode_run(1.0)
    assert split_ogg_chains(b"not ogg" + payload) == [b"not ogg" + payload]
    assert split_ogg_chains(payload[:-3]) == [payload[:-3]]


def test_decoded_duration_is_canonical() -> None:
    duration, source, wall_clock = choose_duration(
        b"payload", 100.0, 160.0, probe=lambda payload: 42.5
    )
    assert (duration, source, wall_clock) == (42.5, "decoded", 60.0)


def test_wall_clock_is_the_fallback() -> None:
    duration, source, wall_clock = choose_duration(
        b"payload", 100.0, 103.2, probe=lambda payload: None
    )
    assert source == "wall-clock"
    assert duration == pytest.approx(3.2)
    assert wall_clock == pytest.approx(3.2)


def test_negative_wall_clock_is_clamped() -> None:
    duration, _, _ = choose_duration(b"", 200.0, 100.0, probe=lambda payload: None)
    assert duration == 0.0


def test_finalize_writes_backup_before_returning(tmp_path: Path) -> None:
    store = BackupStore(tmp_path / "backups.db")

    finalized = asyncio.run(
        finalize_recording(
            store,
            session_id="S1",
            payload=b"audio",
            started_at=10.0,
            stopped_at=13.0,
            probe=lambda payload: 2.9,
        )
    )

    assert finalized.duration == 2.9
    assert finalized.duration_source == "decoded"
    assert finalized.wall_clock_duration == 3.0
    assert store.get("S1") == BackupRecord("S1", b"audio", 2.9, 13.0)


def test_finalize_propagates_storage_fault(tmp_path: Path) -> None:
    class BrokenStore(BackupStore):
        def put(self, record: BackupRecord) -> None:
            raise StorageFault("read-only filesystem")

    store = BrokenStore(tmp_path / "backups.db")
    with pytest.raises(StorageFault):
        asyncio.run(
            finalize_recording(
                store,
                session_id="S1",
                payload=b"audio",
                started_at=0.0,
                stopped_at=1.0,
                probe=lambda payload: None,
            )
        )
