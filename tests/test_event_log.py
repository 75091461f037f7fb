from pathlib import Path

import pytest

from setlister_capture.event_log import SessionEventLog


def test_record_and_tail_filter_by_session() -> None:
    log = SessionEventLog(max_entries=10)
    log.record("state", "Recording S1", session_id="S1", state="recording")
    log.record("state", "Recording S2", session_id="S2", state="recording")
    log.record("quota-exceeded", "Quota", session_id="S1", state="failed", metadata={"retryable": False})

    entries = log.tail(session_id="S1")
    assert [entry.event for entry in entries] == ["state", "quota-exceeded"]
    assert entries[-1].metadata == {"retryable": False}
    assert [entry.session_id for entry in log.tail(limit=1)] == ["S1"]


def test_metadata_none_values_are_dropped() -> None:
    log = SessionEventLog()
    entry = log.record("state", "Idle", metadata={"kind": None})
    assert entry.metadata is None
    assert "metadata" not in entry.to_dict()


def test_entries_survive_restart(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    log = SessionEventLog(path)
    log.record("state", "Uploading", session_id="S1", state="uploading")
    with path.open("a", encoding="utf-8") as handle:
        handle.write("not json\n")

    reloaded = SessionEventLog(path)
    entries = reloaded.tail()
    assert len(entries) == 1
    assert entries[0].state == "uploading"
    assert entries[0].session_id == "S1"


def test_in_memory_history_is_bounded() -> None:
    log = SessionEventLog(max_entries=3)
    for index in range(5):
        log.record("state", f"event {index}")
    assert [entry.message for entry in log.tail()] == ["event 2", "event 3", "event 4"]


def test_max_entries_must_be_positive() -> None:
    with pytest.raises(ValueError):
        SessionEventLog(max_entries=0)
