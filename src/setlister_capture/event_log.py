"""Persistent record of capture session transitions and faults."""
from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionEvent:
    """One state change, fault or outcome observed by the controller."""

    timestamp: float
    session_id: str | None
    event: str
    message: str
    state: str | None = None
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "event": self.event,
            "message": self.message,
        }
        if self.state is not None:
            payload["state"] = self.state
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> "SessionEvent":
        """Rebuild an event from its JSON form; raises ``ValueError`` if malformed."""

        event, message = raw.get("event"), raw.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            raise ValueError("event and message are required")
        try:
            timestamp = float(raw.get("timestamp", 0.0))
        except (TypeError, ValueError) as exc:
            raise ValueError("timestamp must be numeric") from exc
        session_id = raw.get("session_id")
        state = raw.get("state")
        metadata = raw.get("metadata")
        return cls(
            timestamp=timestamp,
            session_id=None if session_id is None else str(session_id),
            event=event,
            message=message,
            state=state if isinstance(state, str) else None,
            metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
        )


class SessionEventLog:
    """Bounded in-memory history backed by an append-only JSONL file.

    Writing to disk is best effort. A failed write is logged and the event
    is still kept in memory so a broken disk never interrupts a recording.
    """

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._history: deque[SessionEvent] = deque(maxlen=max_entries)
        self._mutex = threading.Lock()
        self._path = None if path is None else Path(path)
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - depends on filesystem
                logger.warning("Session events will not be persisted: %s", exc)
                self._path = None
        self._history.extend(self._read_file())

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        event: str,
        message: str,
        *,
        session_id: str | None = None,
        state: str | None = None,
        metadata: Mapping[str, object | None] | None = None,
    ) -> SessionEvent:
        kept = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = SessionEvent(
            timestamp=time.time(),
            session_id=session_id,
            event=event,
            message=message,
            state=state,
            metadata=kept or None,
        )
        with self._mutex:
            self._history.append(entry)
            self._write_line(entry)
        return entry

    def tail(self, limit: int | None = None, *, session_id: str | None = None) -> list[SessionEvent]:
        """Return the newest events, oldest first, optionally for one session."""

        with self._mutex:
            snapshot = list(self._history)
        if session_id is not None:
            snapshot = [entry for entry in snapshot if entry.session_id == session_id]
        if limit is None:
            return snapshot
        return snapshot[-max(1, int(limit)):]

    def _read_file(self) -> list[SessionEvent]:
        if self._path is None or not self._path.is_file():
            return []
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:  # pragma: no cover - depends on filesystem
            logger.warning("Ignoring unreadable session event log %s: %s", self._path, exc)
            return []
        restored: list[SessionEvent] = []
        for number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
                if not isinstance(raw, Mapping):
                    raise ValueError("not an object")
                restored.append(SessionEvent.from_dict(raw))
            except ValueError as exc:
                logger.debug("Skipping session event line %d: %s", number, exc)
        return restored

    def _write_line(self, entry: SessionEvent) -> None:
        if self._path is None:
            return
        line = json.dumps(entry.to_dict(), separators=(",", ":"), default=str)
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:  # pragma: no cover - depends on filesystem
            logger.warning("Unable to persist session event: %s", exc)


__all__ = ["SessionEvent", "SessionEventLog"]
