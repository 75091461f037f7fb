"""Restart-surviving marker for the single active capture session."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from threading import Lock

from .errors import StorageFault

logger = logging.getLogger(__name__)

MarkerStatus = str


@dataclass(frozen=True, slots=True)
class SessionMarker:
    """Identifies the session that owns the capture device."""

    session_id: str
    title: str
    start_time: float
    status: MarkerStatus = "recording"

    VALID_STATUSES = ("recording", "processing")

    def __post_init__(self) -> None:
        if not isinstance(self.session_id, str) or not self.session_id:
            raise ValueError("Session id must be a non-empty string")
        if self.status not in self.VALID_STATUSES:
            raise ValueError(f"Unknown session status {self.status!r}")

    def with_status(self, status: MarkerStatus) -> "SessionMarker":
        return SessionMarker(self.session_id, self.title, self.start_time, status)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class SessionMarkerStore:
    """Single JSON slot holding the current :class:`SessionMarker`."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._mutex = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> SessionMarker | None:
        with self._mutex:
            if not self._path.exists():
                return None
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Ignoring unreadable session marker %s: %s", self._path, exc)
                return None
            if not isinstance(raw, dict):
                return None
            try:
                return SessionMarker(
                    session_id=str(raw["session_id"]),
                    title=str(raw.get("title", "")),
                    start_time=float(raw["start_time"]),
                    status=str(raw.get("status", "recording")),
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Ignoring malformed session marker: %s", exc)
                return None

    def set(self, marker: SessionMarker) -> None:
        payload = json.dumps(marker.to_dict(), indent=2, sort_keys=True)
        temp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with self._mutex:
            try:
                temp_path.write_text(payload, encoding="utf-8")
                os.replace(temp_path, self._path)
            except OSError as exc:
                raise StorageFault(f"Unable to write session marker: {exc}") from exc

    def clear(self) -> None:
        with self._mutex:
            try:
                self._path.unlink(missing_ok=True)
            except OSError as exc:
                raise StorageFault(f"Unable to clear session marker: {exc}") from exc


__all__ = ["SessionMarker", "SessionMarkerStore"]
