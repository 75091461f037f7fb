"""Durable local storage for captured segments and assembled backups."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Iterable, Iterator

from .errors import StorageFault


@dataclass(frozen=True, slots=True)
class Segment:
    """One ordered slice of encoded audio emitted by the capture device."""

    session_id: str
    sequence: int
    captured_at: float
    payload: bytes

    @property
    def segment_id(self) -> str:
        return f"{self.session_id}-{self.sequence}"

    @property
    def size(self) -> int:
        return len(self.payload)


@dataclass(frozen=True, slots=True)
class BackupRecord:
    """The full assembled recording kept until an upload is confirmed."""

    session_id: str
    payload: bytes
    duration: float
    created_at: float

    @property
    def size(self) -> int:
        return len(self.payload)

    def describe(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "size_bytes": self.size,
            "duration": self.duration,
            "created_at": self.created_at,
        }


class _SqliteStore:
    """Shared connection handling; every database error becomes a StorageFault."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._mutex = RLock()
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageFault(f"Unable to create storage directory: {exc}") from exc
        with self._connect() as conn:
            self._ensure_schema(conn)

    @property
    def path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with self._mutex:
            try:
                conn = sqlite3.connect(self._db_path)
            except sqlite3.Error as exc:
                raise StorageFault(f"Unable to open {self._db_path}: {exc}") from exc
            conn.row_factory = sqlite3.Row
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StorageFault(f"Storage operation on {self._db_path} failed: {exc}") from exc
            finally:
                conn.close()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class SegmentStore(_SqliteStore):
    """Append-only segment log indexed by ``(session_id, sequence)``."""

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS segments (
                session_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                captured_at REAL NOT NULL,
                payload BLOB NOT NULL,
                PRIMARY KEY (session_id, sequence)
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_segments_session_time ON segments(session_id, captured_at)"
        )

    def append(self, segment: Segment) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO segments (session_id, sequence, captured_at, payload) VALUES (?, ?, ?, ?)",
                (
                    segment.session_id,
                    int(segment.sequence),
                    float(segment.captured_at),
                    sqlite3.Binary(segment.payload),
                ),
            )

    def list_ordered(self, session_id: str) -> list[Segment]:
        """Return every segment of *session_id* in capture order."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT session_id, sequence, captured_at, payload FROM segments
                WHERE session_id = ?
                ORDER BY captured_at ASC, sequence ASC
                """,
                (session_id,),
            ).fetchall()
        return [self._row_to_segment(row) for row in rows]

    def delete_all(self, session_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM segments WHERE session_id = ?", (session_id,))
            return int(cursor.rowcount)

    def count(self, session_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM segments WHERE session_id = ?", (session_id,)
            ).fetchone()
        return int(row[0])

    def next_sequence(self, session_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(sequence) FROM segments WHERE session_id = ?", (session_id,)
            ).fetchone()
        return 0 if row[0] is None else int(row[0]) + 1

    def session_ids(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT session_id FROM segments ORDER BY session_id"
            ).fetchall()
        return [str(row[0]) for row in rows]

    def purge_orphans(self, keep: Iterable[str] = ()) -> list[str]:
        """Delete segments of every session not listed in *keep*."""

        retained = set(keep)
        removed: list[str] = []
        for session_id in self.session_ids():
            if session_id in retained:
                continue
            self.delete_all(session_id)
            removed.append(session_id)
        return removed

    @staticmethod
    def _row_to_segment(row: sqlite3.Row) -> Segment:
        return Segment(
            session_id=str(row["session_id"]),
            sequence=int(row["sequence"]),
            captured_at=float(row["captured_at"]),
            payload=bytes(row["payload"]),
        )


class BackupStore(_SqliteStore):
    """One assembled recording per session, kept until the upload succeeds."""

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS backups (
                session_id TEXT PRIMARY KEY,
                payload BLOB NOT NULL,
                duration REAL NOT NULL,
                created_at REAL NOT NULL
            )
            """
        )

    def put(self, record: BackupRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO backups (session_id, payload, duration, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    payload = excluded.payload,
                    duration = excluded.duration,
                    created_at = excluded.created_at
                """,
                (
                    record.session_id,
                    sqlite3.Binary(record.payload),
                    float(record.duration),
                    float(record.created_at),
                ),
            )

    def get(self, session_id: str) -> BackupRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT session_id, payload, duration, created_at FROM backups WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return BackupRecord(
            session_id=str(row["session_id"]),
            payload=bytes(row["payload"]),
            duration=float(row["duration"]),
            created_at=float(row["created_at"]),
        )

    def delete(self, session_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM backups WHERE session_id = ?", (session_id,))
            return cursor.rowcount > 0

    def list_session_ids(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT session_id FROM backups ORDER BY created_at").fetchall()
        return [str(row[0]) for row in rows]


__all__ = ["BackupRecord", "BackupStore", "Segment", "SegmentStore"]
