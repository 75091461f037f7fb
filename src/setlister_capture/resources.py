"""Advisory memory preflight run before a capture session starts."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import GuardSettings

logger = logging.getLogger(__name__)

MEMINFO_PATH = Path("/proc/meminfo")


@dataclass(frozen=True, slots=True)
class FeasibilityReport:
    """Outcome of :meth:`ResourceGuard.check_feasibility`."""

    ok: bool
    reason: str | None = None
    available_bytes: int | None = None
    total_bytes: int | None = None
    used_percent: float | None = None
    source: str = "meminfo"

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"ok": self.ok, "source": self.source}
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.available_bytes is not None:
            payload["available_bytes"] = self.available_bytes
        if self.total_bytes is not None:
            payload["total_bytes"] = self.total_bytes
        if self.used_percent is not None:
            payload["used_percent"] = self.used_percent
        return payload


def _clamp_percentage(value: float) -> float:
    return max(0.0, min(100.0, round(value, 1)))


def read_memory_metrics(path: Path = MEMINFO_PATH) -> dict[str, int | float] | None:
    """Return total/available memory from ``/proc/meminfo`` if readable."""

    try:
        with open(path, "r", encoding="utf-8") as handle:
            lines = handle.readlines()
    except OSError:
        return None

    total_kib = available_kib = None
    for line in lines:
        parts = line.split()
        if len(parts) < 2:
            continue
        if line.startswith("MemTotal:"):
            try:
                total_kib = int(parts[1])
            except ValueError:
                pass
        elif line.startswith("MemAvailable:"):
            try:
                available_kib = int(parts[1])
            except ValueError:
                pass
        if total_kib is not None and available_kib is not None:
            break

    if total_kib is None or total_kib <= 0 or available_kib is None:
        return None

    total_bytes = total_kib * 1024
    available_bytes = max(0, available_kib * 1024)
    used_bytes = max(0, total_bytes - available_bytes)
    return {
        "total_bytes": total_bytes,
        "available_bytes": available_bytes,
        "used_bytes": used_bytes,
        "used_percent": _clamp_percentage((used_bytes / total_bytes) * 100.0),
    }


def _scratch_allocate(size: int) -> None:
    buffer = bytearray(size)
    del buffer


class ResourceGuard:
    """Estimate whether the device has headroom for a long recording.

    The check never blocks capture. It returns a warning that the caller may
    show to the user, who can then start anyway.
    """

    def __init__(
        self,
        settings: GuardSettings | None = None,
        *,
        meminfo_path: Path = MEMINFO_PATH,
        allocate: Callable[[int], None] = _scratch_allocate,
    ) -> None:
        self._settings = settings or GuardSettings()
        self._meminfo_path = Path(meminfo_path)
        self._allocate = allocate

    def check_feasibility(self) -> FeasibilityReport:
        metrics = read_memory_metrics(self._meminfo_path)
        if metrics is not None:
            used_percent = float(metrics["used_percent"])
            available = int(metrics["available_bytes"])
            total = int(metrics["total_bytes"])
            if used_percent > self._settings.warn_percent:
                reason = (
                    f"Memory usage is at {used_percent:.1f}% "
                    f"(warning above {self._settings.warn_percent:.0f}%)"
                )
                logger.warning("Capture preflight: %s", reason)
                return FeasibilityReport(
                    ok=False,
                    reason=reason,
                    available_bytes=available,
                    total_bytes=total,
                    used_percent=used_percent,
                )
            return FeasibilityReport(
                ok=True,
                available_bytes=available,
                total_bytes=total,
                used_percent=used_percent,
            )

        size = self._settings.scratch_bytes
        try:
            self._allocate(size)
        except MemoryError:
            reason = f"Unable to allocate a {size} byte scratch buffer"
            logger.warning("Capture preflight: %s", reason)
            return FeasibilityReport(ok=False, reason=reason, source="scratch")
        return FeasibilityReport(ok=True, available_bytes=size, source="scratch")


__all__ = ["FeasibilityReport", "MEMINFO_PATH", "ResourceGuard", "read_memory_metrics"]
