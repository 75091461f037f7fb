"""Elapsed time reporting for an active capture session."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)

TickHandler = Callable[[str], None]


def format_elapsed(seconds: float) -> str:
    """Render *seconds* as ``HH:MM:SS``."""

    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class ElapsedTicker:
    """Periodically report the time since ``start_time``.

    The ticker only reads the start time; it never touches session state.
    """

    def __init__(
        self,
        start_time: float,
        on_tick: TickHandler | None = None,
        *,
        interval: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if interval <= 0:
            raise ValueError("Tick interval must be positive")
        self._start_time = float(start_time)
        self._on_tick = on_tick
        self._interval = float(interval)
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def start_time(self) -> float:
        return self._start_time

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def elapsed(self) -> float:
        return max(0.0, self._clock() - self._start_time)

    def display(self) -> str:
        return format_elapsed(self.elapsed())

    def start(self) -> None:
        if self.running:
            return
        self._emit()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._emit()

    def _emit(self) -> None:
        if self._on_tick is None:
            return
        try:
            self._on_tick(self.display())
        except Exception:  # pragma: no cover - UI callback guard
            logger.exception("Elapsed time callback failed")


__all__ = ["ElapsedTicker", "TickHandler", "format_elapsed"]
