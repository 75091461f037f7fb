import asyncio

import pytest

from setlister_capture.timer import ElapsedTicker, format_elapsed


@pytest.mark.parametrize(
    "seconds, expected",
    [
        (0, "00:00:00"),
        (59.9, "00:00:59"),
        (3661, "01:01:01"),
        (36000, "10:00:00"),
        (-5, "00:00:00"),
    ],
)
def test_format_elapsed(seconds, expected) -> None:
    assert format_elapsed(seconds) == expected


def test_elapsed_is_measured_from_start_time() -> None:
    now = [1000.0]
    ticker = ElapsedTicker(400.0, clock=lambda: now[0])
    assert ticker.elapsed() == 600.0
    assert ticker.display() == "00:10:00"


def test_ticker_reports_until_stopped() -> None:
    ticks: list[str] = []

    async def _test() -> None:
        ticker = ElapsedTicker(0.0, ticks.append, interval=0.01, clock=lambda: 65.0)
        ticker.start()
        assert ticker.running
        await asyncio.sleep(0.05)
        await ticker.stop()
        assert not ticker.running
        count = len(ticks)
        await asyncio.sleep(0.03)
        assert len(ticks) == count

    asyncio.run(_test())
    assert len(ticks) >= 2
    assert set(ticks) == {"00:01:05"}


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ElapsedTicker(0.0, interval=0)
