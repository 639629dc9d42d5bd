import asyncio

import pytest

from soramimi.app.services.clock import AsyncioClock, ManualClock


def test_manual_clock_fires_in_due_order():
    clock = ManualClock()
    fired = []
    clock.after(300, lambda: fired.append("c"))
    clock.after(100, lambda: fired.append("a"))
    clock.after(200, lambda: fired.append("b"))

    assert clock.advance(250) == 2
    assert fired == ["a", "b"]
    assert clock.now_ms() == 250

    clock.advance(50)
    assert fired == ["a", "b", "c"]


def test_manual_clock_repeat_and_cancel():
    clock = ManualClock(start_ms=1000)
    ticks = []
    handle = clock.repeat(100, lambda: ticks.append(clock.now_ms()))

    clock.advance(350)
    assert ticks == [1100, 1200, 1300]

    handle.cancel()
    clock.advance(1000)
    assert ticks == [1100, 1200, 1300]
    assert handle.cancelled
    assert clock.pending() == 0


def test_manual_clock_cancel_removes_timer_before_it_is_due():
    clock = ManualClock()
    handles = [clock.after(60_000, lambda: None) for _ in range(5)]
    keep = clock.after(100, lambda: None)

    for handle in handles:
        handle.cancel()
    handles[0].cancel()

    assert clock.pending() == 1
    assert clock.advance(100) == 1
    assert not keep.cancelled
    assert clock.pending() == 0


def test_manual_clock_rejects_non_positive_period():
    with pytest.raises(ValueError):
        ManualClock().repeat(0, lambda: None)


def test_timer_scheduled_from_callback_fires_in_same_advance():
    clock = ManualClock()
    fired = []

    def first():
        fired.append("first")
        clock.after(10, lambda: fired.append("second"))

    clock.after(10, first)
    clock.advance(100)

    assert fired == ["first", "second"]


@pytest.mark.asyncio
async def test_asyncio_clock_after_fires_once():
    clock = AsyncioClock()
    fired = []

    clock.after(10, lambda: fired.append(1))
    await asyncio.sleep(0.1)

    assert fired == [1]


@pytest.mark.asyncio
async def test_asyncio_clock_repeat_until_cancelled():
    clock = AsyncioClock()
    fired = []

    handle = clock.repeat(10, lambda: fired.append(1))
    await asyncio.sleep(0.1)
    handle.cancel()
    count = len(fired)
    await asyncio.sleep(0.05)

    assert count >= 2
    assert len(fired) == count


@pytest.mark.asyncio
async def test_asyncio_timer_survives_callback_errors():
    clock = AsyncioClock()
    calls = []

    def failing():
        calls.append(1)
        raise RuntimeError("boom")

    handle = clock.repeat(10, failing)
    await asyncio.sleep(0.08)
    handle.cancel()

    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_cancelled_asyncio_timer_never_fires():
    clock = AsyncioClock()
    fired = []

    handle = clock.after(20, lambda: fired.append(1))
    handle.cancel()
    await asyncio.sleep(0.06)

    assert fired == []
