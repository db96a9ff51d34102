"""Tests for the connection timeout and duration counter."""

from conftest import VirtualLoop

from callmate.call.timers import ConnectionTimeout, DurationCounter


def _timeout(loop: VirtualLoop, budget: float = 20.0):
    fired: list[int] = []
    timeout = ConnectionTimeout(loop, fired.append, budget)  # type: ignore[arg-type]
    return timeout, fired


def test_timeout_fires_with_attempt():
    loop = VirtualLoop()
    timeout, fired = _timeout(loop)
    timeout.arm(7)
    assert timeout.armed
    assert timeout.attempt == 7
    loop.advance(20)
    assert fired == [7]
    assert not timeout.armed
    assert timeout.attempt is None


def test_rearm_replaces_previous_timer():
    loop = VirtualLoop()
    timeout, fired = _timeout(loop)
    timeout.arm(1)
    loop.advance(10)
    timeout.arm(1)
    loop.advance(10)
    assert fired == []
    loop.advance(10)
    assert fired == [1]
    loop.advance(60)
    assert fired == [1]
    assert loop.live_timers == 0


def test_rearm_for_new_attempt():
    loop = VirtualLoop()
    timeout, fired = _timeout(loop)
    timeout.arm(1)
    timeout.arm(2)
    loop.advance(20)
    assert fired == [2]


def test_cancel_prevents_fire():
    loop = VirtualLoop()
    timeout, fired = _timeout(loop)
    timeout.arm(1)
    timeout.cancel()
    loop.advance(30)
    assert fired == []
    assert not timeout.armed


def test_cancel_when_not_armed_is_harmless():
    loop = VirtualLoop()
    timeout, _ = _timeout(loop)
    timeout.cancel()
    assert not timeout.armed


def test_counter_counts_whole_seconds():
    loop = VirtualLoop()
    ticks: list[int] = []
    counter = DurationCounter(loop, ticks.append)  # type: ignore[arg-type]
    counter.start()
    assert counter.running
    assert counter.seconds == 0
    loop.advance(3.5)
    assert counter.seconds == 3
    assert ticks == [1, 2, 3]


def test_counter_stop_returns_final_value():
    loop = VirtualLoop()
    counter = DurationCounter(loop, lambda _s: None)  # type: ignore[arg-type]
    counter.start()
    loop.advance(5)
    assert counter.stop() == 5
    assert counter.seconds == 0
    assert not counter.running
    loop.advance(5)
    assert counter.seconds == 0
    assert loop.live_timers == 0


def test_counter_restart_resets():
    loop = VirtualLoop()
    counter = DurationCounter(loop, lambda _s: None)  # type: ignore[arg-type]
    counter.start()
    loop.advance(4)
    counter.start()
    assert counter.seconds == 0
    loop.advance(2)
    assert counter.seconds == 2
    assert loop.live_timers == 1
