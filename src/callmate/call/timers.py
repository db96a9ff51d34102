"""Connection timeout supervisor and call duration counter.

Both wrap a single ``loop.call_later`` handle. Arming or starting always
cancels the previous handle first, so at most one instance of each timer is
ever live.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

CONNECTION_TIMEOUT = 20.0
TICK_INTERVAL = 1.0


class ConnectionTimeout:
    """One-shot timer bound to a call attempt.

    ``on_expire`` receives the attempt id the timer was armed for; the owner
    decides whether that attempt is still current.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_expire: Callable[[int], None],
        budget: float = CONNECTION_TIMEOUT,
    ) -> None:
        self._loop = loop
        self._on_expire = on_expire
        self._budget = budget
        self._handle: asyncio.TimerHandle | None = None
        self._attempt: int | None = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def attempt(self) -> int | None:
        return self._attempt

    def arm(self, attempt: int) -> None:
        self.cancel()
        self._attempt = attempt
        self._handle = self._loop.call_later(self._budget, self._fire, attempt)
        logger.debug(
            "Connection timeout armed for attempt %d (%.0fs)", attempt, self._budget
        )

    def cancel(self) -> None:
        _cancel(self._handle)
        self._handle = None
        self._attempt = None

    def _fire(self, attempt: int) -> None:
        if attempt != self._attempt:
            return
        self._handle = None
        self._attempt = None
        logger.warning("Connection timeout fired for attempt %d", attempt)
        self._on_expire(attempt)


class DurationCounter:
    """Counts whole seconds while a call is connected."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_tick: Callable[[int], None],
        interval: float = TICK_INTERVAL,
    ) -> None:
        self._loop = loop
        self._on_tick = on_tick
        self._interval = interval
        self._handle: asyncio.TimerHandle | None = None
        self.seconds = 0

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        _cancel(self._handle)
        self.seconds = 0
        self._handle = self._loop.call_later(self._interval, self._tick)

    def stop(self) -> int:
        """Stop counting and return the final value; the counter resets to 0."""
        _cancel(self._handle)
        self._handle = None
        final = self.seconds
        self.seconds = 0
        return final

    def _tick(self) -> None:
        if self._handle is None:
            return
        self.seconds += 1
        self._handle = self._loop.call_later(self._interval, self._tick)
        self._on_tick(self.seconds)


def _cancel(handle: asyncio.TimerHandle | None) -> None:
    if handle is not None:
        handle.cancel()
