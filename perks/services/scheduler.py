"""
Cooperative scheduling helpers: a cancellable periodic task, store-hours
checks for the live refresh, and the realtime reconnect backoff.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from perks.domain.schemas import StoreHours

logger = logging.getLogger(__name__)


def _day_of_week(now: datetime) -> int:
    # store_hours uses 0 = Sunday; datetime.weekday() uses 0 = Monday
    return (now.weekday() + 1) % 7


def has_store_hours(hours: Iterable[StoreHours]) -> bool:
    return any(h.open_time and h.close_time for h in hours)


def is_store_open(hours: Iterable[StoreHours], now: Optional[datetime] = None) -> bool:
    """True when `now` falls inside the opening hours listed for its weekday.

    Times are compared as zero-padded "HH:MM" strings, open inclusive and
    close exclusive. A day without a row, or with an empty open/close time, is
    closed.
    """
    now = now or datetime.now()
    today = _day_of_week(now)
    current = now.strftime("%H:%M")
    for h in hours:
        if h.day_of_week != today or not h.open_time or not h.close_time:
            continue
        if h.open_time[:5] <= current < h.close_time[:5]:
            return True
    return False


def backoff_delay(base: float, maximum: float, attempt: int) -> float:
    """Delay before reconnect `attempt` (1-based): doubles each time, capped at `maximum`."""
    return min(base * (2 ** max(attempt - 1, 0)), maximum)


class PeriodicTask:
    """Runs an async callback every `interval` seconds until stopped.

    `should_run` is checked on each tick; when it returns False the tick is
    skipped but the task keeps running. Errors from the callback are logged
    and do not stop the loop.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        should_run: Optional[Callable[[], bool]] = None,
    ):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._should_run = should_run
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self._should_run and not self._should_run():
                continue
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"{self.name} tick failed: {e}")
