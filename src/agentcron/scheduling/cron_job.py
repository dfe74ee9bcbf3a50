"""Timezone-aware cron and one-shot timers driven by asyncio."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Callable, Awaitable

from croniter import croniter

from agentcron.infrastructure.logger import logger
from agentcron.scheduling.timezone import zone_for

# Long sleeps are chunked so wall-clock jumps (suspend, NTP) are noticed.
MAX_SLEEP_S = 300.0


class ScheduleConfigError(ValueError):
    """A task's schedule fields cannot produce a timer."""


def _build_croniter(expression: str, start: datetime) -> croniter:
    expr = expression.strip()
    if not expr:
        raise ScheduleConfigError("Empty cron expression")
    fields = expr.split()
    try:
        if len(fields) == 6:
            return croniter(expr, start, second_at_beginning=True)
        if len(fields) != 5 and not expr.startswith("@"):
            raise ScheduleConfigError(f"Invalid cron expression: {expression}")
        return croniter(expr, start)
    except (ValueError, KeyError) as err:
        if isinstance(err, ScheduleConfigError):
            raise
        raise ScheduleConfigError(f"Invalid cron expression: {expression}") from err


def next_fire_time(expression: str, timezone: str | None, after: datetime | None = None) -> datetime:
    """Next fire time of `expression` evaluated in `timezone`, strictly after `after`.

    The result is an aware datetime in the resolved zone.
    """
    zone = zone_for(timezone)
    start = (after or datetime.now(UTC))
    if start.tzinfo is None:
        start = start.replace(tzinfo=UTC)
    itr = _build_croniter(expression, start.astimezone(zone))
    return itr.get_next(datetime)


def validate_cron(expression: str) -> None:
    _build_croniter(expression, datetime.now(UTC))


class TimerJob(ABC):
    """A timer that invokes an async callback at computed instants until stopped."""

    def __init__(self, name: str, callback: Callable[[], Awaitable[None]]) -> None:
        self.name = name
        self._callback = callback
        self._task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._next: datetime | None = None

    @property
    def next_fire_time(self) -> datetime | None:
        return self._next

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @abstractmethod
    def _compute_next(self, now: datetime) -> datetime | None:
        """Next instant after `now`, or None when the timer is exhausted."""

    def start(self) -> None:
        if self.active:
            return
        self._next = self._compute_next(datetime.now(UTC))
        self._task = asyncio.create_task(self._run(), name=f"timer:{self.name}")

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None
        self._next = None

    async def _run(self) -> None:
        while self._next is not None:
            delay = (self._next - datetime.now(UTC)).total_seconds()
            if delay > 0:
                await asyncio.sleep(min(delay, MAX_SLEEP_S))
                continue
            fired_at = self._next
            self._fire()
            self._next = self._compute_next(max(datetime.now(UTC), fired_at))

    def _fire(self) -> None:
        task = asyncio.create_task(self._invoke())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _invoke(self) -> None:
        try:
            await self._callback()
        except Exception:
            logger.exception("Timer callback failed", job=self.name)


class CronJob(TimerJob):
    """Fires on every match of a cron expression in a given timezone."""

    def __init__(self, name: str, expression: str, timezone: str | None, callback: Callable[[], Awaitable[None]]) -> None:
        super().__init__(name, callback)
        validate_cron(expression)
        self.expression = expression
        self.timezone = timezone

    def _compute_next(self, now: datetime) -> datetime | None:
        return next_fire_time(self.expression, self.timezone, now)


class OneShotJob(TimerJob):
    """Fires once at `fire_at`, then becomes inert."""

    def __init__(self, name: str, fire_at: datetime, callback: Callable[[], Awaitable[None]]) -> None:
        super().__init__(name, callback)
        if fire_at.tzinfo is None:
            raise ScheduleConfigError("One-shot fire time must be timezone-aware")
        self.fire_at = fire_at
        self._fired = False

    def _compute_next(self, now: datetime) -> datetime | None:
        if self._fired:
            return None
        return self.fire_at

    def _fire(self) -> None:
        self._fired = True
        super()._fire()
