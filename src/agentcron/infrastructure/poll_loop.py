"""Shared async polling loop abstraction."""

from __future__ import annotations

import asyncio
from typing import Callable, Awaitable

from agentcron.infrastructure.logger import logger


class PollLoop:
    """Calls an async function every `interval_s` seconds until stopped.

    `running` is the single authority for whether the loop should keep going;
    it is checked before every tick, so stop() takes effect synchronously even
    if a tick is mid-flight.
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        fn: Callable[[], Awaitable[None]],
        run_immediately: bool = True,
    ) -> None:
        self._name = name
        self._interval = interval_s
        self._fn = fn
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the polling loop as a background task. No-op if already running."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"poll:{self._name}")
        logger.info(f"{self._name} loop started", interval_s=self._interval)

    def stop(self) -> None:
        """Stop the polling loop. Idempotent."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
        logger.info(f"{self._name} loop stopped")

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval)
        while self._running:
            try:
                await self._fn()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception(f"Error in {self._name} loop")
            if self._running:
                await asyncio.sleep(self._interval)


def start_poll_loop(
    name: str, interval_s: float, fn: Callable[[], Awaitable[None]], run_immediately: bool = True
) -> PollLoop:
    """Create and start a polling loop. Returns a handle to stop it."""
    loop = PollLoop(name, interval_s, fn, run_immediately)
    loop.start()
    return loop
