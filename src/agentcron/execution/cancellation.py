"""Cooperative cancellation token composed with per-call deadlines."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from agentcron.execution.errors import ExecutionTimeout, RunCancelled

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal for a single run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T], timeout_s: float | None = None) -> T:
        """Await `awaitable` until it finishes, the token fires, or `timeout_s` elapses.

        Whichever happens first wins; the losing work is cancelled and awaited
        so it can release its resources before this returns.
        """
        work = asyncio.ensure_future(awaitable)
        if self.cancelled:
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            raise RunCancelled(self.reason or "cancelled")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        if self.cancelled:
            raise RunCancelled(self.reason or "cancelled")
        raise ExecutionTimeout(f"Execution timed out after {timeout_s:g}s", {"timeout_s": timeout_s})
