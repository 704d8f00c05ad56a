"""Time as an injected capability.

Every suspension point in the CI engine and the orchestrator goes through a
``Clock`` so tests can drive timers deterministically with ``FakeClock``
instead of sleeping.
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TypeVar

T = TypeVar("T")


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        ...

    def since(self, start: datetime) -> float:
        return (self.now() - start).total_seconds()

    async def wait_for(self, awaitable: Awaitable[T], timeout: float) -> T:
        """Race ``awaitable`` against a timer on this clock.

        The timer winning cancels the awaitable and raises ``TimeoutError``.
        Cancelling the caller cancels both.
        """
        work = asyncio.ensure_future(awaitable)
        timer = asyncio.ensure_future(self.sleep(timeout))
        try:
            done, _ = await asyncio.wait({work, timer}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            timer.cancel()
            raise

        if work in done:
            timer.cancel()
            return work.result()

        work.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await work
        raise TimeoutError(f"operation did not complete within {timeout:g}s")


class RealClock(Clock):
    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))


@dataclass(eq=False)
class _PendingTimer:
    deadline: datetime
    future: asyncio.Future[None]


class FakeClock(Clock):
    """Virtual clock whose timers only fire when a test calls ``advance``."""

    def __init__(self, start: datetime | None = None, *, guard_timeout: float = 5.0) -> None:
        self._now = start if start is not None else datetime(2026, 1, 1, tzinfo=UTC)
        self._timers: list[_PendingTimer] = []
        self._guard_timeout = guard_timeout
        self._registered: asyncio.Event | None = None

    def now(self) -> datetime:
        return self._now

    @property
    def pending_timers(self) -> int:
        return sum(1 for timer in self._timers if not timer.future.done())

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        timer = _PendingTimer(deadline=self._now + timedelta(seconds=seconds), future=future)
        self._timers.append(timer)
        self._signal_registration()
        try:
            await future
        finally:
            if timer in self._timers:
                self._timers.remove(timer)

    def advance(self, seconds: float) -> None:
        """Move virtual time forward and fire every timer that came due."""
        self._now += timedelta(seconds=seconds)
        for timer in list(self._timers):
            if timer.deadline <= self._now and not timer.future.done():
                timer.future.set_result(None)
        self._timers = [timer for timer in self._timers if not timer.future.done()]

    async def wait_for_timers(self, count: int) -> None:
        """Block until at least ``count`` live timers are registered."""

        async def _wait() -> None:
            while self.pending_timers < count:
                event = self._registration_event()
                event.clear()
                if self.pending_timers >= count:
                    return
                await event.wait()

        await asyncio.wait_for(_wait(), timeout=self._guard_timeout)

    def _registration_event(self) -> asyncio.Event:
        if self._registered is None:
            self._registered = asyncio.Event()
        return self._registered

    def _signal_registration(self) -> None:
        self._registration_event().set()
