# countdown.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Set

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Cadence:
    budget_seconds: int
    poll_interval: int
    initial_delay: int = 0

    @property
    def max_attempts(self) -> int:
        return self.budget_seconds // self.poll_interval

    def poll_due(self, elapsed: int) -> bool:
        if elapsed < self.initial_delay:
            return False
        return (elapsed - self.initial_delay) % self.poll_interval == 0


# Dedicated verification screen: probe immediately, then every 5s for 60s.
VERIFICATION_CADENCE = Cadence(budget_seconds=60, poll_interval=5, initial_delay=0)
# Quick pay: first probe after 5s, then every 10s, 30 attempts.
QUICK_PAY_CADENCE = Cadence(budget_seconds=300, poll_interval=10, initial_delay=5)


class TaskHandle:
    """Cancellation token shared by everything a session schedules."""

    def __init__(self) -> None:
        self.cancelled = False
        self._tasks: Set[asyncio.Task] = set()

    def track(self, task: asyncio.Task) -> asyncio.Task:
        if self.cancelled:
            task.cancel()
            return task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def stop(self) -> None:
        """Mark cancelled and cancel every tracked task except the caller's own."""
        if self.cancelled:
            return
        self.cancelled = True
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    async def drain(self) -> None:
        if not self._tasks:
            return
        results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for r in results:
            if isinstance(r, Exception):
                logger.error("Session task failed: %r", r)


class CountdownGuard:
    """
    Fixed-budget timer. Reaching zero is the only way a session gives up on
    waiting; polling never times itself out.
    """

    def __init__(self, budget_seconds: int):
        self.remaining = budget_seconds
        self.expired = False

    def tick(self) -> bool:
        """Decrement once. True exactly on the tick that hits zero."""
        if self.expired:
            return False
        self.remaining = max(0, self.remaining - 1)
        if self.remaining == 0:
            self.expired = True
            return True
        return False


class SessionClock:
    """
    One loop owning both cadences: the 1s countdown and the N-second poll.
    handle.stop() ends both.
    """

    def __init__(self, cadence: Cadence, handle: TaskHandle, sleep: Sleep = asyncio.sleep):
        self.cadence = cadence
        self.handle = handle
        self.countdown = CountdownGuard(cadence.budget_seconds)
        self._sleep = sleep
        self.elapsed = 0

    async def run(
        self,
        on_tick: Callable[[int], Awaitable[None]],
        on_poll_due: Callable[[], Awaitable[None]],
        on_expire: Callable[[], Awaitable[None]],
    ) -> None:
        while not self.handle.cancelled:
            if self.cadence.poll_due(self.elapsed):
                await on_poll_due()
                if self.handle.cancelled:
                    break
            await self._sleep(TICK_SECONDS)
            if self.handle.cancelled:
                break
            self.elapsed += 1
            expired = self.countdown.tick()
            await on_tick(self.countdown.remaining)
            if expired:
                logger.info("Countdown expired after %ss", self.elapsed)
                await on_expire()
                break
