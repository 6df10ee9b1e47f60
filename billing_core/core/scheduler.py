"""
Bounded periodic polling with cooperative cancellation.

The scheduler waits `interval`, invokes the tick, and repeats until the tick
reports completion, the deadline passes, or `cancel()` is called. Exactly
one tick is in flight at a time. Cancelling while a tick is awaiting I/O
lets the tick finish; the loop stops right after it.
"""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

Tick = Callable[[], Awaitable[bool]]


class Clock(Protocol):
    """Time source used by the scheduler."""

    def now(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class MonotonicClock:
    """Wall-clock time for production use."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class SchedulerOutcome(str, Enum):
    """Why a scheduler run ended."""

    COMPLETED = "completed"  # Tick asked to stop
    EXPIRED = "expired"  # Deadline passed
    CANCELLED = "cancelled"  # cancel() was called


class PollingScheduler:
    """
    Cancellable periodic timer with an overall deadline.

    Example:
        >>> scheduler = PollingScheduler(interval=10, deadline=120)
        >>> async def check() -> bool:
        ...     return await is_done()
        >>> outcome = await scheduler.run(check)
    """

    def __init__(
        self,
        interval: float,
        deadline: float,
        clock: Optional[Clock] = None,
        name: str = "poller",
    ):
        """
        Initialize scheduler.

        Args:
            interval: Seconds between ticks
            deadline: Seconds after run() starts at which the loop expires
            clock: Time source (defaults to the monotonic clock)
            name: Label used in logs
        """
        if interval <= 0 or deadline <= 0:
            raise ValueError("interval and deadline must be positive")
        self.interval = interval
        self.deadline = deadline
        self.clock: Clock = clock or MonotonicClock()
        self.name = name
        self.ticks = 0
        self._started_at: Optional[float] = None
        self._cancelled = False
        self._sleeper: Optional[asyncio.Future] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self.clock.now() - self._started_at

    @property
    def remaining(self) -> float:
        return max(0.0, self.deadline - self.elapsed)

    def cancel(self) -> None:
        """Stop the loop. Takes effect immediately unless a tick is in flight."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._sleeper is not None and not self._sleeper.done():
            self._sleeper.cancel()
        logger.debug("scheduler_cancelled", scheduler=self.name, ticks=self.ticks)

    async def _wait(self, seconds: float) -> None:
        self._sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        try:
            await self._sleeper
        except asyncio.CancelledError:
            # Our own cancel() interrupted the sleep; anything else propagates
            if not self._cancelled:
                raise
        finally:
            self._sleeper = None

    async def run(self, tick: Tick) -> SchedulerOutcome:
        """
        Drive `tick` until it returns True, the deadline passes, or cancel().

        Args:
            tick: Coroutine function returning True to stop polling

        Returns:
            SchedulerOutcome: Why the loop ended
        """
        if self._started_at is not None:
            raise RuntimeError(f"Scheduler '{self.name}' can only run once")
        self._started_at = self.clock.now()

        while True:
            if self._cancelled:
                return SchedulerOutcome.CANCELLED

            remaining = self.deadline - self.elapsed
            if remaining <= 0:
                return SchedulerOutcome.EXPIRED

            await self._wait(min(self.interval, remaining))

            if self._cancelled:
                return SchedulerOutcome.CANCELLED
            if self.elapsed >= self.deadline:
                logger.debug("scheduler_expired", scheduler=self.name, ticks=self.ticks)
                return SchedulerOutcome.EXPIRED

            self.ticks += 1
            if await tick():
                return SchedulerOutcome.COMPLETED
