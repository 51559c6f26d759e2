"""Cancellable retry-with-backoff tasks.

Connectivity probes retry a bounded number of times with exponential
backoff.  Each retry loop runs as an asyncio task owned by a
``RetryScheduler``; the application lifespan cancels every outstanding task
at shutdown so no retry outlives the process state it depends on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger("vitalink.wearables.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""

    attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 8.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError(f"RetryPolicy.attempts must be at least 1, got {self.attempts}")

    def delay_for(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based)."""
        return min(self.base_delay_s * (2 ** (attempt - 1)), self.max_delay_s)


class RetryExhaustedError(RuntimeError):
    """Every attempt failed.  ``last_error`` holds the final exception."""

    def __init__(self, name: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{name} failed after {attempts} attempt(s): {last_error}")
        self.name = name
        self.attempts = attempts
        self.last_error = last_error


async def retry_with_backoff(
    name: str,
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``operation`` until it succeeds or the policy is exhausted.

    Cancellation propagates immediately, including during a backoff sleep.

    Raises:
        RetryExhaustedError: After ``policy.attempts`` failures.
    """
    last_error: BaseException | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            last_error = exc
            if attempt == policy.attempts:
                break
            delay = policy.delay_for(attempt)
            logger.info(
                "%s attempt %d/%d failed (%s); retrying in %.1fs",
                name, attempt, policy.attempts, exc, delay,
            )
            await sleep(delay)
    if last_error is None:
        raise ValueError(f"{name}: retry policy allows no attempts")
    raise RetryExhaustedError(name, policy.attempts, last_error)


class RetryScheduler:
    """Owns the retry tasks started through it and can cancel them together."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def schedule(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        retry_on: tuple[type[BaseException], ...] = (Exception,),
    ) -> asyncio.Task:
        """Start a retry loop in the background and return its task handle.

        Raises:
            RuntimeError: If the scheduler has been shut down.
        """
        if self._closed:
            raise RuntimeError("Retry scheduler is shut down")
        task = asyncio.create_task(
            retry_with_backoff(name, operation, self._policy, retry_on, self._sleep),
            name=f"retry:{name}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        retry_on: tuple[type[BaseException], ...] = (Exception,),
    ) -> T:
        """Schedule a retry loop and wait for its result."""
        return await self.schedule(name, operation, retry_on)

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def shutdown(self) -> int:
        """Cancel every outstanding task and wait for them to finish.

        Returns the number of tasks that were cancelled.
        """
        self._closed = True
        outstanding = [t for t in self._tasks if not t.done()]
        for task in outstanding:
            task.cancel()
        if outstanding:
            await asyncio.gather(*outstanding, return_exceptions=True)
            logger.info("Cancelled %d outstanding retry task(s)", len(outstanding))
        return len(outstanding)
