"""Recovery policies for failed agent calls.

Each failure kind has its own budget:

- connection failures are retried with exponential backoff;
- loop failures are retried after a short pause with a fresh runtime budget;
- resource exhaustion restarts the whole workflow a bounded number of times.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ralph.errors import ResourceExhaustionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionRetryPolicy:
    """Exponential backoff budget for transport failures within one iteration.

    Attributes:
        max_attempts: Retries allowed before the failure is surfaced
        base_delay: Delay before the first retry, in seconds
        backoff_factor: Multiplier applied to the delay after each retry
        max_delay: Upper bound for any single delay, in seconds
        attempts: Retries consumed so far
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        backoff_factor: float = 2.0,
        max_delay: float = 60.0,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.attempts = 0
        self._delay = base_delay

    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    def next_delay(self) -> float:
        """Consume one retry and return how long to wait before it."""
        self.attempts += 1
        delay = min(self._delay, self.max_delay)
        self._delay *= self.backoff_factor
        return delay

    def reset(self) -> None:
        self.attempts = 0
        self._delay = self.base_delay


class LoopRetryPolicy:
    """Fixed-delay budget for step-limit and repetition failures.

    Attributes:
        max_attempts: Retries allowed before the loop error is surfaced
        delay: Pause before each retry, in seconds
        attempts: Retries consumed so far
    """

    def __init__(self, max_attempts: int = 2, delay: float = 1.0) -> None:
        self.max_attempts = max_attempts
        self.delay = delay
        self.attempts = 0

    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    def next_delay(self) -> float:
        self.attempts += 1
        return self.delay

    def reset(self) -> None:
        self.attempts = 0


class RuntimeBudget:
    """Wall-clock budget for one iteration.

    Args:
        limit_seconds: Budget length
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self, limit_seconds: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.limit_seconds = limit_seconds
        self._clock = clock
        self._started = clock()

    def restart(self) -> None:
        self._started = self._clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def elapsed_ms(self) -> int:
        return int(self.elapsed() * 1000)

    def exceeded(self) -> bool:
        return self.elapsed() >= self.limit_seconds

    def fraction_used(self) -> float:
        if self.limit_seconds <= 0:
            return 1.0
        return self.elapsed() / self.limit_seconds


async def run_with_restarts(
    workflow: Callable[[], Awaitable[T]],
    max_restarts: int,
    on_restart: Callable[[int, ResourceExhaustionError], None] | None = None,
) -> T:
    """Run a workflow, restarting it after resource exhaustion.

    Each restart begins a fresh agent conversation; persisted task state lets
    the workflow skip work already completed.

    Args:
        workflow: Zero-argument coroutine function to run
        max_restarts: Restarts allowed after the first attempt
        on_restart: Called with (restart_number, error) before each restart

    Returns:
        The workflow's result

    Raises:
        ResourceExhaustionError: If exhaustion persists after max_restarts
    """
    restarts = 0
    while True:
        try:
            return await workflow()
        except ResourceExhaustionError as e:
            if restarts >= max_restarts:
                logger.error(
                    "Resource exhaustion persisted after %d restarts: %s", restarts, e
                )
                raise
            restarts += 1
            logger.warning(
                "Resource exhausted, restarting workflow (%d/%d): %s",
                restarts,
                max_restarts,
                e,
            )
            if on_restart is not None:
                on_restart(restarts, e)
