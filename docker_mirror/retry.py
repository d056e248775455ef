from __future__ import annotations

from dataclasses import dataclass
import random
import time
from typing import Callable, TypeVar


T = TypeVar("T")


@dataclass(frozen=True)
class ExponentialBackoff:
    initial_interval: float = 1.0
    multiplier: float = 1.5
    randomization_factor: float = 0.5
    max_interval: float = 60.0
    max_elapsed_time: float = 10.0

    def interval(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay after the given (1-based) failed attempt."""
        delay = min(self.initial_interval * self.multiplier ** (attempt - 1), self.max_interval)
        if self.randomization_factor:
            spread = delay * self.randomization_factor
            delay = delay - spread + rand() * 2 * spread
        return max(0.0, delay)


class RetryExhausted(Exception):
    def __init__(self, attempts: int, last_exception: Exception) -> None:
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"gave up after {attempts} attempt(s): {last_exception}")


def retry_notify(
    operation: Callable[[], T],
    policy: ExponentialBackoff,
    notify: Callable[[Exception, float], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Run ``operation`` until it succeeds or ``policy.max_elapsed_time`` is spent.

    ``notify`` is called with the error and the upcoming delay before each sleep.
    """
    started = clock()
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:
            delay = policy.interval(attempt)
            if clock() - started + delay > policy.max_elapsed_time:
                raise RetryExhausted(attempt, exc) from exc
            if notify is not None:
                notify(exc, delay)
            sleep(delay)
