"""Exponential backoff with full jitter for the QRShare client."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay schedule: ``base * factor**attempt`` capped at ``max_delay``.

    With ``jitter`` enabled each delay is drawn uniformly from ``[0, delay]``
    so clients that failed together do not retry together.
    """

    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 30.0
    max_attempts: int = 5
    jitter: bool = True

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        delay = min(self.max_delay, self.base_delay * self.factor**attempt)
        if not self.jitter:
            return delay
        return (rng or random).uniform(0, delay)

    def delays(self, rng: random.Random | None = None) -> Iterator[float]:
        """Delays to sleep between attempts (``max_attempts - 1`` of them)."""
        for attempt in range(self.max_attempts - 1):
            yield self.delay_for(attempt, rng)


def call_with_retry(
    fn: Callable[[], T],
    policy: BackoffPolicy,
    retry_on: Callable[[Exception], bool],
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it succeeds or the policy runs out of attempts.

    Only exceptions for which ``retry_on`` returns True are retried; the last
    one is re-raised when attempts are exhausted.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            if not retry_on(exc):
                raise
            delay = next(delays, None)
            if delay is None:
                logger.warning("Giving up after %d attempts: %s", attempt, exc)
                raise
            logger.info("Attempt %d failed (%s); retrying in %.2fs", attempt, exc, delay)
            sleep(delay)


def poll(
    fn: Callable[[], T],
    interval: float,
    policy: BackoffPolicy,
    retry_on: Callable[[Exception], bool],
    sleep: Callable[[float], None] = time.sleep,
    iterations: int | None = None,
) -> Iterator[T]:
    """Yield ``fn()`` every ``interval`` seconds, backing off on transient errors.

    Runs forever unless ``iterations`` is given.
    """
    done = 0
    while iterations is None or done < iterations:
        yield call_with_retry(fn, policy, retry_on, sleep)
        done += 1
        if iterations is None or done < iterations:
            sleep(interval)
