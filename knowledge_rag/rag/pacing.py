"""
Batch pacing for external rate limits
Pacers are told the size of each finished batch group and decide how long to wait
"""

import time
import threading
from abc import ABC, abstractmethod
from typing import Callable

import structlog

logger = structlog.get_logger()


class Pacer(ABC):
    """Backpressure hook called after each batch group"""

    @abstractmethod
    def after_group(self, group_size: int) -> None:
        """Block as long as needed before the next group may start."""


class NoopPacer(Pacer):
    """Never waits."""

    def after_group(self, group_size: int) -> None:
        return None


class FixedDelayPacer(Pacer):
    """
    Sleep a fixed delay after any group larger than min_group_size.
    """

    def __init__(
        self,
        delay: float = 0.1,
        min_group_size: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if delay < 0:
            raise ValueError("delay must be non-negative")
        self.delay = delay
        self.min_group_size = min_group_size
        self._sleep = sleep

    def after_group(self, group_size: int) -> None:
        if group_size > self.min_group_size and self.delay > 0:
            logger.debug("pacer.delay", group_size=group_size, delay=self.delay)
            self._sleep(self.delay)


class TokenBucketPacer(Pacer):
    """
    Token bucket: each processed item costs one token, tokens refill at `rate`
    per second up to `capacity`. Waits only when the bucket runs dry.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity <= 0:
            raise ValueError("capacity must be positive")

        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._updated = now

    def after_group(self, group_size: int) -> None:
        with self._lock:
            self._refill()
            self._tokens -= group_size
            if self._tokens >= 0:
                return
            wait = -self._tokens / self.rate

        logger.debug("pacer.throttled", group_size=group_size, wait=round(wait, 3))
        self._sleep(wait)

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens
