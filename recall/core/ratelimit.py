"""
Token-bucket rate limiting for embedding provider calls.

When a bucket is empty new callers wait for refill. Once the number of
waiting callers reaches max_queue_depth, further callers fail fast with
BackpressureError so producers can store content unembedded and move on.
"""

import threading
import time
from typing import Callable, Optional

from .errors import BackpressureError, OperationCancelled


class TokenBucket:
    """Classic token bucket refilled continuously at ``rate`` tokens per second."""

    def __init__(self, rate: float, capacity: float, clock: Callable[[], float] = time.monotonic):
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be positive")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._tokens = capacity
        self._updated = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    def wait_time(self, amount: float) -> float:
        """Seconds until ``amount`` tokens are available (0 if available now)."""
        self._refill()
        # A request larger than the bucket is admitted once the bucket is full
        amount = min(amount, self.capacity)
        if self._tokens >= amount:
            return 0.0
        return (amount - self._tokens) / self.rate

    def take(self, amount: float) -> None:
        self._tokens -= min(amount, self.capacity)

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens


class RateLimiter:
    """Requests-per-minute and tokens-per-minute limits with a bounded wait queue."""

    def __init__(self, requests_per_minute: int = 3000, tokens_per_minute: int = 1000000,
                 max_queue_depth: int = 64, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = None):
        self.requests = TokenBucket(requests_per_minute / 60.0, max(1.0, requests_per_minute / 60.0), clock)
        self.tokens = TokenBucket(tokens_per_minute / 60.0, max(1.0, tokens_per_minute / 60.0), clock)
        self.max_queue_depth = max_queue_depth
        self._lock = threading.Lock()
        self._waiting = 0
        self._sleep = sleep
        self.total_wait_sec = 0.0
        self.rejected = 0

    @property
    def waiting(self) -> int:
        with self._lock:
            return self._waiting

    def acquire(self, tokens: int = 1, cancel: Optional[threading.Event] = None) -> float:
        """Block until one request and ``tokens`` tokens are available.

        Returns the seconds spent waiting. Raises BackpressureError when the
        queue of waiters is full and OperationCancelled when ``cancel`` fires.
        """
        waited = 0.0
        with self._lock:
            delay = self._take(tokens)
            if delay == 0.0:
                return 0.0
            if self._waiting >= self.max_queue_depth:
                self.rejected += 1
                raise BackpressureError(
                    f"Embedding rate limiter queue full ({self._waiting} waiting)"
                )
            self._waiting += 1

        try:
            while delay > 0.0:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled("cancelled while waiting for rate limiter")
                if self._sleep is not None:
                    self._sleep(delay)
                elif cancel is not None:
                    cancel.wait(delay)
                else:
                    time.sleep(delay)
                waited += delay
                with self._lock:
                    delay = self._take(tokens)
        finally:
            with self._lock:
                self._waiting -= 1
                self.total_wait_sec += waited
        return waited

    def _take(self, tokens: int) -> float:
        wait = max(self.requests.wait_time(1), self.tokens.wait_time(tokens))
        if wait == 0.0:
            self.requests.take(1)
            self.tokens.take(tokens)
        return wait
