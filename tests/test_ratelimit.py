"""
Tests for the token-bucket rate limiter.
"""

import threading

import pytest

from recall.core.errors import BackpressureError, OperationCancelled
from recall.core.ratelimit import RateLimiter, TokenBucket

from fakes import FakeClock


def test_token_bucket_refills_over_time():
    clock = FakeClock()
    bucket = TokenBucket(rate=2.0, capacity=4.0, clock=clock)

    assert bucket.wait_time(4) == 0.0
    bucket.take(4)
    assert bucket.wait_time(1) == pytest.approx(0.5)

    clock.now += 1.0
    assert bucket.available == pytest.approx(2.0)


def test_token_bucket_admits_oversized_request_when_full():
    bucket = TokenBucket(rate=1.0, capacity=2.0, clock=FakeClock())
    assert bucket.wait_time(10) == 0.0


def test_token_bucket_rejects_bad_rate():
    with pytest.raises(ValueError):
        TokenBucket(rate=0, capacity=1)


def test_acquire_without_waiting():
    limiter = RateLimiter(requests_per_minute=600, clock=FakeClock())
    assert limiter.acquire() == 0.0


def test_acquire_waits_for_refill():
    """An empty bucket makes the caller sleep until a request token is back."""
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=60, clock=clock, sleep=clock.sleep)

    limiter.acquire()
    waited = limiter.acquire()

    assert waited == pytest.approx(1.0)
    assert clock.sleeps == [pytest.approx(1.0)]
    assert limiter.total_wait_sec == pytest.approx(1.0)
    assert limiter.waiting == 0


def test_full_queue_raises_backpressure():
    """With no room to wait, callers fail fast instead of queueing."""
    limiter = RateLimiter(requests_per_minute=60, clock=FakeClock(), max_queue_depth=0)

    limiter.acquire()
    with pytest.raises(BackpressureError):
        limiter.acquire()
    assert limiter.rejected == 1


def test_cancel_while_waiting():
    clock = FakeClock()
    cancel = threading.Event()

    def sleep(seconds):
        cancel.set()

    limiter = RateLimiter(requests_per_minute=1, clock=clock, sleep=sleep)
    limiter.acquire()

    with pytest.raises(OperationCancelled):
        limiter.acquire(cancel=cancel)
    assert limiter.waiting == 0
