import threading

import pytest

from unfurl.errors import RateLimitExceeded
from unfurl.ratelimit import CooldownGate, SlidingWindowLimiter


class _Clock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now


def test_sixty_first_request_in_window_rejected():
    clock = _Clock()
    limiter = SlidingWindowLimiter(60, 60, clock=clock)
    for _ in range(60):
        limiter.hit("key-1")
        clock.now += 0.5
    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.hit("key-1")
    assert excinfo.value.retry_after > 0


def test_other_identities_unaffected():
    limiter = SlidingWindowLimiter(2, 60, clock=_Clock())
    limiter.hit("a")
    limiter.hit("a")
    with pytest.raises(RateLimitExceeded):
        limiter.hit("a")
    assert limiter.hit("b") == 1


def test_window_slides():
    clock = _Clock()
    limiter = SlidingWindowLimiter(2, 60, clock=clock)
    limiter.hit("a")
    clock.now = 30
    limiter.hit("a")
    clock.now = 59
    with pytest.raises(RateLimitExceeded):
        limiter.hit("a")
    clock.now = 60.5
    limiter.hit("a")


def test_rejected_requests_are_not_counted():
    clock = _Clock()
    limiter = SlidingWindowLimiter(1, 10, clock=clock)
    limiter.hit("a")
    for _ in range(5):
        with pytest.raises(RateLimitExceeded):
            limiter.hit("a")
    clock.now = 10.5
    limiter.hit("a")


def test_reset_clears_state():
    limiter = SlidingWindowLimiter(1, 60, clock=_Clock())
    limiter.hit("a")
    limiter.reset()
    limiter.hit("a")


def test_concurrent_hits_never_exceed_limit():
    limiter = SlidingWindowLimiter(60, 60)
    accepted = []
    rejected = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            try:
                limiter.hit("shared")
            except RateLimitExceeded:
                with lock:
                    rejected.append(1)
            else:
                with lock:
                    accepted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(accepted) == 60
    assert len(rejected) == 40


def test_cooldown_gate_try_acquire():
    clock = _Clock(100.0)
    gate = CooldownGate(5, clock=clock)
    assert gate.try_acquire(1) is True
    assert gate.try_acquire(1) is False
    assert gate.remaining(1) == 5
    clock.now += 4
    assert gate.can_proceed(1) is False
    clock.now += 1
    assert gate.try_acquire(1) is True
    gate.reset()
    assert gate.can_proceed(1) is True
