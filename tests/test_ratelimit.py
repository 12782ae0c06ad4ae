"""Tests for the two-window request rate limiter."""

import random
import threading

import pytest

from nutstate import ratelimit


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("per_second", "per_minute", "margin"),
    [(0, 10, 0), (5, 0, 0), (5, 10, -1), (5, 10, 5)],
)
def test_invalid_limits_raise(per_second, per_minute, margin):
    with pytest.raises(ValueError):
        ratelimit.SlidingWindowRateLimiter(per_second, per_minute, margin)


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


def test_admits_until_second_window_full(clock):
    limiter = ratelimit.SlidingWindowRateLimiter(3, 100, clock=clock)

    outcomes = [limiter.check_admission() for _ in range(4)]

    assert [o.allowed for o in outcomes] == [True, True, True, False]
    assert not any(o.load_shedding for o in outcomes)


def test_second_window_frees_after_one_second(clock):
    limiter = ratelimit.SlidingWindowRateLimiter(2, 100, clock=clock)
    limiter.check_admission()
    limiter.check_admission()
    assert not limiter.check_admission().allowed

    clock.advance(1.01)

    assert limiter.check_admission().allowed


def test_request_exactly_one_second_old_still_counts(clock):
    limiter = ratelimit.SlidingWindowRateLimiter(1, 100, clock=clock)
    limiter.check_admission()

    clock.advance(1.0)
    assert not limiter.check_admission().allowed

    clock.advance(0.01)
    assert limiter.check_admission().allowed


def test_minute_window_rejects_across_seconds(clock):
    limiter = ratelimit.SlidingWindowRateLimiter(10, 3, clock=clock)
    for _ in range(3):
        assert limiter.check_admission().allowed
        clock.advance(5.0)

    assert not limiter.check_admission().allowed

    clock.advance(50.0)  # the first request is now more than 60s old
    assert limiter.check_admission().allowed


def test_rejected_requests_are_not_recorded(clock):
    limiter = ratelimit.SlidingWindowRateLimiter(1, 100, clock=clock)
    limiter.check_admission()
    for _ in range(5):
        limiter.check_admission()

    clock.advance(1.01)

    assert limiter.check_admission().allowed
    assert limiter.rejected == 5
    assert limiter.admitted == 2


def test_load_shedding_near_second_ceiling(clock):
    limiter = ratelimit.SlidingWindowRateLimiter(5, 100, load_margin=2, clock=clock)

    outcomes = [limiter.check_admission() for _ in range(4)]

    assert [o.load_shedding for o in outcomes] == [False, False, False, True]
    assert all(o.allowed for o in outcomes)


def test_load_shedding_does_not_consume_quota(clock):
    limiter = ratelimit.SlidingWindowRateLimiter(5, 4, load_margin=2, clock=clock)
    for _ in range(3):
        limiter.check_admission()
    for _ in range(10):
        assert limiter.check_admission() == ratelimit.Admission(allowed=True, load_shedding=True)

    clock.advance(1.01)

    assert limiter.check_admission() == ratelimit.Admission(allowed=True)
    assert limiter.shed == 10


def test_admitted_counts_never_exceed_window_ceilings(clock):
    """Randomized traffic never records more than either window's capacity."""
    rng = random.Random(7)
    limiter = ratelimit.SlidingWindowRateLimiter(4, 20, load_margin=1, clock=clock)
    recorded: list[float] = []

    for _ in range(2000):
        clock.advance(rng.choice([0.0, 0.01, 0.1, 0.3, 2.0]))
        admission = limiter.check_admission()
        if admission.allowed and not admission.load_shedding:
            recorded.append(clock.now)
        assert sum(1 for t in recorded if clock.now - t <= 1.0) <= 4
        assert sum(1 for t in recorded if clock.now - t <= 60.0) <= 20


# ---------------------------------------------------------------------------
# Thread safety
# ---------------------------------------------------------------------------


def test_concurrent_checks_respect_capacity():
    limiter = ratelimit.SlidingWindowRateLimiter(50, 50, clock=lambda: 1.0)
    thread_count = 20
    barrier = threading.Barrier(thread_count)
    allowed: list[bool] = []

    def worker():
        barrier.wait()
        for _ in range(10):
            allowed.append(limiter.check_admission().allowed)

    threads = [threading.Thread(target=worker) for _ in range(thread_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert allowed.count(True) == 50
