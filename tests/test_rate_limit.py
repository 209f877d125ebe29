import pytest
import redis

from app.services.rate_limit import RateLimiter

LIMITS = {"api": {"window": 60, "max": 3}}


def test_fixed_window_blocks_after_max():
    limiter = RateLimiter(limits=LIMITS)

    results = [limiter.check("user:1", now=1000.0 + i) for i in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results[:3]] == [2, 1, 0]
    assert results[3].retry_after == 57


def test_new_window_resets_counter():
    limiter = RateLimiter(limits=LIMITS)
    for i in range(3):
        limiter.check("user:1", now=1000.0)

    assert limiter.check("user:1", now=1061.0).allowed is True


def test_identities_are_independent():
    limiter = RateLimiter(limits=LIMITS)
    for _ in range(3):
        limiter.check("user:1", now=1000.0)

    assert limiter.check("user:1", now=1000.0).allowed is False
    assert limiter.check("ip:10.0.0.9", now=1000.0).allowed is True


def test_reset_clears_counters():
    limiter = RateLimiter(limits=LIMITS)
    for _ in range(4):
        limiter.check("user:1", now=1000.0)

    limiter.reset()

    assert limiter.check("user:1", now=1000.0).allowed is True


def test_unknown_kind():
    with pytest.raises(ValueError):
        RateLimiter(limits=LIMITS).check("user:1", kind="otp")


class BrokenRedis:
    def incr(self, key):
        raise redis.exceptions.ConnectionError("Connection refused")


def test_redis_failure_falls_back_to_memory():
    limiter = RateLimiter(limits=LIMITS, client=BrokenRedis())

    results = [limiter.check("user:1", now=1000.0) for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]


def test_expired_windows_are_evicted():
    limiter = RateLimiter(limits=LIMITS)
    limiter.check("user:1", now=1000.0)
    limiter.check("user:2", now=1050.0)

    limiter.check("user:3", now=1100.0)

    assert set(limiter._memory) == {"ratelimit:api:user:2", "ratelimit:api:user:3"}
