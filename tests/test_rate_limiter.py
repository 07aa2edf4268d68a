import pytest

from judgebox.core.errors import StoreUnavailable
from judgebox.services.rate_limiter import (
    InMemoryRateLimitStore,
    RateLimiter,
    RateLimitStore,
    RedisRateLimitStore,
)
from judgebox.settings import RateLimitRule


@pytest.fixture
def limiter(clock):
    rules = {
        "execute": RateLimitRule(limit=3, window_ms=60_000),
        "priority": RateLimitRule(limit=1, window_ms=30_000),
    }
    return RateLimiter(InMemoryRateLimitStore(), rules, clock=clock)


class DownStore(RateLimitStore):
    def hit(self, key, now, window_ms, limit):
        raise StoreUnavailable("connection refused")


def test_limit_plus_one_is_rejected(limiter, clock):
    first = clock()
    for i in range(3):
        d = limiter.admit("u1")
        assert d.allowed
        assert d.current == i + 1
        clock.advance(1000)
    d = limiter.admit("u1")
    assert not d.allowed
    assert d.current == 3
    assert d.reset_time == first + 60_000
    assert d.retry_after == 57


def test_admitted_again_once_window_passes(limiter, clock):
    for _ in range(3):
        limiter.admit("u1")
    assert not limiter.admit("u1").allowed
    clock.advance(60_000)
    assert limiter.admit("u1").allowed


def test_window_slides_one_entry_at_a_time(limiter, clock):
    limiter.admit("u1")
    clock.advance(30_000)
    limiter.admit("u1")
    limiter.admit("u1")
    clock.advance(30_000)
    # the first entry has expired, the other two have not
    assert limiter.admit("u1").allowed
    assert not limiter.admit("u1").allowed


def test_users_and_actions_are_independent(limiter):
    assert limiter.admit("u1", "priority").allowed
    assert not limiter.admit("u1", "priority").allowed
    assert limiter.admit("u2", "priority").allowed
    assert limiter.admit("u1", "execute").allowed


def test_unknown_action_uses_default_rule(limiter):
    d = limiter.admit("u1", "something-else")
    assert d.allowed
    assert d.limit == 10


def test_fails_open_when_store_is_down(clock):
    limiter = RateLimiter(DownStore(), {"execute": RateLimitRule(limit=1, window_ms=1000)}, clock=clock)
    for _ in range(5):
        assert limiter.admit("u1").allowed


def test_fails_open_against_unreachable_redis(clock):
    store = RedisRateLimitStore("redis://127.0.0.1:1/0", socket_timeout=0.2)
    limiter = RateLimiter(store, {"execute": RateLimitRule(limit=1, window_ms=1000)}, clock=clock)
    assert limiter.admit("u1").allowed


def test_user_stats_and_reset(limiter, clock):
    limiter.admit("u1")
    limiter.admit("u1")
    stats = limiter.user_stats("u1")
    assert set(stats) >= {"execute", "priority", "batch"}
    assert stats["execute"]["current"] == 2
    assert stats["execute"]["remaining"] == 1
    assert stats["batch"]["limit"] == 10

    limiter.reset_user("u1")
    assert limiter.user_stats("u1")["execute"]["current"] == 0


def test_expired_windows_are_dropped(clock):
    store = InMemoryRateLimitStore()
    limiter = RateLimiter(store, {"execute": RateLimitRule(limit=2, window_ms=10_000)}, clock=clock)
    limiter.admit("u1")
    limiter.user_stats("u2")
    assert len(store) == 1
    clock.advance(10_001)
    limiter.user_stats("u1")
    assert len(store) == 0
    assert limiter.admit("u1").current == 1
    assert len(store) == 1
