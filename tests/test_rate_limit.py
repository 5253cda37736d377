"""Fixed-window limiter tests.

The store is process-local: two limiters with separate stores count
independently, which is the documented multi-instance limitation.
"""
from __future__ import annotations

from caspay_gateway.services.rate_limit import (
    InMemoryRateLimitStore,
    RateLimiter,
    rate_limit_headers,
)

T0 = 1_700_000_000_000


def make_limiter() -> RateLimiter:
    return RateLimiter(InMemoryRateLimitStore())


def test_window_boundary():
    limiter = make_limiter()
    results = [limiter.check("m1:record", 3, 1000, now=T0 + i) for i in range(3)]
    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == [2, 1, 0]

    rejected = limiter.check("m1:record", 3, 1000, now=T0 + 10)
    assert not rejected.allowed
    assert rejected.remaining == 0
    assert rejected.retry_after is not None and rejected.retry_after > 0

    fresh = limiter.check("m1:record", 3, 1000, now=T0 + 1000)
    assert fresh.allowed
    assert fresh.remaining == 2
    assert fresh.reset_at == T0 + 2000


def test_retry_after_rounds_up_to_seconds():
    limiter = make_limiter()
    limiter.check("k", 1, 60_000, now=T0)
    rejected = limiter.check("k", 1, 60_000, now=T0 + 58_500)
    assert rejected.retry_after == 2


def test_identifiers_are_independent():
    limiter = make_limiter()
    limiter.check("merchant:a:op", 1, 1000, now=T0)
    assert not limiter.check("merchant:a:op", 1, 1000, now=T0 + 1).allowed
    assert limiter.check("merchant:b:op", 1, 1000, now=T0 + 1).allowed
    assert limiter.check("merchant:a:other", 1, 1000, now=T0 + 1).allowed


def test_separate_stores_do_not_share_counts():
    first, second = make_limiter(), make_limiter()
    first.check("k", 1, 1000, now=T0)
    assert not first.check("k", 1, 1000, now=T0 + 1).allowed
    assert second.check("k", 1, 1000, now=T0 + 1).allowed


def test_sweep_drops_expired_windows():
    store = InMemoryRateLimitStore()
    limiter = RateLimiter(store)
    limiter.check("old", 5, 1000, now=T0)
    limiter.check("new", 5, 1000, now=T0 + 900)
    assert len(store) == 2

    assert limiter.sweep(now=T0 + 1000) == 1
    assert len(store) == 1
    assert store.get("ratelimit:new") is not None


def test_headers_for_allowed_request():
    limiter = make_limiter()
    headers = rate_limit_headers(limiter.check("k", 60, 60_000, now=T0))
    assert headers["X-RateLimit-Limit"] == "60"
    assert headers["X-RateLimit-Remaining"] == "59"
    assert headers["X-RateLimit-Reset"] == "2023-11-14T22:14:20.000Z"
    assert "Retry-After" not in headers


def test_headers_for_rejected_request():
    limiter = make_limiter()
    limiter.check("k", 1, 60_000, now=T0)
    headers = rate_limit_headers(limiter.check("k", 1, 60_000, now=T0 + 30_000))
    assert headers["X-RateLimit-Remaining"] == "0"
    assert headers["Retry-After"] == "30"
