"""Fixed-window rate limiting over a pluggable counter store.

:class:`InMemoryRateLimitStore` is process-local: several gateway instances
each count separately, so a multi-instance deployment needs a shared store
implementing :class:`RateLimitStore` to enforce an aggregate limit.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_MAX_REQUESTS = 60
DEFAULT_WINDOW_MS = 60_000
KEY_NAMESPACE = "ratelimit:"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitEntry:
    count: int
    reset_at: int  # epoch milliseconds


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int | None = None


class RateLimitStore(Protocol):
    def get(self, key: str) -> RateLimitEntry | None: ...

    def set(self, key: str, entry: RateLimitEntry) -> None: ...

    def increment(self, key: str) -> int: ...

    def sweep(self, now: int) -> int: ...


class InMemoryRateLimitStore:
    """Dict-backed store; every method completes without yielding to the loop."""

    def __init__(self) -> None:
        self._entries: dict[str, RateLimitEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> RateLimitEntry | None:
        return self._entries.get(key)

    def set(self, key: str, entry: RateLimitEntry) -> None:
        self._entries[key] = entry

    def increment(self, key: str) -> int:
        entry = self._entries[key]
        entry.count += 1
        return entry.count

    def sweep(self, now: int) -> int:
        expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)


class RateLimiter:
    def __init__(self, store: RateLimitStore) -> None:
        self._store = store

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def check(
        self,
        identifier: str,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_ms: int = DEFAULT_WINDOW_MS,
        now: int | None = None,
    ) -> RateLimitResult:
        current = now_ms() if now is None else now
        key = f"{KEY_NAMESPACE}{identifier}"
        entry = self._store.get(key)

        if entry is None or current >= entry.reset_at:
            entry = RateLimitEntry(count=1, reset_at=current + window_ms)
            self._store.set(key, entry)
            return RateLimitResult(
                allowed=True,
                limit=max_requests,
                remaining=max_requests - 1,
                reset_at=entry.reset_at,
            )

        if entry.count >= max_requests:
            retry_after = math.ceil((entry.reset_at - current) / 1000)
            logger.info(
                "rate_limit_exceeded",
                identifier=identifier,
                limit=max_requests,
                retry_after=retry_after,
            )
            return RateLimitResult(
                allowed=False,
                limit=max_requests,
                remaining=0,
                reset_at=entry.reset_at,
                retry_after=retry_after,
            )

        count = self._store.increment(key)
        return RateLimitResult(
            allowed=True,
            limit=max_requests,
            remaining=max(0, max_requests - count),
            reset_at=entry.reset_at,
        )

    def sweep(self, now: int | None = None) -> int:
        return self._store.sweep(now_ms() if now is None else now)


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    reset = datetime.fromtimestamp(result.reset_at / 1000, tz=timezone.utc)
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": reset.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    }
    if not result.allowed and result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers
