"""Worker: drop expired rate-limit windows."""
from __future__ import annotations

from datetime import datetime

from caspay_gateway.services.rate_limit import RateLimiter
from caspay_gateway.worker import TaskFn


def make_rate_limit_sweep(limiter: RateLimiter) -> TaskFn:
    async def rate_limit_sweep(now: datetime) -> str | None:
        removed = limiter.sweep(int(now.timestamp() * 1000))
        return f"removed={removed}" if removed else None

    return rate_limit_sweep
