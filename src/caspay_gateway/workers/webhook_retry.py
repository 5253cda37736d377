"""Worker: re-send webhook deliveries whose retry time has come."""
from __future__ import annotations

from datetime import datetime

from caspay_gateway.services.dependencies import build_webhook_dispatcher


async def webhook_retry_due(now: datetime) -> str | None:
    """Retry every undelivered delivery with ``next_retry_at <= now``."""
    dispatcher = await build_webhook_dispatcher()
    summary = await dispatcher.retry_due(now)
    if not any(summary.values()):
        return None
    return " ".join(f"{key}={value}" for key, value in summary.items())
