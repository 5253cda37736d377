"""Worker: confirm or expire pending payments."""
from __future__ import annotations

from datetime import datetime

from caspay_gateway.services.dependencies import build_reconciler
from caspay_gateway.settings import settings


async def payment_reconcile_sweep(now: datetime) -> str | None:
    """Expire stale pending payments, then reconcile those that carry a deploy hash."""
    reconciler = await build_reconciler()
    summary = await reconciler.sweep(now, limit=settings.reconcile_batch_size)
    if not any(summary.values()):
        return None
    return " ".join(f"{key}={value}" for key, value in summary.items())
