"""Background workers for the gateway.

Each worker module exports an async task function compatible with
:class:`caspay_gateway.worker.WorkerTask`.

:data:`worker` runs the database sweeps on ``worker_interval_seconds``;
:func:`create_rate_limit_worker` builds the separate five-minute sweep for
the app's rate limiter.
"""
from __future__ import annotations

from caspay_gateway.services.rate_limit import RateLimiter
from caspay_gateway.settings import settings
from caspay_gateway.worker import BackgroundWorker, WorkerTask
from caspay_gateway.workers.payment_reconcile import payment_reconcile_sweep
from caspay_gateway.workers.rate_limit_sweep import make_rate_limit_sweep
from caspay_gateway.workers.webhook_retry import webhook_retry_due

worker = BackgroundWorker(
    interval_seconds=settings.worker_interval_seconds,
    tasks=[
        WorkerTask(name="webhook_retry_due", fn=webhook_retry_due),
        WorkerTask(name="payment_reconcile_sweep", fn=payment_reconcile_sweep),
    ],
)

start_background_worker = worker.start
stop_background_worker = worker.stop


def create_rate_limit_worker(limiter: RateLimiter) -> BackgroundWorker:
    return BackgroundWorker(
        interval_seconds=settings.rate_limit_sweep_interval_seconds,
        tasks=[WorkerTask(name="rate_limit_sweep", fn=make_rate_limit_sweep(limiter))],
        name="rate_limit_worker",
    )


__all__ = [
    "worker",
    "start_background_worker",
    "stop_background_worker",
    "create_rate_limit_worker",
]
