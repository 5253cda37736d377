"""API router composition for aiohttp."""
from __future__ import annotations

from aiohttp import web

from caspay_gateway.api.routes import (
    api_keys,
    payments,
    reconciliation,
    subscriptions,
    validate_key,
    webhooks,
)

ROUTE_MODULES = [
    validate_key,
    payments,
    reconciliation,
    subscriptions,
    webhooks,
    api_keys,
]


def setup_routes(app: web.Application) -> None:
    """Attach domain routes to the aiohttp application."""
    for module in ROUTE_MODULES:
        app.add_routes(module.routes)
