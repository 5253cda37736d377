"""aiohttp application entrypoint."""
from __future__ import annotations

import structlog
from aiohttp import web
from aiohttp_cors import setup as cors_setup, ResourceOptions

from caspay_gateway import __version__
from caspay_gateway.api.router import setup_routes
from caspay_gateway.db.pool import close_pool, get_pool, init_pool
from caspay_gateway.logging_config import configure_logging
from caspay_gateway.middleware.errors import error_middleware
from caspay_gateway.middleware.trace import create_trace_middleware
from caspay_gateway.otel import setup_otel, shutdown_otel
from caspay_gateway.services.dependencies import RATE_LIMITER_KEY
from caspay_gateway.services.rate_limit import InMemoryRateLimitStore, RateLimiter
from caspay_gateway.settings import settings
from caspay_gateway.tasks import drain_on_cleanup
from caspay_gateway.webhooks_dispatcher import start_http_session, stop_http_session
from caspay_gateway.workers import create_rate_limit_worker, worker

# Configure structured logging
configure_logging()

logger = structlog.get_logger(__name__)


async def healthcheck(request: web.Request) -> web.Response:
    checks: dict[str, str] = {}
    try:
        pool = await get_pool()
        await pool.fetchval("SELECT 1")
        checks["database"] = "ok"
    except Exception as exc:
        logger.warning("health check: database unavailable", error=str(exc))
        checks["database"] = "unavailable"

    healthy = all(value == "ok" for value in checks.values())
    return web.json_response(
        {
            "status": "healthy" if healthy else "degraded",
            "service": settings.app_name,
            "env": settings.env,
            "version": __version__,
            "checks": checks,
        },
        status=200 if healthy else 503,
    )


def create_app() -> web.Application:
    app = web.Application()

    # Add trace middleware first (before other middleware)
    app.middlewares.append(create_trace_middleware(settings.app_name))
    app.middlewares.append(error_middleware)

    # Configure CORS first, before adding routes
    cors = cors_setup(
        app,
        defaults={
            origin: ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
                allow_methods="*",
            )
            for origin in settings.cors_allowed_origins
        },
    )

    limiter = RateLimiter(InMemoryRateLimitStore())
    app[RATE_LIMITER_KEY] = limiter
    rate_limit_worker = create_rate_limit_worker(limiter)

    app.router.add_get("/health", healthcheck)
    setup_routes(app)

    app.on_startup.append(init_pool)
    app.on_startup.append(start_http_session)
    app.on_startup.append(worker.start)
    app.on_startup.append(rate_limit_worker.start)

    app.on_cleanup.append(rate_limit_worker.stop)
    app.on_cleanup.append(worker.stop)
    app.on_cleanup.append(drain_on_cleanup)
    app.on_cleanup.append(stop_http_session)
    app.on_cleanup.append(close_pool)
    app.on_cleanup.append(shutdown_otel)

    setup_otel(app)

    # Add CORS to all routes
    for route in list(app.router.routes()):
        cors.add(route)

    return app


def main() -> None:
    web.run_app(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
