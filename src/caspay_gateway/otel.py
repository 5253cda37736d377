"""OpenTelemetry instrumentation for the gateway.

Activated only when ``otel_exporter_endpoint`` is set in settings. Adds a
span per inbound request and exposes :func:`get_tracer` for manual spans
around outbound calls.
"""
from __future__ import annotations

import structlog
from aiohttp import web
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.aiohttp_server import AioHttpServerInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from caspay_gateway.settings import settings

logger = structlog.get_logger(__name__)

_provider: TracerProvider | None = None


def setup_otel(app: web.Application) -> None:
    """Initialise OpenTelemetry tracing if ``otel_exporter_endpoint`` is configured."""
    global _provider

    endpoint = settings.otel_exporter_endpoint
    if not endpoint:
        logger.info("otel_exporter_endpoint not set, OpenTelemetry tracing disabled")
        return

    resource = Resource.create({SERVICE_NAME: settings.app_name})
    _provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=f"{str(endpoint).rstrip('/')}/v1/traces")
    _provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(_provider)

    AioHttpServerInstrumentor().instrument(server=app)

    logger.info(
        "OpenTelemetry tracing enabled",
        endpoint=str(endpoint),
        service=settings.app_name,
    )


async def shutdown_otel(_app: web.Application) -> None:
    """Flush pending spans on application shutdown."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        logger.info("OpenTelemetry tracer provider shut down")
        _provider = None


def get_tracer(name: str = __name__) -> trace.Tracer:
    """Return a tracer; a no-op tracer when OTel is disabled."""
    return trace.get_tracer(name)
