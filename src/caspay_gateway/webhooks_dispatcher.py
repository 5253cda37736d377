"""Outbound webhook transport: one shared HTTP session and a single signed POST."""
from __future__ import annotations

import json
import time
from typing import Any

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout, web

from caspay_gateway.domain.models import DeliveryOutcome
from caspay_gateway.settings import settings

logger = structlog.get_logger(__name__)

RESPONSE_BODY_LIMIT = 10_000

_session: ClientSession | None = None


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Serialize once; the signature covers exactly these bytes."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def build_headers(*, signature: str, event_type: str, timestamp: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-CasPay-Signature": signature,
        "X-CasPay-Event": event_type,
        "X-CasPay-Timestamp": timestamp,
        "User-Agent": settings.webhook_user_agent,
    }


async def post_webhook(
    session: ClientSession,
    url: str,
    *,
    body: bytes,
    headers: dict[str, str],
    timeout_s: float,
) -> DeliveryOutcome:
    """POST a webhook body; transport failures come back as an unsuccessful outcome."""
    started = time.monotonic()
    try:
        async with session.post(
            url,
            data=body,
            headers=headers,
            timeout=ClientTimeout(total=timeout_s),
        ) as resp:
            text = await resp.text(errors="replace")
            return DeliveryOutcome(
                success=200 <= resp.status < 300,
                status=resp.status,
                body=text[:RESPONSE_BODY_LIMIT],
                headers={k: v for k, v in resp.headers.items()},
                duration_ms=(time.monotonic() - started) * 1000,
            )
    except TimeoutError:
        error = f"Timed out after {timeout_s:g}s"
    except ClientError as exc:
        error = str(exc) or exc.__class__.__name__
    except ValueError as exc:  # malformed URL
        error = str(exc)
    logger.info("webhook post failed", url=url, error=error)
    return DeliveryOutcome(
        success=False,
        error=error,
        duration_ms=(time.monotonic() - started) * 1000,
    )


async def start_http_session(_app: web.Application | None = None) -> None:
    global _session
    if _session is None or _session.closed:
        _session = ClientSession(
            timeout=ClientTimeout(total=settings.webhook_request_timeout_seconds)
        )


async def stop_http_session(_app: web.Application | None = None) -> None:
    global _session
    if _session is not None:
        await _session.close()
        _session = None


async def get_http_session() -> ClientSession:
    if _session is None or _session.closed:
        await start_http_session()
    assert _session is not None  # for type checkers
    return _session
