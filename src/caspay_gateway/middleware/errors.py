"""JSON error rendering for API handlers."""
from __future__ import annotations

import structlog
from aiohttp import web

from caspay_gateway.api.utils import ApiError
from caspay_gateway.core.exceptions import CasPayError, NotFoundError

logger = structlog.get_logger(__name__)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ApiError as exc:
        return exc.to_response()
    except NotFoundError as exc:
        return web.json_response({"error": str(exc), "code": "NOT_FOUND"}, status=404)
    except CasPayError:
        logger.exception("request failed", path=request.path)
        return web.json_response(
            {"error": "Internal server error", "code": "INTERNAL_ERROR"}, status=500
        )
    except Exception:
        logger.exception("unhandled error", path=request.path)
        return web.json_response(
            {"error": "Internal server error", "code": "INTERNAL_ERROR"}, status=500
        )
