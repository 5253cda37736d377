"""Helper utilities for API handlers."""
from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from aiohttp import web


class ApiError(Exception):
    """Error rendered as ``{"error": ..., "code": ...}`` by the error middleware."""

    def __init__(
        self,
        status: int,
        error: str,
        code: str,
        *,
        headers: Mapping[str, str] | None = None,
        extra: dict[str, Any] | None = None,
    ):
        super().__init__(error)
        self.status = status
        self.error = error
        self.code = code
        self.headers = dict(headers or {})
        self.extra = extra or {}

    def to_response(self) -> web.Response:
        body = {"error": self.error, "code": self.code, **self.extra}
        return web.json_response(body, status=self.status, headers=self.headers)


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value if isinstance(value, str) else str(value))
    except (ValueError, TypeError) as exc:
        raise ApiError(400, f"Invalid {label}", "INVALID_REQUEST") from exc


async def read_json(request: web.Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except Exception as exc:
        raise ApiError(400, "Invalid JSON payload", "INVALID_REQUEST") from exc
    if not isinstance(data, dict):
        raise ApiError(400, "JSON body must be an object", "INVALID_REQUEST")
    return data


def pagination_params(
    request: web.Request,
    *,
    default_limit: int = 50,
    max_limit: int = 100,
) -> tuple[int, int]:
    query = request.rel_url.query
    try:
        limit = int(query.get("limit", str(default_limit)))
        offset = int(query.get("offset", "0"))
    except ValueError as exc:
        raise ApiError(400, "limit and offset must be integers", "INVALID_REQUEST") from exc
    if limit <= 0:
        limit = default_limit
    limit = min(limit, max_limit)
    if offset < 0:
        offset = 0
    return limit, offset


def paginated_response(
    items: list[Any],
    *,
    limit: int,
    offset: int,
    key: str,
    total: int,
) -> dict[str, Any]:
    page = offset // limit + 1 if limit else 1
    return {
        key: items,
        "total": total,
        "page": page,
        "page_size": limit,
    }
