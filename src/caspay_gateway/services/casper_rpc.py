"""Minimal Casper node JSON-RPC client with a fallback node."""
from __future__ import annotations

import itertools
from typing import Any, Sequence

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout

from caspay_gateway.core.exceptions import CasperRpcError
from caspay_gateway.domain.enums import Network
from caspay_gateway.otel import get_tracer
from caspay_gateway.settings import settings

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

_request_ids = itertools.count(1)


class CasperRpcClient:
    def __init__(
        self,
        session: ClientSession,
        urls: Sequence[str],
        *,
        timeout_s: float = 15.0,
        api_key: str | None = None,
    ):
        if not urls:
            raise ValueError("At least one RPC url is required")
        self._session = session
        self._urls = list(urls)
        self._timeout = ClientTimeout(total=timeout_s)
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = api_key

    async def call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Try each node in order; raise once every node failed."""
        errors: list[str] = []
        for url in self._urls:
            try:
                with tracer.start_as_current_span(
                    "casper_rpc.call", attributes={"rpc.method": method, "server.url": url}
                ):
                    return await self._call_one(url, method, params)
            except (ClientError, TimeoutError, CasperRpcError, ValueError) as exc:
                message = str(exc) or exc.__class__.__name__
                logger.warning("casper rpc call failed", url=url, method=method, error=message)
                errors.append(message)
        raise CasperRpcError(errors[-1])

    async def _call_one(self, url: str, method: str, params: dict[str, Any]) -> dict[str, Any]:
        body = {"jsonrpc": "2.0", "id": next(_request_ids), "method": method, "params": params}
        async with self._session.post(
            url, json=body, headers=self._headers, timeout=self._timeout
        ) as resp:
            if resp.status >= 400:
                raise CasperRpcError(f"HTTP {resp.status} from {url}")
            data = await resp.json(content_type=None)
        if not isinstance(data, dict):
            raise CasperRpcError("Malformed JSON-RPC response")
        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise CasperRpcError(message or "JSON-RPC error")
        result = data.get("result")
        if not isinstance(result, dict):
            raise CasperRpcError("JSON-RPC response has no result")
        return result

    async def get_deploy(self, deploy_hash: str) -> dict[str, Any]:
        return await self.call("info_get_deploy", {"deploy_hash": deploy_hash})


def node_urls(network: Network) -> list[str]:
    if network is Network.MAINNET:
        urls = [settings.casper_mainnet_rpc_url, settings.casper_mainnet_fallback_rpc_url]
    else:
        urls = [settings.casper_testnet_rpc_url, settings.casper_testnet_fallback_rpc_url]
    return [url for url in urls if url]


def client_for(network: Network, session: ClientSession) -> CasperRpcClient:
    return CasperRpcClient(
        session,
        node_urls(network),
        timeout_s=settings.casper_rpc_timeout_seconds,
        api_key=settings.cspr_cloud_api_key,
    )
