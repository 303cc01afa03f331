"""JSON-RPC over HTTP transport channel.

Unary calls are HTTP POSTs carrying a JSON-RPC 2.0 request and answered with a
JSON-RPC response. Server-streaming calls are answered with an SSE stream
whose events each carry one JSON-RPC response. Client-streaming calls send
the collected request messages as a JSON array in ``params``.
"""

import itertools
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

import httpx
from httpx_sse import aconnect_sse
from pydantic import BaseModel

from manifold.errors import RpcError
from manifold.transport.base import Channel, ChannelFactory, RequestStream

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class HttpChannel(Channel):
    """One HTTP connection pool to a JSON-RPC endpoint.

    Each instance owns its own ``httpx.AsyncClient``, so a managed channel
    built from these spreads calls over separate connection pools.
    """

    def __init__(
        self,
        endpoint: str,
        headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the channel.

        Args:
            endpoint: HTTP(S) URL of the JSON-RPC endpoint
            headers: Extra headers sent with every request
            timeout: Per-request timeout in seconds
            http_client: Client to use instead of creating one

        Raises:
            ValueError: If endpoint is not an HTTP URL
        """
        if not isinstance(endpoint, str) or not endpoint.startswith(
            ("http://", "https://")
        ):
            raise ValueError("'endpoint' must be a valid HTTP URL")

        self._endpoint = endpoint
        self._headers = dict(headers or {})
        self._timeout = timeout
        self._http_client = http_client or httpx.AsyncClient()
        self._ids = itertools.count(1)

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def is_closed(self) -> bool:
        return self._http_client.is_closed

    # ================================
    # Channel Interface
    # ================================

    async def unary_unary(self, method: str, request: Any) -> Any:
        return await self._post(method, _to_params(request))

    async def unary_stream(self, method: str, request: Any) -> AsyncIterator[Any]:
        async for result in self._post_stream(method, _to_params(request)):
            yield result

    async def stream_unary(self, method: str, requests: RequestStream) -> Any:
        return await self._post(method, await _collect(requests))

    async def stream_stream(
        self, method: str, requests: RequestStream
    ) -> AsyncIterator[Any]:
        params = await _collect(requests)
        async for result in self._post_stream(method, params):
            yield result

    async def close(self) -> None:
        """Close the HTTP client. Safe to call multiple times."""
        if not self._http_client.is_closed:
            await self._http_client.aclose()
            logger.debug(f"HTTP channel to {self._endpoint} closed")

    # ================================
    # Requests
    # ================================

    async def _post(self, method: str, params: Any) -> Any:
        self._ensure_open()
        message = self._build_message(method, params)

        try:
            response = await self._http_client.post(
                self._endpoint,
                json=message,
                headers=self._build_headers("application/json"),
                timeout=self._timeout,
            )
        except httpx.RequestError as e:
            raise ConnectionError(
                f"HTTP request to {self._endpoint} failed for {method}: {e}"
            ) from e

        response.raise_for_status()
        return _unwrap(response.json())

    async def _post_stream(self, method: str, params: Any) -> AsyncIterator[Any]:
        self._ensure_open()
        message = self._build_message(method, params)

        try:
            async with aconnect_sse(
                self._http_client,
                "POST",
                self._endpoint,
                json=message,
                headers=self._build_headers("text/event-stream"),
                timeout=self._timeout,
            ) as event_source:
                event_source.response.raise_for_status()
                async for event in event_source.aiter_sse():
                    if not event.data:
                        continue
                    yield _unwrap(json.loads(event.data))
        except httpx.RequestError as e:
            raise ConnectionError(
                f"HTTP stream from {self._endpoint} failed for {method}: {e}"
            ) from e

    def _ensure_open(self) -> None:
        if self._http_client.is_closed:
            raise ConnectionError(f"HTTP channel to {self._endpoint} is closed")

    def _build_message(self, method: str, params: Any) -> dict[str, Any]:
        message: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
        }
        if params is not None:
            message["params"] = params
        return message

    def _build_headers(self, accept: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": accept,
        }
        headers.update(self._headers)
        return headers


def http_channel_factory(
    endpoint: str,
    headers: dict[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> ChannelFactory:
    """Return a factory creating a fresh HttpChannel per pool slot."""

    def factory() -> HttpChannel:
        return HttpChannel(endpoint, headers=headers, timeout=timeout)

    return factory


def _to_params(message: Any) -> Any:
    if isinstance(message, BaseModel):
        return message.model_dump(by_alias=True, exclude_none=True, mode="json")
    return message


async def _collect(requests: RequestStream) -> list[Any]:
    if isinstance(requests, AsyncIterable):
        return [_to_params(r) async for r in requests]
    return [_to_params(r) for r in requests]


def _unwrap(payload: Any) -> Any:
    """Return the result of a JSON-RPC response or raise its error."""
    if not isinstance(payload, dict):
        raise ValueError(f"Invalid JSON-RPC response: {payload!r}")

    if "error" in payload:
        error = payload["error"] or {}
        raise RpcError(
            code=error.get("code", 0),
            message=error.get("message", ""),
            data=error.get("data"),
        )
    if "result" not in payload:
        raise ValueError(f"JSON-RPC response has neither result nor error: {payload}")
    return payload["result"]
