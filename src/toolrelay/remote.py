from __future__ import annotations

import itertools
import json
import logging
from typing import Any, Mapping

import httpx

from .stdio import CLIENT_INFO, PROTOCOL_VERSION
from .tools.errors import ToolRequestError, ToolServerError, is_retryable_status

log = logging.getLogger("toolrelay.remote")

_SESSION_HEADER = "Mcp-Session-Id"


class RemoteToolError(ToolRequestError):
    pass


def _parse_body(response: httpx.Response) -> dict[str, Any]:
    """Streamable-HTTP servers may answer with JSON or a short SSE stream."""
    content_type = response.headers.get("content-type", "")
    if "text/event-stream" in content_type:
        for line in response.text.splitlines():
            if not line.startswith("data:"):
                continue
            try:
                payload = json.loads(line[5:].strip())
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict) and ("result" in payload or "error" in payload):
                return payload
        return {}
    payload = response.json()
    return payload if isinstance(payload, dict) else {}


class RemoteToolServer:
    """JSON-RPC client for a tool server reachable over HTTP."""

    def __init__(
        self,
        name: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = name
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.transport = transport
        self._ids = itertools.count(1)
        self._session_id: str | None = None
        self._initialized = False

    async def _rpc(self, method: str, params: Mapping[str, Any] | None = None, *, notify: bool = False) -> Any:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "params": dict(params or {})}
        if not notify:
            message["id"] = next(self._ids)
        headers = {"Accept": "application/json, text/event-stream", **self.headers}
        if self._session_id:
            headers[_SESSION_HEADER] = self._session_id
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=message, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            status = None
            retryable = False
            if isinstance(exc, httpx.HTTPStatusError):
                status = exc.response.status_code
                retryable = is_retryable_status(status)
            elif isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
                retryable = True
            raise RemoteToolError(
                f"Tool server {self.name} request {method} failed: {exc}",
                status_code=status,
                retryable=retryable,
            ) from exc
        session = response.headers.get(_SESSION_HEADER)
        if session:
            self._session_id = session
        if notify or not response.content:
            return None
        payload = _parse_body(response)
        if payload.get("error") is not None:
            error = payload["error"]
            text = error.get("message") if isinstance(error, dict) else str(error)
            raise ToolServerError(f"{self.name}: {text}")
        return payload.get("result")

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._rpc(
            "initialize",
            {"protocolVersion": PROTOCOL_VERSION, "capabilities": {}, "clientInfo": CLIENT_INFO},
        )
        await self._rpc("notifications/initialized", notify=True)
        self._initialized = True
        log.info("[%s] connected to %s", self.name, self.url)

    async def list_tools(self) -> list[dict[str, Any]]:
        await self.initialize()
        result = await self._rpc("tools/list")
        tools = result.get("tools") if isinstance(result, dict) else None
        return [t for t in tools if isinstance(t, dict)] if isinstance(tools, list) else []

    async def call_tool(self, name: str, arguments: Mapping[str, Any] | None = None) -> dict[str, Any]:
        await self.initialize()
        result = await self._rpc("tools/call", {"name": name, "arguments": dict(arguments or {})})
        return result if isinstance(result, dict) else {"content": result}
