from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from .models import McpCachedTool

PROTOCOL_VERSION = "2025-03-26"
CLIENT_INFO = {"name": "ephemera", "version": "0.1.0"}
SESSION_HEADER = "mcp-session-id"
DEFAULT_TIMEOUT_S = 30.0


class McpError(RuntimeError):
    pass


class McpConnectionError(McpError):
    """The server could not be reached or refused the session."""


class McpProtocolError(McpError):
    """The server answered with something that is not valid JSON-RPC."""


class McpRpcError(McpError):
    """The server returned a JSON-RPC error object."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code


class McpClient:
    """Minimal MCP client over the streamable HTTP transport.

    Every request is a JSON-RPC POST; the server may answer with a plain JSON
    body or with an SSE stream that carries the response as one ``data:``
    event. The session id handed out on ``initialize`` is echoed on every
    later request.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._session_id: str | None = None
        self._next_id = 0
        self.logger = logger or logging.getLogger("ephemera.mcp")

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        self._client = httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)
        try:
            await self._request(
                "initialize",
                {"protocolVersion": PROTOCOL_VERSION, "capabilities": {}, "clientInfo": CLIENT_INFO},
            )
            await self._notify("notifications/initialized")
        except McpError:
            await self.close()
            raise

    async def list_tools(self) -> list[McpCachedTool]:
        tools: list[McpCachedTool] = []
        cursor: str | None = None
        while True:
            result = await self._request("tools/list", {"cursor": cursor} if cursor else {})
            tools.extend(McpCachedTool.model_validate(tool) for tool in result.get("tools") or [])
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> tuple[Any, bool]:
        """Returns ``(content, is_error)`` as reported by the server."""
        result = await self._request("tools/call", {"name": name, "arguments": arguments})
        return result.get("content"), bool(result.get("isError", False))

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            if self._session_id is not None:
                await client.delete(self.url, headers=self._headers())
        except httpx.HTTPError as exc:
            self.logger.warning("mcp_close_failed", extra={"extra_fields": {"url": self.url, "error": str(exc)}})
        finally:
            self._session_id = None
            await client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json, text/event-stream", **self.headers}
        if self._session_id is not None:
            headers[SESSION_HEADER] = self._session_id
        return headers

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._client is None:
            raise McpConnectionError("MCP client not connected. Call connect() first.")
        try:
            response = await self._client.post(self.url, json=payload, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise McpConnectionError(f"MCP request to {self.url} failed: {exc}") from exc
        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id
        return response

    async def _notify(self, method: str) -> None:
        await self._post({"jsonrpc": "2.0", "method": method})

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        self._next_id += 1
        request_id = self._next_id
        response = await self._post({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        message = self._read_message(response, request_id)
        if "error" in message:
            error = message["error"] or {}
            raise McpRpcError(int(error.get("code", 0)), str(error.get("message", "unknown error")))
        result = message.get("result")
        if not isinstance(result, dict):
            raise McpProtocolError(f"MCP {method} response has no result object")
        return result

    @staticmethod
    def _read_message(response: httpx.Response, request_id: int) -> dict[str, Any]:
        content_type = response.headers.get("content-type", "")
        try:
            if content_type.startswith("text/event-stream"):
                for line in response.text.splitlines():
                    if not line.startswith("data:"):
                        continue
                    event = json.loads(line[len("data:") :].strip())
                    if isinstance(event, dict) and event.get("id") == request_id:
                        return event
                raise McpProtocolError(f"MCP event stream carried no response for request {request_id}")
            message = response.json()
        except json.JSONDecodeError as exc:
            raise McpProtocolError(f"MCP server sent invalid JSON: {exc}") from exc
        if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
            raise McpProtocolError("MCP server sent a message that is not JSON-RPC 2.0")
        return message
