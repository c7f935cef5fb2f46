from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable

import httpx

from ephemera.core.tools.base import BaseTool, SafetyLevel, ToolErr, ToolResult
from ephemera.core.tools.output_limiter import OutputLimiter

from .client import McpClient, McpConnectionError, McpProtocolError, McpRpcError
from .models import McpCachedTool, McpServer, McpToolAnnotations

MCP_CONNECTION_ERROR = "MCP_CONNECTION_ERROR"
MCP_TOOL_ERROR = "MCP_TOOL_ERROR"
MCP_PROTOCOL_ERROR = "MCP_PROTOCOL_ERROR"

logger = logging.getLogger("ephemera.mcp")


def safety_from_annotations(annotations: McpToolAnnotations | None) -> SafetyLevel:
    if annotations is None:
        return SafetyLevel.CAUTIOUS
    if annotations.destructive_hint:
        return SafetyLevel.DANGEROUS
    if annotations.read_only_hint:
        return SafetyLevel.SAFE
    return SafetyLevel.CAUTIOUS


def _prefixed(description: str, level: SafetyLevel) -> str:
    if level is SafetyLevel.DANGEROUS:
        return f"[DANGEROUS] {description}"
    if level is SafetyLevel.SAFE:
        return f"[SAFE] {description}"
    return description


def extract_text_content(content: Any) -> str:
    if not isinstance(content, list):
        return content if isinstance(content, str) else json.dumps(content)
    return "\n".join(
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    )


class McpToolAdapter(BaseTool):
    """Exposes one tool of a remote MCP server as a local tool.

    Each execution opens its own session, makes a single ``tools/call`` and
    closes the session again.
    """

    category = "mcp"

    def __init__(
        self,
        server: McpServer,
        cached_tool: McpCachedTool,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = f"mcp__{server.slug}__{cached_tool.name}"
        self.safety_level = safety_from_annotations(cached_tool.annotations)
        self.description = _prefixed(
            cached_tool.description or f"MCP tool {cached_tool.name} from {server.slug}",
            self.safety_level,
        )
        self.json_schema = cached_tool.input_schema
        self.server = server
        self.original_name = cached_tool.name
        self._transport = transport

    async def execute(self, args: dict[str, Any], signal: asyncio.Event | None = None) -> ToolResult:
        if self.aborted(signal):
            return ToolErr(code="CANCELLED", message="Operation cancelled before MCP call", recoverable=False)

        client = McpClient(self.server.url, self.server.headers, self.server.timeout_s, transport=self._transport)
        try:
            try:
                await client.connect()
            except McpConnectionError as exc:
                logger.warning("mcp_connect_failed", extra={"extra_fields": {"tool": self.name, "error": str(exc)}})
                return ToolErr(
                    code=MCP_CONNECTION_ERROR,
                    message=f"Failed to connect to MCP server: {exc}",
                    recoverable=True,
                    suggested_action="MCP server may be temporarily unavailable. Try again or skip this tool.",
                )
            if self.aborted(signal):
                return ToolErr(code="CANCELLED", message="Operation cancelled before MCP call", recoverable=False)

            content, is_error = await client.call_tool(self.original_name, args)
            text = extract_text_content(content)
            if is_error:
                return ToolErr(
                    code=MCP_TOOL_ERROR,
                    message=f"MCP tool returned error: {text}",
                    recoverable=True,
                    suggested_action="Check tool arguments and try again.",
                )
            return self.success(OutputLimiter.truncate(text))
        except McpProtocolError as exc:
            logger.warning("mcp_protocol_error", extra={"extra_fields": {"tool": self.name, "error": str(exc)}})
            return ToolErr(
                code=MCP_PROTOCOL_ERROR,
                message=str(exc),
                recoverable=False,
                suggested_action="MCP server may have a compatibility issue.",
            )
        except McpRpcError as exc:
            logger.warning("mcp_tool_error", extra={"extra_fields": {"tool": self.name, "error": str(exc)}})
            return ToolErr(
                code=MCP_TOOL_ERROR,
                message=str(exc),
                recoverable=True,
                suggested_action="Check tool arguments and try again.",
            )
        except McpConnectionError as exc:
            logger.warning("mcp_call_failed", extra={"extra_fields": {"tool": self.name, "error": str(exc)}})
            return ToolErr(code=MCP_CONNECTION_ERROR, message=str(exc), recoverable=True)
        finally:
            await client.close()


def create_mcp_tools(
    servers: Iterable[McpServer], transport: httpx.AsyncBaseTransport | None = None
) -> list[McpToolAdapter]:
    return [
        McpToolAdapter(server, cached_tool, transport=transport)
        for server in servers
        if server.enabled
        for cached_tool in server.cached_tools
    ]


async def discover_tools(server: McpServer, transport: httpx.AsyncBaseTransport | None = None) -> McpServer:
    """Connects once and returns a copy of ``server`` with a fresh tool list."""
    client = McpClient(server.url, server.headers, server.timeout_s, transport=transport)
    try:
        await client.connect()
        tools = await client.list_tools()
    finally:
        await client.close()
    logger.info("mcp_tools_discovered", extra={"extra_fields": {"server": server.slug, "tool_count": len(tools)}})
    return server.model_copy(update={"cached_tools": tools})
