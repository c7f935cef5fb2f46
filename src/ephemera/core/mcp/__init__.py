from .client import McpClient, McpConnectionError, McpError, McpProtocolError, McpRpcError
from .models import McpCachedTool, McpServer, McpToolAnnotations
from .tool_adapter import McpToolAdapter, create_mcp_tools, discover_tools

__all__ = [
    "McpCachedTool",
    "McpClient",
    "McpConnectionError",
    "McpError",
    "McpProtocolError",
    "McpRpcError",
    "McpServer",
    "McpToolAdapter",
    "McpToolAnnotations",
    "create_mcp_tools",
    "discover_tools",
]
