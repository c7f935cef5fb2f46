from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable

from ephemera.core.tools.base import Tool, ToolErr, ToolExecutionError, ToolResult


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool {tool.name} already registered")
        self._tools[tool.name] = tool

    def register_many(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def all(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return sorted(self._tools.keys())

    def by_category(self, category: str) -> list[Tool]:
        return [tool for tool in self._tools.values() if tool.category == category]

    def filtered(self, predicate: Callable[[Tool], bool]) -> list[Tool]:
        return [tool for tool in self._tools.values() if predicate(tool)]

    async def execute(self, name: str, args: dict[str, Any], signal: asyncio.Event | None = None) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            return ToolErr(code="TOOL_NOT_FOUND", message=f"Tool not found: {name}", recoverable=False)
        try:
            return await tool.execute(args, signal)
        except Exception as exc:
            return ToolErr(
                code=exc.code if isinstance(exc, ToolExecutionError) else "TOOL_EXECUTION_ERROR",
                message=str(exc) or "Unknown error",
                recoverable=True,
                suggested_action="Check tool arguments and try again",
            )
