from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class McpToolAnnotations(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    read_only_hint: Optional[bool] = None
    destructive_hint: Optional[bool] = None
    open_world_hint: Optional[bool] = None


class McpCachedTool(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    name: str
    description: Optional[str] = None
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    annotations: Optional[McpToolAnnotations] = None


class McpServer(BaseModel):
    """One configured MCP server and the tool list last discovered on it."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    slug: str
    name: str = ""
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_s: float = 30.0
    enabled: bool = True
    cached_tools: list[McpCachedTool] = Field(default_factory=list)
