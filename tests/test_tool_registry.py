from __future__ import annotations

import pytest
from conftest import EchoTool, RaisingTool, SleepyTool

from ephemera.core.tools.base import SafetyLevel, ToolErr, ToolExecutionError, ToolOk, result_to_agent_text
from ephemera.core.tools.registry import ToolRegistry


def test_register_and_lookup() -> None:
    registry = ToolRegistry()
    echo = EchoTool()
    registry.register_many([echo, SleepyTool("restart", 0, SafetyLevel.CAUTIOUS)])

    assert registry.get("echo") is echo
    assert registry.names() == ["echo", "restart"]
    assert [t.name for t in registry.filtered(lambda t: t.safety_level is SafetyLevel.SAFE)] == ["echo"]
    assert registry.by_category("general") == registry.all()

    with pytest.raises(ValueError):
        registry.register(EchoTool())

    registry.unregister("echo")
    assert registry.get("echo") is None


async def test_execute_wraps_failures() -> None:
    registry = ToolRegistry()
    registry.register(RaisingTool(ToolExecutionError("denied", code="FORBIDDEN")))

    missing = await registry.execute("nope", {})
    failed = await registry.execute("explode", {})

    assert isinstance(missing, ToolErr) and missing.code == "TOOL_NOT_FOUND"
    assert isinstance(failed, ToolErr) and failed.code == "FORBIDDEN"


def test_agent_text_for_results() -> None:
    assert result_to_agent_text(ToolOk("plain")) == "plain"
    err = ToolErr(code="TIMEOUT", message="slow", recoverable=True, suggested_action="narrow it")
    assert result_to_agent_text(err) == (
        '{"success": false, "error": {"message": "slow", "code": "TIMEOUT", '
        '"recoverable": true, "suggestedAction": "narrow it"}}'
    )
