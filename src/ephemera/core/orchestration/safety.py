from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any

from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

from ephemera.core.config.settings import SafetySettings
from ephemera.core.logging.redact import redact_args
from ephemera.core.tools.base import ConfirmationDetails, SafetyLevel, Tool, ToolErr, ToolExecutionError, ToolOk, ToolResult
from ephemera.core.tools.output_limiter import OutputLimiter

from .callbacks import StreamCallbacks

TIMEOUT_SUGGESTION = "The operation took too long. Try narrowing your query."


def _format_seconds(seconds: float) -> str:
    return f"{seconds:g}"


class ToolSafetyManager:
    """Gatekeeper around every tool invocation.

    Order of checks: argument schema, confirmation policy, then execution under
    a hard timeout. Successful output is truncated to ``tool_output_max_chars``.
    Failures come back as ``ToolErr`` values, never as exceptions.
    """

    def __init__(
        self,
        require_confirmation: bool = True,
        tool_timeout_s: float = 30.0,
        tool_output_max_chars: int = 30000,
        logger: logging.Logger | None = None,
    ) -> None:
        self.require_confirmation = require_confirmation
        self.tool_timeout_s = tool_timeout_s
        self.tool_output_max_chars = tool_output_max_chars
        self.logger = logger or logging.getLogger("ephemera.safety")

    @classmethod
    def from_settings(cls, settings: SafetySettings, logger: logging.Logger | None = None) -> "ToolSafetyManager":
        return cls(
            require_confirmation=settings.require_confirmation,
            tool_timeout_s=settings.tool_timeout_s,
            tool_output_max_chars=settings.tool_output_max_chars,
            logger=logger,
        )

    async def safe_execute(
        self,
        tool: Tool,
        args: dict[str, Any],
        callbacks: StreamCallbacks,
        signal: asyncio.Event | None = None,
    ) -> ToolResult:
        errors = self.validate_args(tool.json_schema, args)
        if errors:
            result: ToolResult = ToolErr(
                code="INVALID_ARGUMENTS",
                message=f"Invalid arguments: {', '.join(errors)}",
                recoverable=True,
            )
            self._log_failure(tool.name, args, result)
            return result

        if self.needs_confirmation(tool):
            details = await self._confirmation_details(tool, args)
            if details:
                handler = getattr(callbacks, "on_tool_confirmation", None)
                if handler is None:
                    result = ToolErr(
                        code="NO_CONFIRMATION_HANDLER",
                        message=(
                            "This operation requires user confirmation, but the confirmation system is not "
                            "available. Please implement on_tool_confirmation callback."
                        ),
                        recoverable=False,
                    )
                    self._log_failure(tool.name, args, result)
                    return result
                if not await handler(details):
                    result = ToolErr(code="USER_CANCELLED", message="Operation cancelled by user", recoverable=False)
                    self._log_failure(tool.name, args, result)
                    return result

        try:
            result = await asyncio.wait_for(tool.execute(args, signal), timeout=self.tool_timeout_s)
        except asyncio.TimeoutError:
            result = ToolErr(
                code="TIMEOUT",
                message=f"{tool.name} timed out after {_format_seconds(self.tool_timeout_s)} seconds",
                recoverable=True,
                suggested_action=TIMEOUT_SUGGESTION,
            )
        except ToolExecutionError as exc:
            result = ToolErr(code=exc.code, message=str(exc) or "Unknown error", recoverable=exc.recoverable)
        except Exception as exc:
            code = getattr(exc, "code", None)
            result = ToolErr(
                code=code if isinstance(code, str) and code else "EXECUTION_ERROR",
                message=str(exc) or "Unknown error",
                recoverable=True,
            )

        if isinstance(result, ToolOk):
            if result.agent_content:
                result = dataclasses.replace(
                    result,
                    agent_content=OutputLimiter.truncate(result.agent_content, self.tool_output_max_chars),
                )
            return result

        self._log_failure(tool.name, args, result)
        return result

    def needs_confirmation(self, tool: Tool) -> bool:
        if tool.safety_level == SafetyLevel.DANGEROUS:
            return True
        if not self.require_confirmation:
            return False
        return tool.safety_level == SafetyLevel.CAUTIOUS

    @staticmethod
    async def _confirmation_details(tool: Tool, args: dict[str, Any]) -> ConfirmationDetails | None:
        hook = getattr(tool, "should_confirm_execution", None)
        if hook is None:
            return ConfirmationDetails(
                title=f"Run {tool.name}",
                description=tool.description or tool.name,
                impact=f"{tool.safety_level.value} operation",
            )
        return await hook(args)

    @staticmethod
    def validate_args(schema: dict[str, Any] | None, args: dict[str, Any]) -> list[str]:
        if not schema:
            return []
        validator_cls = validator_for(schema)
        try:
            validator_cls.check_schema(schema)
        except SchemaError as exc:
            return [f"tool schema is invalid: {exc.message}"]
        validator = validator_cls(schema)
        found = sorted(validator.iter_errors(args), key=lambda e: [str(p) for p in e.absolute_path])
        return [error.message or "Validation error" for error in found]

    def _log_failure(self, name: str, args: dict[str, Any], result: ToolErr) -> None:
        level = logging.WARNING if result.recoverable else logging.ERROR
        self.logger.log(
            level,
            "tool_error",
            extra={
                "extra_fields": {
                    "tool": name,
                    "code": result.code,
                    "error": result.message,
                    "recoverable": result.recoverable,
                    "args": redact_args(args),
                }
            },
        )
