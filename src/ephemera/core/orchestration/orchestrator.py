from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Sequence
from uuid import uuid4

from ephemera.core.config.settings import OrchestrationSettings, ResilienceSettings
from ephemera.core.errors.classification import ClassifiedError, ErrorCategory
from ephemera.core.errors.provider_errors import RunCancelledError, StreamInterruptedError, create_classified_error
from ephemera.core.errors.retry_budget import RetryBudget
from ephemera.core.infra.breaker_manager import BreakerManager, CircuitOpenError
from ephemera.core.logging.context import log_context
from ephemera.core.models.messages import ConversationMessage, MessagePart, TextPart, ToolCallPart, ToolResultPart
from ephemera.core.models.provider import (
    CompletionOptions,
    LLMProvider,
    StreamChannel,
    TextFrame,
    ToolCallBatchFrame,
    UsageFrame,
)
from ephemera.core.models.tool_calling import ToolCall
from ephemera.core.resilience.policies import Sleep, create_provider_policy
from ephemera.core.tools.base import Tool, ToolErr, ToolResult
from ephemera.core.tools.registry import ToolRegistry

from .callbacks import StreamCallbacks
from .loop_protection import LoopDetector
from .safety import ToolSafetyManager
from .schemas import OrchestrationMetrics, OrchestrationResult

CANCELLED_MESSAGE = "Operation cancelled by user"
CIRCUIT_OPEN_MESSAGE = "Provider circuit breaker is open"


@dataclass
class _Turn:
    text: str = ""
    calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class _RunState:
    started: float = field(default_factory=time.perf_counter)
    iterations: int = 0
    tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    response: str = ""

    def metrics(self) -> OrchestrationMetrics:
        return OrchestrationMetrics(
            iterations=self.iterations,
            tool_calls=self.tool_calls,
            duration_ms=int((time.perf_counter() - self.started) * 1000),
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class ToolOrchestrator:
    """Drives one multi-turn tool-calling conversation with an LLM provider.

    Each iteration streams a single completion. A turn without tool calls ends
    the run; otherwise the whole batch runs concurrently through the safety
    manager, results are appended to ``messages`` and the loop continues.
    """

    def __init__(
        self,
        tool_registry: ToolRegistry,
        safety_manager: ToolSafetyManager,
        settings: OrchestrationSettings | None = None,
        resilience: ResilienceSettings | None = None,
        breaker_manager: BreakerManager | None = None,
        sleep: Sleep | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.tool_registry = tool_registry
        self.safety_manager = safety_manager
        self.settings = settings or OrchestrationSettings()
        self.resilience = resilience or ResilienceSettings()
        self.breaker_manager = breaker_manager
        self.sleep = sleep
        self.logger = logger or logging.getLogger("ephemera.orchestrator")

    def _new_loop_detector(self) -> LoopDetector:
        return LoopDetector(
            max_iterations=self.settings.max_iterations,
            max_tool_calls=self.settings.max_tool_calls,
            max_repeated_calls=self.settings.max_repeated_calls,
            lookback_iterations=self.settings.loop_lookback_iterations,
        )

    async def execute_tool_loop(
        self,
        provider: LLMProvider,
        system_prompt: str,
        messages: list[ConversationMessage],
        tools: Sequence[Tool],
        callbacks: StreamCallbacks,
        signal: asyncio.Event | None = None,
        build_uuid: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> OrchestrationResult:
        with log_context(provider=provider.name, build_uuid=build_uuid):
            return await self._run(
                provider,
                messages,
                CompletionOptions(system_prompt=system_prompt, tools=tuple(tools), max_tokens=max_tokens, temperature=temperature),
                callbacks,
                signal,
            )

    async def _run(
        self,
        provider: LLMProvider,
        messages: list[ConversationMessage],
        options: CompletionOptions,
        callbacks: StreamCallbacks,
        signal: asyncio.Event | None,
    ) -> OrchestrationResult:
        state = _RunState()
        detector = self._new_loop_detector()
        budget = RetryBudget(self.settings.retry_budget)
        offered = frozenset(tool.name for tool in options.tools)
        policy = create_provider_policy(
            provider.name,
            budget,
            settings=self.resilience,
            breaker_manager=self.breaker_manager,
            sleep=self.sleep,
        )

        while state.iterations < detector.max_iterations:
            if signal is not None and signal.is_set():
                return self._cancelled(state)

            state.iterations += 1
            iteration_started = time.perf_counter()
            try:
                turn = await policy.execute(lambda: self._stream_turn(provider, messages, options, callbacks, signal))
            except RunCancelledError:
                return self._cancelled(state)
            except CircuitOpenError as exc:
                self.logger.warning("circuit_rejected_run", extra={"extra_fields": {"provider": provider.name}})
                return OrchestrationResult(
                    success=False,
                    error=CIRCUIT_OPEN_MESSAGE,
                    classified_error=ClassifiedError(
                        category=ErrorCategory.TRANSIENT,
                        original=exc,
                        provider_name=provider.name,
                    ),
                    metrics=state.metrics(),
                )
            except Exception as exc:
                return self._stream_failure(provider, state, exc, budget)

            state.response += turn.text
            state.input_tokens += turn.input_tokens
            state.output_tokens += turn.output_tokens
            think_time_ms = _elapsed_ms(iteration_started)

            if not turn.calls:
                return OrchestrationResult(success=True, response=state.response, metrics=state.metrics())

            state.tool_calls += len(turn.calls)
            if state.tool_calls > detector.max_tool_calls:
                self.logger.warning(
                    "tool_call_limit_exceeded",
                    extra={"extra_fields": {"total_tool_calls": state.tool_calls, "max_tool_calls": detector.max_tool_calls}},
                )
                return OrchestrationResult(
                    success=False,
                    error=(
                        f"Tool call limit exceeded ({detector.max_tool_calls}). "
                        "The investigation is too broad. Try asking about specific services."
                    ),
                    metrics=state.metrics(),
                )

            if signal is not None and signal.is_set():
                return self._cancelled(state)

            await self._execute_batch(
                turn, state.iterations, think_time_ms, messages, detector, offered, callbacks, signal
            )

        self.logger.warning(
            "iteration_limit_reached",
            extra={
                "extra_fields": {
                    "iterations": state.iterations,
                    "max_iterations": detector.max_iterations,
                    "total_tool_calls": state.tool_calls,
                }
            },
        )
        return OrchestrationResult(
            success=False,
            error=(
                f"Investigation incomplete - hit iteration limit ({detector.max_iterations}). "
                "This may indicate the issue is complex or unclear from available data."
            ),
            metrics=state.metrics(),
        )

    async def _stream_turn(
        self,
        provider: LLMProvider,
        messages: Sequence[ConversationMessage],
        options: CompletionOptions,
        callbacks: StreamCallbacks,
        signal: asyncio.Event | None,
    ) -> _Turn:
        turn = _Turn()
        emitted: list[str] = []
        try:
            async with StreamChannel(provider.stream_completion(list(messages), options, signal), signal) as channel:
                async for frame in channel:
                    if isinstance(frame, TextFrame):
                        if frame.text:
                            emitted.append(frame.text)
                            callbacks.on_text_chunk(frame.text)
                    elif isinstance(frame, ToolCallBatchFrame):
                        turn.calls.extend(frame.calls)
                    elif isinstance(frame, UsageFrame):
                        turn.input_tokens += frame.input_tokens
                        turn.output_tokens += frame.output_tokens
        except RunCancelledError:
            raise
        except Exception as exc:
            if emitted:
                raise StreamInterruptedError(exc, "".join(emitted)) from exc
            raise
        turn.text = "".join(emitted)
        return turn

    def _stream_failure(
        self,
        provider: LLMProvider,
        state: _RunState,
        exc: Exception,
        budget: RetryBudget,
    ) -> OrchestrationResult:
        cause: BaseException = exc
        partial = state.response
        if isinstance(exc, StreamInterruptedError):
            cause = exc.original
            partial += exc.partial_text

        classified = create_classified_error(provider.name, cause)
        if partial:
            self.logger.warning(
                "stream_interrupted",
                extra={"extra_fields": {"partial_text_len": len(partial), "error": str(cause)}},
            )
            return OrchestrationResult(
                success=True,
                response=partial,
                error=f"Stream interrupted: {cause}",
                classified_error=classified,
                metrics=state.metrics(),
            )

        self.logger.error(
            "stream_error",
            extra={
                "extra_fields": {
                    "error": str(cause),
                    "category": classified.category.value,
                    "budget_used": budget.used,
                }
            },
        )
        return OrchestrationResult(
            success=False,
            error=str(cause) or "Provider error",
            classified_error=classified,
            metrics=state.metrics(),
        )

    def _cancelled(self, state: _RunState) -> OrchestrationResult:
        return OrchestrationResult(success=False, error=CANCELLED_MESSAGE, cancelled=True, metrics=state.metrics())

    async def _execute_batch(
        self,
        turn: _Turn,
        iteration: int,
        think_time_ms: int,
        messages: list[ConversationMessage],
        detector: LoopDetector,
        offered: frozenset[str],
        callbacks: StreamCallbacks,
        signal: asyncio.Event | None,
    ) -> None:
        calls = turn.calls
        call_parts = [
            ToolCallPart(
                tool_call_id=call.id or uuid4().hex,
                name=call.name,
                arguments=dict(call.arguments),
                metadata=call.metadata,
            )
            for call in calls
        ]
        assistant_parts: list[MessagePart] = [TextPart(content=turn.text)] if turn.text else []
        assistant_parts.extend(call_parts)
        messages.append(ConversationMessage(role="assistant", parts=tuple(assistant_parts)))

        results: dict[int, ToolResult] = {}
        durations: list[int] = [0] * len(calls)
        loop_detected: set[int] = set()

        # Calls are checked and recorded one at a time, so a duplicate later in the same batch is caught too.
        for index, call in enumerate(calls):
            repeats = detector.count_repeated_calls(call.name, call.arguments, iteration)
            if repeats >= detector.max_repeated_calls:
                results[index] = ToolErr(
                    code="LOOP_DETECTED",
                    message=(
                        f"This tool has been called {repeats} times with the same arguments. "
                        "This suggests a loop. Please try a different approach."
                    ),
                    recoverable=False,
                    suggested_action=detector.get_loop_hint(call.name, call.arguments),
                )
                loop_detected.add(index)
                self.logger.warning(
                    "loop_detected",
                    extra={"extra_fields": {"tool": call.name, "repeats": repeats, "iteration": iteration}},
                )
                continue
            detector.record_call(call.name, call.arguments, iteration)
            callbacks.on_tool_call(call.name, call.arguments, call_parts[index].tool_call_id)

        to_execute = [index for index in range(len(calls)) if index not in loop_detected]

        if to_execute:
            callbacks.on_activity(
                {"type": "tools_executing", "iteration": iteration, "tools": [calls[i].name for i in to_execute]}
            )
            self.logger.info(
                "tools_executing",
                extra={"extra_fields": {"tools": [calls[i].name for i in to_execute], "iteration": iteration}},
            )

        settled = await asyncio.gather(
            *(self._dispatch(calls[index], offered, callbacks, signal) for index in to_execute),
            return_exceptions=True,
        )
        for index, outcome in zip(to_execute, settled):
            if isinstance(outcome, BaseException):
                self.logger.error(
                    "tool_crashed",
                    extra={"extra_fields": {"tool": calls[index].name, "error": str(outcome)}},
                )
                results[index] = ToolErr(code="EXECUTION_ERROR", message=str(outcome) or "Unknown error", recoverable=True)
                continue
            results[index], durations[index] = outcome

        result_parts: list[ToolResultPart] = []
        for index, call in enumerate(calls):
            result = results[index]
            tool_ms = durations[index]
            total_ms = think_time_ms + tool_ms if index == 0 else tool_ms
            callbacks.on_tool_result(result, call.name, call.arguments, tool_ms, total_ms, call_parts[index].tool_call_id)
            self._log_result(call, result, tool_ms)
            result_parts.append(ToolResultPart(tool_call_id=call_parts[index].tool_call_id, name=call.name, result=result))

        # Provider APIs expect tool results to come back on the user side of the exchange.
        messages.append(ConversationMessage(role="user", parts=tuple(result_parts)))

    async def _dispatch(
        self,
        call: ToolCall,
        offered: frozenset[str],
        callbacks: StreamCallbacks,
        signal: asyncio.Event | None,
    ) -> tuple[ToolResult, int]:
        if signal is not None and signal.is_set():
            return ToolErr(code="CANCELLED", message="Operation cancelled during tool execution", recoverable=False), 0
        tool = self.tool_registry.get(call.name) if call.name in offered else None
        if tool is None:
            return ToolErr(code="TOOL_NOT_FOUND", message=f"Tool not found: {call.name}", recoverable=False), 0
        started = time.perf_counter()
        result = await self.safety_manager.safe_execute(tool, dict(call.arguments), callbacks, signal)
        return result, _elapsed_ms(started)

    def _log_result(self, call: ToolCall, result: ToolResult, duration_ms: int) -> None:
        fields: dict[str, Any] = {"tool": call.name, "duration_ms": duration_ms, "success": result.success}
        if isinstance(result, ToolErr):
            fields.update(code=result.code, error=result.message)
            self.logger.warning("tool_failed", extra={"extra_fields": fields})
        else:
            self.logger.info("tool_completed", extra={"extra_fields": fields})
