from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence
from uuid import uuid4

from ephemera.core.config.settings import AgentSettings
from ephemera.core.conversation.manager import CompressionError, ConversationManager, ConversationState
from ephemera.core.conversation.store import ConversationStore
from ephemera.core.errors.classification import ClassifiedError
from ephemera.core.errors.user_messages import ErrorContext, get_suggested_action, get_user_error_message, is_auth_error
from ephemera.core.infra.breaker_manager import BreakerManager, configure_breaker_manager
from ephemera.core.logging.context import log_context
from ephemera.core.logging.setup import configure_logging
from ephemera.core.mcp.tool_adapter import create_mcp_tools
from ephemera.core.models.factory import create_provider
from ephemera.core.models.messages import ConversationMessage, text_message
from ephemera.core.models.provider import LLMProvider
from ephemera.core.models.tokens import check_budget
from ephemera.core.orchestration.callbacks import StreamCallbacks
from ephemera.core.orchestration.observation_masker import mask_observations
from ephemera.core.orchestration.orchestrator import ToolOrchestrator
from ephemera.core.orchestration.safety import ToolSafetyManager
from ephemera.core.orchestration.schemas import OrchestrationMetrics, OrchestrationResult
from ephemera.core.resilience.policies import Sleep
from ephemera.core.streaming.response_handler import ResponseHandler
from ephemera.core.tools.registry import ToolRegistry

DEFAULT_SYSTEM_PROMPT = (
    "You are a debugging assistant for ephemeral preview environments. Use the available tools to "
    "inspect builds, deployments, pods and source files, then explain the root cause. When the "
    'investigation is finished, answer with a JSON object whose "type" is "investigation_complete".'
)


class QueryFailedError(RuntimeError):
    """Reported through ``on_error`` when a run stops on one of its own limits."""


@dataclass(frozen=True)
class QueryResult:
    success: bool
    response: str
    is_json: bool = False
    preamble: str | None = None
    cancelled: bool = False
    error: str | None = None
    user_message: str | None = None
    suggested_action: str | None = None
    classified_error: ClassifiedError | None = None
    metrics: OrchestrationMetrics = field(default_factory=OrchestrationMetrics)


class _ClassifyingCallbacks:
    """Routes text through the response handler; everything else goes to the host unchanged."""

    def __init__(self, inner: StreamCallbacks, handler: ResponseHandler) -> None:
        self._inner = inner
        self._handler = handler

    def on_text_chunk(self, text: str) -> None:
        self._handler.handle_chunk(text)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)


class AgentCore:
    def __init__(
        self,
        provider: LLMProvider,
        tool_registry: ToolRegistry,
        settings: AgentSettings | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        store: ConversationStore | None = None,
        excluded_tools: Iterable[str] = (),
        breaker_manager: BreakerManager | None = None,
        sleep: Sleep | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.provider = provider
        self.tool_registry = tool_registry
        self.settings = settings or AgentSettings()
        self.system_prompt = system_prompt
        self.store = store
        self.excluded_tools = frozenset(excluded_tools)
        self.logger = logger or logging.getLogger("ephemera.agent")
        self.safety_manager = ToolSafetyManager.from_settings(self.settings.safety)
        self.orchestrator = ToolOrchestrator(
            tool_registry,
            self.safety_manager,
            settings=self.settings.orchestration,
            resilience=self.settings.resilience,
            breaker_manager=breaker_manager,
            sleep=sleep,
        )
        self.conversation_manager = ConversationManager.from_settings(self.settings.memory)
        self._states: dict[str, ConversationState] = {}

    @classmethod
    def from_settings(
        cls,
        settings: AgentSettings,
        tool_registry: ToolRegistry,
        store: ConversationStore | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        excluded_tools: Iterable[str] = (),
    ) -> "AgentCore":
        """Process-level wiring: JSON logging, the shared breaker table, MCP tools and the configured provider."""
        configure_logging(settings.logging)
        mcp_tools = create_mcp_tools(settings.mcp_servers)
        tool_registry.register_many(mcp_tools)
        if mcp_tools:
            logging.getLogger("ephemera.agent").info(
                "mcp_tools_registered", extra={"extra_fields": {"tools": [tool.name for tool in mcp_tools]}}
            )
        return cls(
            create_provider(settings.provider),
            tool_registry,
            settings=settings,
            system_prompt=system_prompt,
            store=store,
            excluded_tools=excluded_tools,
            breaker_manager=configure_breaker_manager(settings.resilience),
        )

    def compression_state(self, run_id: str) -> ConversationState | None:
        return self._states.get(run_id)

    def available_tools(self) -> list[Any]:
        return self.tool_registry.filtered(lambda tool: tool.name not in self.excluded_tools)

    async def process_query(
        self,
        user_message: str,
        callbacks: StreamCallbacks,
        signal: asyncio.Event | None = None,
        history: Sequence[ConversationMessage] | None = None,
        run_id: str | None = None,
        build_uuid: str | None = None,
    ) -> QueryResult:
        run_id = run_id or uuid4().hex
        started = time.perf_counter()
        info = self.provider.model_info()
        with log_context(
            run_id=run_id, build_uuid=build_uuid, correlation_id=uuid4().hex, provider=info.provider, model=info.model
        ):
            messages = await self._load_history(run_id, history)
            self._check_prompt_budget()
            messages = await self._fit_to_budget(run_id, messages, signal)

            user = text_message("user", user_message)
            messages.append(user)
            first_new = len(messages)

            handler = ResponseHandler(callbacks, max_withhold_chars=self.settings.streaming.max_withhold_chars)
            result = await self.orchestrator.execute_tool_loop(
                self.provider,
                self.system_prompt,
                messages,
                self.available_tools(),
                _ClassifyingCallbacks(callbacks, handler),
                signal,
                build_uuid,
                max_tokens=self.settings.provider.max_tokens,
                temperature=self.settings.provider.temperature,
            )
            classified = handler.finalize()

            response = classified.response if classified.is_json else (result.response or "")
            if self.store is not None:
                await self._persist(self.store, run_id, [user, *messages[first_new:]], response if result.success else "")

            self.logger.info(
                "query_completed" if result.success else "query_failed",
                extra={
                    "extra_fields": {
                        "iterations": result.metrics.iterations,
                        "tool_calls": result.metrics.tool_calls,
                        "duration_ms": int((time.perf_counter() - started) * 1000),
                        "is_json": classified.is_json,
                        "cancelled": result.cancelled,
                    }
                },
            )
            return self._build_result(result, response, classified.is_json, classified.preamble, callbacks)

    async def _load_history(
        self, run_id: str, history: Sequence[ConversationMessage] | None
    ) -> list[ConversationMessage]:
        if history is not None:
            return list(history)
        if self.store is not None:
            return await self.store.get_messages(run_id)
        return []

    async def _fit_to_budget(
        self, run_id: str, messages: list[ConversationMessage], signal: asyncio.Event | None
    ) -> list[ConversationMessage]:
        memory = self.settings.memory
        masking = mask_observations(
            messages,
            recency_window=memory.masking_recency_window,
            token_threshold=memory.masking_token_threshold,
        )
        if masking.masked:
            self.logger.info(
                "observation_masking_applied",
                extra={
                    "extra_fields": {
                        "masked_parts": masking.stats.masked_parts,
                        "saved_tokens": masking.stats.saved_tokens,
                    }
                },
            )
            messages = masking.messages

        if not self.conversation_manager.should_compress(messages):
            return messages
        try:
            state = await self.conversation_manager.compress(
                messages, self.provider, previous_state=self._states.get(run_id), signal=signal
            )
        except CompressionError as exc:
            self.logger.warning("compression_failed", extra={"extra_fields": {"error": str(exc)}})
            return messages
        self._states[run_id] = state
        compacted = self.conversation_manager.compact(messages, state)
        self.logger.info(
            "conversation_compressed",
            extra={"extra_fields": {"from_message_count": len(messages), "to_message_count": len(compacted)}},
        )
        return compacted

    @staticmethod
    async def _persist(
        store: ConversationStore, run_id: str, exchange: list[ConversationMessage], response: str
    ) -> None:
        for message in exchange:
            await store.append_message(run_id, message)
        if response:
            await store.append_message(run_id, text_message("assistant", response))

    def _check_prompt_budget(self) -> None:
        budget = check_budget(self.system_prompt, self.provider.name)
        if budget.over_budget:
            self.logger.warning(
                "system_prompt_over_budget",
                extra={"extra_fields": {"limit": budget.limit, "used": budget.used}},
            )

    def _build_result(
        self,
        result: OrchestrationResult,
        response: str,
        is_json: bool,
        preamble: str | None,
        callbacks: StreamCallbacks,
    ) -> QueryResult:
        if result.success or result.cancelled:
            return QueryResult(
                success=result.success,
                response=response,
                is_json=is_json,
                preamble=preamble,
                cancelled=result.cancelled,
                error=result.error,
                classified_error=result.classified_error,
                metrics=result.metrics,
            )

        classified = result.classified_error
        if classified is None:
            # Limits hit by the run itself already carry a descriptive, user-safe message.
            user_message = result.error or "Something went wrong. Please try again."
            suggested_action = None
            callbacks.on_error(QueryFailedError(user_message))
        else:
            auth = is_auth_error(classified.original)
            context = ErrorContext(
                model_name=self.provider.model_info().model,
                provider_name=self.provider.name,
                retry_after=classified.retry_after,
                is_auth_error=auth,
            )
            user_message = get_user_error_message(classified.category, context)
            suggested_action = get_suggested_action(classified.category, auth)
            callbacks.on_error(classified.original)

        return QueryResult(
            success=False,
            response=response,
            is_json=is_json,
            preamble=preamble,
            error=result.error,
            user_message=user_message,
            suggested_action=suggested_action,
            classified_error=classified,
            metrics=result.metrics,
        )
