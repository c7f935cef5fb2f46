"""Runtime settings for the agent: YAML file first, EPHEMERA_* environment overrides on top."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from ephemera.core.mcp.models import McpServer


class OrchestrationSettings(BaseModel):
    max_iterations: int = 20
    max_tool_calls: int = 50
    max_repeated_calls: int = 1
    loop_lookback_iterations: int = 5
    retry_budget: int = 10


class SafetySettings(BaseModel):
    require_confirmation: bool = True
    tool_timeout_s: float = 30.0
    tool_output_max_chars: int = 30000


class ResilienceSettings(BaseModel):
    breakers_enabled: bool = True
    breaker_failure_threshold: int = 5
    breaker_open_seconds: int = 30
    breaker_half_open_max_trials: int = 1
    max_attempts_per_call: int = 3
    max_retry_after_s: int = 300
    fallback_backoff_base_s: float = 0.0
    fallback_backoff_max_s: float = 10.0


class MemorySettings(BaseModel):
    compression_threshold_tokens: int = 80000
    compression_max_tokens: int = 2000
    masking_token_threshold: int = 25000
    masking_recency_window: int = 3


class StreamingSettings(BaseModel):
    max_withhold_chars: int = 4000


class ProviderSettings(BaseModel):
    name: Literal["anthropic", "openai", "gemini", "vllm"] = "anthropic"
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout_s: float = 120.0
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class LoggingSettings(BaseModel):
    level: str = "INFO"
    to_file: bool = False
    log_dir: Optional[str] = None
    max_bytes: int = 5_000_000
    backup_count: int = 5


class AgentSettings(BaseModel):
    orchestration: OrchestrationSettings = Field(default_factory=OrchestrationSettings)
    safety: SafetySettings = Field(default_factory=SafetySettings)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    streaming: StreamingSettings = Field(default_factory=StreamingSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    mcp_servers: list[McpServer] = Field(default_factory=list)


# env var -> (section, field, parser)
_ENV_OVERRIDES: dict[str, tuple[str, str, str]] = {
    "EPHEMERA_MAX_ITERATIONS": ("orchestration", "max_iterations", "int"),
    "EPHEMERA_MAX_TOOL_CALLS": ("orchestration", "max_tool_calls", "int"),
    "EPHEMERA_MAX_REPEATED_CALLS": ("orchestration", "max_repeated_calls", "int"),
    "EPHEMERA_RETRY_BUDGET": ("orchestration", "retry_budget", "int"),
    "EPHEMERA_REQUIRE_TOOL_CONFIRMATION": ("safety", "require_confirmation", "bool"),
    "EPHEMERA_TOOL_TIMEOUT_S": ("safety", "tool_timeout_s", "float"),
    "EPHEMERA_TOOL_OUTPUT_MAX_CHARS": ("safety", "tool_output_max_chars", "int"),
    "EPHEMERA_BREAKERS_ENABLED": ("resilience", "breakers_enabled", "bool"),
    "EPHEMERA_BREAKER_FAILURE_THRESHOLD": ("resilience", "breaker_failure_threshold", "int"),
    "EPHEMERA_BREAKER_OPEN_SECONDS": ("resilience", "breaker_open_seconds", "int"),
    "EPHEMERA_BREAKER_HALFOPEN_MAX_TRIALS": ("resilience", "breaker_half_open_max_trials", "int"),
    "EPHEMERA_COMPRESSION_THRESHOLD_TOKENS": ("memory", "compression_threshold_tokens", "int"),
    "EPHEMERA_MASKING_TOKEN_THRESHOLD": ("memory", "masking_token_threshold", "int"),
    "EPHEMERA_LLM_PROVIDER": ("provider", "name", "str"),
    "EPHEMERA_LLM_MODEL": ("provider", "model", "str"),
    "EPHEMERA_LLM_API_KEY": ("provider", "api_key", "str"),
    "EPHEMERA_LLM_BASE_URL": ("provider", "base_url", "str"),
    "EPHEMERA_LOG_LEVEL": ("logging", "level", "str"),
    "EPHEMERA_LOG_TO_FILE": ("logging", "to_file", "bool"),
    "EPHEMERA_LOG_DIR": ("logging", "log_dir", "str"),
}


def _parse_env(raw: str, kind: str) -> Any:
    if kind == "int":
        return int(raw)
    if kind == "float":
        return float(raw)
    if kind == "bool":
        return raw.strip().casefold() in {"1", "on", "true", "yes"}
    return raw


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    for name, (section, field, kind) in _ENV_OVERRIDES.items():
        raw = os.getenv(name)
        if raw is None:
            continue
        try:
            value = _parse_env(raw, kind)
        except ValueError:
            continue
        data.setdefault(section, {})[field] = value
    return data


def load_settings(path: str | Path | None = None) -> AgentSettings:
    data: dict[str, Any] = {}
    if path is not None:
        with Path(path).open("r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"settings file {path} must contain a mapping")
        data = loaded
    return AgentSettings.model_validate(_apply_env_overrides(data))
