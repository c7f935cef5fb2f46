from .settings import (
    AgentSettings,
    LoggingSettings,
    MemorySettings,
    OrchestrationSettings,
    ProviderSettings,
    ResilienceSettings,
    SafetySettings,
    StreamingSettings,
    load_settings,
)

__all__ = [
    "AgentSettings",
    "LoggingSettings",
    "MemorySettings",
    "OrchestrationSettings",
    "ProviderSettings",
    "ResilienceSettings",
    "SafetySettings",
    "StreamingSettings",
    "load_settings",
]
