from __future__ import annotations

from ephemera.core.config.settings import ProviderSettings

from .llm_anthropic import AnthropicProvider
from .llm_gemini import GeminiProvider
from .llm_openai import OpenAIProvider
from .llm_openai_compat import OpenAICompatProvider
from .provider import LLMProvider

DEFAULT_MODELS = {
    "anthropic": "claude-3-5-sonnet-latest",
    "openai": "gpt-4o",
    "gemini": "gemini-2.5-flash",
    "vllm": "zai-org/GLM-4.7",
}
DEFAULT_VLLM_URL = "http://127.0.0.1:8001/v1/chat/completions"


def create_provider(settings: ProviderSettings | None = None) -> LLMProvider:
    settings = settings or ProviderSettings()
    model = settings.model or DEFAULT_MODELS[settings.name]
    if settings.name == "anthropic":
        return AnthropicProvider(
            model=model,
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout_s=settings.timeout_s,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )
    if settings.name == "openai":
        return OpenAIProvider(
            model=model,
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout_s=settings.timeout_s,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )
    if settings.name == "gemini":
        return GeminiProvider(
            model=model,
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout_s=settings.timeout_s,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )
    if settings.name == "vllm":
        return OpenAICompatProvider(
            url=settings.base_url or DEFAULT_VLLM_URL,
            model=model,
            timeout_s=settings.timeout_s,
            api_key=settings.api_key,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
        )
    raise ValueError(f"Unknown LLM provider: {settings.name}")
