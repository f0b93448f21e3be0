"""LLM client factory."""

from typing import TYPE_CHECKING

from .base import BaseLLMClient
from .gemini import GeminiLLMClient
from .ollama import OllamaLLMClient
from .openai_compatible import OpenAICompatibleLLMClient

if TYPE_CHECKING:
    from nexus_engine.config.models import LLMConfig


_PROVIDER_LABELS = {
    "openai-compatible": "OpenAI-compatible",
    "openrouter": "OpenRouter",
    "deepseek": "DeepSeek",
}


def create_llm_client(config: "LLMConfig") -> BaseLLMClient:
    """
    Factory function to create appropriate LLM client based on provider.

    Missing model/key is not checked here; it surfaces as a
    ConfigurationError on the first call, before any request is sent.

    Raises:
        ValueError: If provider is unknown
    """
    provider = config.provider.lower()

    common = dict(
        base_url=config.resolved_base_url,
        model=config.model,
        timeout=config.timeout_seconds,
        temperature=config.temperature,
        max_tokens=config.max_response_tokens,
    )

    if provider == "gemini":
        return GeminiLLMClient(api_key=config.resolved_api_key, **common)

    if provider == "ollama":
        return OllamaLLMClient(**common)

    if provider in _PROVIDER_LABELS:
        return OpenAICompatibleLLMClient(
            api_key=config.resolved_api_key,
            provider_name=_PROVIDER_LABELS[provider],
            **common,
        )

    raise ValueError(
        f"Unknown LLM provider: '{provider}'. "
        f"Supported providers: ollama, gemini, {', '.join(_PROVIDER_LABELS)}"
    )
