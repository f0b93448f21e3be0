"""LLM integration layer."""

from .base import (
    AbortError,
    AuthenticationError,
    BaseLLMClient,
    ConfigurationError,
    LLMError,
    LLMResponse,
    NetworkError,
    ParseError,
    RateLimitError,
    ServerError,
    classify_http_error,
)
from .client import create_llm_client
from .gemini import GeminiLLMClient
from .ollama import OllamaLLMClient
from .openai_compatible import OpenAICompatibleLLMClient, iter_sse_content
from .retry import with_retries

__all__ = [
    "AbortError",
    "AuthenticationError",
    "BaseLLMClient",
    "ConfigurationError",
    "GeminiLLMClient",
    "LLMError",
    "LLMResponse",
    "NetworkError",
    "OllamaLLMClient",
    "OpenAICompatibleLLMClient",
    "ParseError",
    "RateLimitError",
    "ServerError",
    "classify_http_error",
    "create_llm_client",
    "iter_sse_content",
    "with_retries",
]
