"""Base abstract class for LLM providers and the provider error taxonomy."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Dict, List, Optional, TypeVar

import httpx
from pydantic import BaseModel

from nexus_engine.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


ERROR_MESSAGES = {
    "api_key_missing": "API key for {provider} is not configured. Please check your settings.",
    "model_missing": "Model name for {provider} is not configured. Please set it in your settings.",
    "api_key_invalid": "Invalid API key for {provider}. Please verify your credentials.",
    "rate_limit": "Rate limit exceeded for {provider}. Please wait before trying again.",
    "not_found": "Model not found or API endpoint is incorrect for {provider}.",
    "network": "Network error. Please check your internet connection.",
    "unknown": "An unexpected error occurred. Please try again.",
}


class LLMResponse(BaseModel):
    """LLM response model."""
    content: str
    model: str
    finish_reason: Optional[str] = None


class LLMError(Exception):
    """Base exception for LLM operations."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ConfigurationError(LLMError):
    """Missing API key or model name; raised before any network call."""
    pass


class AuthenticationError(LLMError):
    """Provider rejected the credentials (401/403)."""
    pass


class RateLimitError(LLMError):
    """Provider throttled the request (429)."""
    pass


class ServerError(LLMError):
    """Transient provider failure (5xx). The only retryable kind."""
    pass


class NetworkError(LLMError):
    """Connection-level failure before a response was received."""
    pass


class AbortError(LLMError):
    """The user cancelled the request. Not a failure."""
    pass


class ParseError(LLMError):
    """Provider returned JSON that could not be parsed or had the wrong shape."""
    pass


def classify_http_error(status: int, body: str, provider: str) -> LLMError:
    """Map an HTTP error status to the matching taxonomy error."""
    if status in (401, 403):
        return AuthenticationError(ERROR_MESSAGES["api_key_invalid"].format(provider=provider), status)
    if status == 429:
        return RateLimitError(ERROR_MESSAGES["rate_limit"].format(provider=provider), status)
    if status == 404:
        return LLMError(ERROR_MESSAGES["not_found"].format(provider=provider), status)
    if 500 <= status < 600:
        return ServerError(f"Server error: {status}", status)
    return LLMError(f"API request failed with status {status}: {body}", status)


async def race_cancellation(awaitable: Awaitable[T], cancel_token: Optional[CancellationToken]) -> T:
    """
    Await ``awaitable`` unless the token is cancelled first.

    The losing call is cancelled, which closes whatever network resource it
    held.

    Raises:
        AbortError: The token fired before the call finished
    """
    if cancel_token is None:
        return await awaitable

    call = asyncio.ensure_future(awaitable)
    if cancel_token.cancelled:
        call.cancel()
        await asyncio.gather(call, return_exceptions=True)
        raise AbortError(cancel_token.reason or "Request cancelled.")

    waiter = asyncio.ensure_future(cancel_token.wait())
    try:
        done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not call.done():
            call.cancel()
            await asyncio.gather(call, return_exceptions=True)

    if call in done:
        return call.result()
    raise AbortError(cancel_token.reason or "Request cancelled.")


async def _next_item(iterator: AsyncIterator[T]):
    try:
        return True, await iterator.__anext__()
    except StopAsyncIteration:
        return False, None


async def iter_until_cancelled(
    iterator: AsyncIterator[T],
    cancel_token: Optional[CancellationToken],
) -> AsyncIterator[T]:
    """
    Yield from ``iterator``, ending as soon as the token fires.

    Each read is raced against the token, so a stalled stream ends on
    cancel instead of waiting for its next item.
    """
    while True:
        try:
            has_item, item = await race_cancellation(_next_item(iterator), cancel_token)
        except AbortError:
            logger.info("Stream read interrupted by cancellation")
            return
        if not has_item:
            return
        yield item


class BaseLLMClient(ABC):
    """
    Abstract base class for LLM provider clients.

    Providers implement the chat-history calls; the single-prompt
    ``generate`` helper is built on top of ``generate_with_history``.
    """

    provider_name = "llm"
    requires_api_key = False

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float,
        temperature: float,
        max_tokens: int,
        api_key: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize LLM client.

        Args:
            base_url: Base URL for the LLM provider
            model: Default model identifier
            timeout: Request timeout in seconds (not applied to stream reads)
            temperature: Default sampling temperature
            max_tokens: Default maximum tokens to generate (0 = provider default)
            api_key: Bearer key for providers that need one
            http_client: Injected client, mainly for tests
        """
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, read=None)
        )

    def ensure_configured(self, model: Optional[str] = None) -> str:
        """
        Fail fast on missing configuration.

        Returns:
            The model that will be used

        Raises:
            ConfigurationError: If the model name or a required API key is missing
        """
        used_model = model if model is not None else self.model
        if not used_model or not used_model.strip():
            raise ConfigurationError(ERROR_MESSAGES["model_missing"].format(provider=self.provider_name))
        if self.requires_api_key and not self.api_key:
            raise ConfigurationError(ERROR_MESSAGES["api_key_missing"].format(provider=self.provider_name))
        return used_model

    async def _raise_for_status(self, response: httpx.Response) -> None:
        """Raise the taxonomy error for a non-2xx response."""
        if response.is_success:
            return
        try:
            body = (await response.aread()).decode('utf-8', errors='replace')
        except httpx.HTTPError:
            body = "(Could not read error body)"
        logger.error(f"{self.provider_name} request failed: {response.status_code} {body[:500]}")
        raise classify_http_error(response.status_code, body, self.provider_name)

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the LLM provider is available and responding.

        Returns:
            True if provider is healthy, False otherwise
        """
        pass

    @abstractmethod
    async def generate_with_history(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Generate a non-streaming completion with conversation history.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Override default temperature
            max_tokens: Override default max tokens
            model: Override default model
            json_mode: Ask the provider for a JSON object reply

        Returns:
            LLMResponse with generated content

        Raises:
            LLMError: If generation fails
        """
        pass

    @abstractmethod
    def stream_with_history(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """
        Stream completion text fragments with conversation history.

        Every read races the token; once cancelled the stream is closed
        and iteration ends without an error, even if the provider stalls.

        Yields:
            Content chunks as they are generated

        Raises:
            LLMError: If streaming fails
        """
        pass

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Single-prompt convenience wrapper over ``generate_with_history``."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return await self.generate_with_history(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            model=model,
            json_mode=json_mode,
        )

    async def close(self) -> None:
        """Close the HTTP client. Can be overridden if needed."""
        await self.client.aclose()
