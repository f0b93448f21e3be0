"""Google Gemini client implementation (google-genai SDK, async API)."""

import logging
from contextlib import aclosing
from typing import AsyncIterator, Dict, List, Optional, Tuple

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from nexus_engine.utils.cancellation import CancellationToken
from .base import (
    AbortError,
    BaseLLMClient,
    ERROR_MESSAGES,
    LLMError,
    LLMResponse,
    NetworkError,
    ParseError,
    classify_http_error,
    iter_until_cancelled,
    race_cancellation,
)

logger = logging.getLogger(__name__)


def to_gemini_contents(messages: List[Dict[str, str]]) -> Tuple[Optional[str], List[types.Content]]:
    """
    Split chat messages into a system instruction and Gemini contents.

    System messages are joined into the instruction; assistant turns use
    the ``model`` role, so a trailing prefill stays a model turn.
    """
    system_parts = []
    contents = []
    for message in messages:
        if message["role"] == "system":
            system_parts.append(message["content"])
            continue
        role = "model" if message["role"] == "assistant" else "user"
        contents.append(types.Content(role=role, parts=[types.Part(text=message["content"])]))
    system_instruction = "\n\n".join(system_parts) if system_parts else None
    return system_instruction, contents


class GeminiLLMClient(BaseLLMClient):
    """Client for the Gemini API through the google-genai SDK."""

    provider_name = "Gemini"
    requires_api_key = True

    def __init__(self, *args, genai_client: Optional[genai.Client] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._sdk = genai_client

    @property
    def sdk(self) -> genai.Client:
        if self._sdk is None:
            self._sdk = genai.Client(api_key=self.api_key)
        return self._sdk

    def _build_config(
        self,
        system_instruction: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
        json_mode: bool = False,
    ) -> types.GenerateContentConfig:
        options = {
            "temperature": temperature if temperature is not None else self.temperature,
            "system_instruction": system_instruction,
        }
        tokens = max_tokens if max_tokens is not None else self.max_tokens
        if tokens and tokens > 0:
            options["max_output_tokens"] = tokens
        if json_mode:
            options["response_mime_type"] = "application/json"
        return types.GenerateContentConfig(**options)

    def _map_error(self, error: Exception) -> LLMError:
        if isinstance(error, genai_errors.APIError):
            message = error.message or str(error)
            logger.error(f"Gemini request failed: {error.code} {message[:500]}")
            return classify_http_error(error.code, message, self.provider_name)
        logger.error(f"Gemini connection failed: {error}")
        return NetworkError(ERROR_MESSAGES["network"])

    async def health_check(self) -> bool:
        """Check that the configured model is reachable."""
        try:
            await self.sdk.aio.models.get(model=self.model)
            return True
        except (genai_errors.APIError, httpx.TransportError) as e:
            logger.warning(f"Gemini health check failed: {e}")
            return False

    async def generate_with_history(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate a non-streaming completion."""
        used_model = self.ensure_configured(model)
        system_instruction, contents = to_gemini_contents(messages)
        config = self._build_config(system_instruction, temperature, max_tokens, json_mode)

        try:
            response = await self.sdk.aio.models.generate_content(
                model=used_model,
                contents=contents,
                config=config,
            )
        except (genai_errors.APIError, httpx.TransportError) as e:
            raise self._map_error(e) from e

        if response.text is None:
            raise ParseError("Gemini returned no text content")

        finish_reason = None
        if response.candidates:
            reason = response.candidates[0].finish_reason
            finish_reason = getattr(reason, "value", reason)

        return LLMResponse(content=response.text, model=used_model, finish_reason=finish_reason)

    async def stream_with_history(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """
        Stream a completion.

        Yields:
            Chunks of generated text
        """
        used_model = self.ensure_configured(model)
        system_instruction, contents = to_gemini_contents(messages)
        config = self._build_config(system_instruction, temperature, max_tokens)

        logger.debug(f"Gemini stream: model={used_model}, contents={len(contents)}")

        try:
            stream = await race_cancellation(
                self.sdk.aio.models.generate_content_stream(
                    model=used_model,
                    contents=contents,
                    config=config,
                ),
                cancel_token,
            )
        except AbortError:
            logger.info("Gemini stream cancelled before the response started")
            return
        except (genai_errors.APIError, httpx.TransportError) as e:
            raise self._map_error(e) from e

        try:
            async with aclosing(iter_until_cancelled(stream, cancel_token)) as chunks:
                async for chunk in chunks:
                    if chunk.text:
                        yield chunk.text
                    if cancel_token is not None and cancel_token.cancelled:
                        logger.info("Gemini stream stopped by cancellation")
                        break
        except (genai_errors.APIError, httpx.TransportError) as e:
            raise self._map_error(e) from e
        finally:
            await stream.aclose()
