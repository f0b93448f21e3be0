"""OpenAI-compatible LLM client (OpenRouter, DeepSeek, LM Studio, ...)."""

import json
import logging
from contextlib import aclosing
from typing import AsyncIterator, Dict, List, Optional

import httpx

from nexus_engine.utils.cancellation import CancellationToken
from .base import (
    AbortError,
    BaseLLMClient,
    ERROR_MESSAGES,
    LLMError,
    LLMResponse,
    NetworkError,
    ParseError,
    iter_until_cancelled,
    race_cancellation,
)

logger = logging.getLogger(__name__)


async def iter_sse_content(
    text_chunks: AsyncIterator[str],
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[str]:
    """
    Turn a raw server-sent-events body into text fragments.

    Each complete line prefixed ``data: `` carries either ``[DONE]`` (ends the
    stream) or a JSON object whose ``choices[0].delta.content`` is the next
    fragment. Other lines are ignored. A partial trailing line left when the
    body ends is logged as an anomaly.
    """
    buffer = ""
    async for piece in text_chunks:
        buffer += piece
        lines = buffer.split("\n")
        buffer = lines.pop()  # keep the last, possibly incomplete line

        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith("data: "):
                continue
            data_str = line[6:]
            if data_str == "[DONE]":
                return
            try:
                data = json.loads(data_str)
            except json.JSONDecodeError as e:
                logger.error(f"Error parsing stream JSON chunk: {data_str!r} ({e})")
                continue
            choices = data.get("choices") if isinstance(data, dict) else None
            if not choices:
                continue
            content = (choices[0].get("delta") or {}).get("content")
            if content:
                yield content

        if cancel_token is not None and cancel_token.cancelled:
            logger.info("SSE stream stopped by cancellation")
            return

    if buffer:
        logger.error(f"Stream ended with unprocessed data in buffer: {buffer[:200]!r}")


class OpenAICompatibleLLMClient(BaseLLMClient):
    """
    Client for OpenAI-compatible chat completion endpoints.

    ``base_url`` is the API root (e.g. ``https://openrouter.ai/api/v1``);
    requests go to ``{base_url}/chat/completions``.
    """

    provider_name = "OpenAI-compatible"
    requires_api_key = True

    def __init__(self, *args, provider_name: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        if provider_name:
            self.provider_name = provider_name

    @property
    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_payload(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: Optional[float],
        max_tokens: Optional[int],
        stream: bool,
    ) -> dict:
        payload = {
            "model": model,
            "messages": messages,
            "stream": stream,
            "temperature": temperature if temperature is not None else self.temperature,
        }
        tokens = max_tokens if max_tokens is not None else self.max_tokens
        if tokens and tokens > 0:
            payload["max_tokens"] = tokens
        return payload

    async def health_check(self) -> bool:
        """Check if the endpoint lists models."""
        try:
            response = await self.client.get(f"{self.base_url}/models", headers=self._headers)
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"{self.provider_name} health check failed: {e}")
            return False

    async def generate_with_history(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Generate a completion with full conversation history.

        Raises:
            ConfigurationError: Missing model or API key
            ParseError: Response body is not the expected JSON shape
            LLMError: Any other failure (see taxonomy)
        """
        used_model = self.ensure_configured(model)
        payload = self._build_payload(messages, used_model, temperature, max_tokens, stream=False)
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        logger.debug(
            f"{self.provider_name} request: model={used_model}, messages={len(messages)}, "
            f"temp={payload['temperature']}, max_tokens={payload.get('max_tokens')}"
        )

        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self._headers,
            )
        except httpx.TransportError as e:
            raise NetworkError(ERROR_MESSAGES["network"]) from e

        await self._raise_for_status(response)

        try:
            data = response.json()
            choice = data["choices"][0]
            content = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ParseError(f"Invalid response format from {self.provider_name}: {e}") from e
        if content is None:
            raise ParseError(f"Invalid response format from {self.provider_name}: empty content")

        return LLMResponse(
            content=content,
            model=data.get("model", used_model),
            finish_reason=choice.get("finish_reason"),
        )

    async def stream_with_history(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """
        Stream a completion with full conversation history over SSE.

        Yields:
            Chunks of generated text
        """
        used_model = self.ensure_configured(model)
        payload = self._build_payload(messages, used_model, temperature, max_tokens, stream=True)
        request = self.client.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=self._headers,
        )

        try:
            response = await race_cancellation(self.client.send(request, stream=True), cancel_token)
        except AbortError:
            logger.info(f"{self.provider_name} stream cancelled before the response started")
            return
        except httpx.TransportError as e:
            raise NetworkError(ERROR_MESSAGES["network"]) from e

        try:
            await self._raise_for_status(response)
            text_chunks = iter_until_cancelled(response.aiter_text(), cancel_token)
            async with aclosing(iter_sse_content(text_chunks, cancel_token)) as contents:
                async for content in contents:
                    yield content
                    if cancel_token is not None and cancel_token.cancelled:
                        break
        except httpx.TransportError as e:
            raise NetworkError(ERROR_MESSAGES["network"]) from e
        except httpx.HTTPError as e:
            raise LLMError(f"HTTP error during LLM streaming: {e}") from e
        finally:
            await response.aclose()
