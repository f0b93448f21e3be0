"""Ollama LLM client implementation (native NDJSON streaming)."""

import json
import logging
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


class OllamaLLMClient(BaseLLMClient):
    """Client for interacting with the Ollama chat API."""

    provider_name = "Ollama"
    requires_api_key = False

    def _build_payload(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: Optional[float],
        max_tokens: Optional[int],
        stream: bool,
    ) -> dict:
        options = {
            "temperature": temperature if temperature is not None else self.temperature,
        }
        tokens = max_tokens if max_tokens is not None else self.max_tokens
        if tokens and tokens > 0:
            options["num_predict"] = tokens
        return {
            "model": model,
            "messages": messages,
            "stream": stream,
            "options": options,
        }

    async def health_check(self) -> bool:
        """Check if Ollama is available."""
        try:
            response = await self.client.get(f"{self.base_url}/api/tags")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False

    async def generate_with_history(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate a non-streaming completion via ``/api/chat``."""
        used_model = self.ensure_configured(model)
        payload = self._build_payload(messages, used_model, temperature, max_tokens, stream=False)
        if json_mode:
            payload["format"] = "json"

        try:
            response = await self.client.post(f"{self.base_url}/api/chat", json=payload)
        except httpx.TransportError as e:
            raise NetworkError(ERROR_MESSAGES["network"]) from e

        await self._raise_for_status(response)

        try:
            data = response.json()
            content = data["message"]["content"]
        except (ValueError, KeyError, TypeError) as e:
            raise ParseError(f"Invalid response format from Ollama: {e}") from e

        return LLMResponse(
            content=content,
            model=data.get("model", used_model),
            finish_reason=data.get("done_reason"),
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
        Stream a completion; Ollama emits one JSON object per line.

        Yields:
            Chunks of generated text
        """
        used_model = self.ensure_configured(model)
        payload = self._build_payload(messages, used_model, temperature, max_tokens, stream=True)

        logger.debug(f"Ollama stream: model={used_model}, messages={len(messages)}")

        request = self.client.build_request("POST", f"{self.base_url}/api/chat", json=payload)
        try:
            response = await race_cancellation(self.client.send(request, stream=True), cancel_token)
        except AbortError:
            logger.info("Ollama stream cancelled before the response started")
            return
        except httpx.TransportError as e:
            raise NetworkError(ERROR_MESSAGES["network"]) from e

        try:
            await self._raise_for_status(response)

            chunk_count = 0
            async for line in iter_until_cancelled(response.aiter_lines(), cancel_token):
                if cancel_token is not None and cancel_token.cancelled:
                    logger.info("Ollama stream stopped by cancellation")
                    break
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.error(f"Error parsing Ollama stream line: {line[:200]!r}")
                    continue

                if "error" in data:
                    raise LLMError(f"Ollama error: {data['error']}")

                content = (data.get("message") or {}).get("content", "")
                if content:
                    chunk_count += 1
                    yield content

                if data.get("done"):
                    if chunk_count == 0:
                        logger.warning(
                            f"Ollama returned zero content, reason: {data.get('done_reason', 'unknown')}"
                        )
                    break
        except httpx.TransportError as e:
            raise NetworkError(ERROR_MESSAGES["network"]) from e
        except httpx.HTTPError as e:
            raise LLMError(f"HTTP error during LLM streaming: {e}") from e
        finally:
            await response.aclose()
