"""In-process stand-ins for provider clients used across the test modules."""

import asyncio
from typing import Callable, List, Optional, Union

import httpx

from nexus_engine.llm.base import BaseLLMClient, LLMError, LLMResponse


class FakeLLMClient(BaseLLMClient):
    """
    Scripted client.

    ``responses`` feeds ``generate_with_history`` in order (strings become
    replies, exceptions are raised). Every stream call yields ``chunks``,
    then raises ``stream_error`` if set.
    """

    provider_name = "Fake"

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        responses: Optional[List[Union[str, Exception]]] = None,
        stream_error: Optional[LLMError] = None,
        after_chunk: Optional[Callable[[int, str], None]] = None,
        gate: Optional[asyncio.Event] = None,
        model: str = "fake-model",
    ):
        super().__init__(base_url="http://fake.local", model=model, timeout=5, temperature=0.7, max_tokens=0)
        self.chunks = list(chunks or [])
        self.responses = list(responses or [])
        self.stream_error = stream_error
        self.after_chunk = after_chunk
        self.gate = gate
        self.generate_calls = []
        self.stream_calls = []

    async def health_check(self) -> bool:
        return True

    async def generate_with_history(self, messages, temperature=None, max_tokens=None, model=None, json_mode=False):
        used_model = self.ensure_configured(model)
        self.generate_calls.append({
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "json_mode": json_mode,
        })
        if not self.responses:
            raise AssertionError("unexpected generate call")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return LLMResponse(content=item, model=used_model)

    async def stream_with_history(self, messages, temperature=None, max_tokens=None, model=None, cancel_token=None):
        self.ensure_configured(model)
        self.stream_calls.append({
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.gate is not None:
            await self.gate.wait()
        for i, chunk in enumerate(self.chunks):
            if cancel_token is not None and cancel_token.cancelled:
                return
            yield chunk
            if self.after_chunk is not None:
                self.after_chunk(i, chunk)
        if self.stream_error is not None:
            raise self.stream_error


class SlowLLMClient(FakeLLMClient):
    """Non-streaming calls that take ``delay`` seconds."""

    def __init__(self, delay: float, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    async def generate_with_history(self, messages, temperature=None, max_tokens=None, model=None, json_mode=False):
        await asyncio.sleep(self.delay)
        return await super().generate_with_history(messages, temperature, max_tokens, model, json_mode)


async def no_sleep(_delay: float) -> None:
    return None


class StalledLLMClient(FakeLLMClient):
    """
    Non-streaming calls that never return on their own.

    ``started`` is set when a call begins waiting; ``interrupted`` counts
    calls that were cancelled while waiting.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = asyncio.Event()
        self.interrupted = 0

    async def generate_with_history(self, messages, temperature=None, max_tokens=None, model=None, json_mode=False):
        self.generate_calls.append({"messages": messages, "json_mode": json_mode})
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.interrupted += 1
            raise


class StalledByteStream(httpx.AsyncByteStream):
    """Response body that sends ``pieces`` and then hangs until closed or cancelled."""

    def __init__(self, *pieces: str):
        self.pieces = pieces
        self.stalled = asyncio.Event()
        self.closed = False

    async def __aiter__(self):
        for piece in self.pieces:
            yield piece.encode("utf-8")
        self.stalled.set()
        await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


def sse_delta(text: str) -> str:
    return 'data: {"choices": [{"delta": {"content": "%s"}}]}\n\n' % text
