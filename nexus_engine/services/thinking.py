"""
Thinking Service

Optional multi-step reasoning before the final response:
1. Context Analysis (medium and deep)
2. Response Plan (always)
3. Character Reasoning (deep)

Each step is a short JSON call bounded by a timeout. If any step fails or
times out, generation falls back to a direct stream without thinking.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

from nexus_engine.config.models import SystemConfig
from nexus_engine.llm.base import AbortError, BaseLLMClient, LLMError, race_cancellation
from nexus_engine.models import (
    Chunk,
    ConversationMessage,
    GenerationEvent,
    ReasoningStep,
    ResponseStarted,
)
from nexus_engine.utils.cancellation import CancellationToken
from nexus_engine.utils.debug_logger import DebugLogger
from .json_extraction import extract_json_field

logger = logging.getLogger(__name__)

STEP_TEMPERATURE = 0.3
CONTEXT_MESSAGES = 5

ANALYSIS_SYSTEM = (
    "You are a story analysis engine. Analyze the context and last message. Identify themes, "
    "user intent, character emotions, and potential plot points. Respond ONLY with a valid JSON "
    'object of the form {"analysis": string}.'
)
PLAN_SYSTEM = (
    "You are a response planner. Based on the context and analysis, create a concise, "
    "step-by-step plan for the character's response. Respond ONLY with a valid JSON object "
    'of the form {"plan": string}.'
)
REASONING_SYSTEM = (
    "You are the character. Think through your internal monologue, motivations, and conflicts "
    "regarding the situation and your planned response. This is your inner voice. Respond ONLY "
    'with a valid JSON object of the form {"reasoning": string}.'
)


@dataclass
class ThinkingResult:
    analysis: str = ""
    plan: str = ""
    reasoning: Optional[str] = None

    def as_context(self) -> str:
        """Block placed ahead of the directive for the final generation."""
        lines = [
            "### THINKING CONTEXT ###",
            "You have analyzed the situation and formulated a plan. Use this context to inform your "
            "response, but DO NOT mention the analysis, plan, or reasoning in your final output.",
            f"- **Analysis:** {self.analysis}",
            f"- **Plan:** {self.plan}",
        ]
        if self.reasoning:
            lines.append(f"- **Internal Monologue:** {self.reasoning}")
        return "\n".join(lines)


class ThinkingService:
    """Runs the reasoning steps and then streams the final reply."""

    def __init__(
        self,
        llm_client: BaseLLMClient,
        config: Optional[SystemConfig] = None,
        on_warning: Optional[Callable[[str], None]] = None,
        debug_logger: Optional[DebugLogger] = None,
    ):
        self.llm_client = llm_client
        self.config = config or SystemConfig()
        self.on_warning = on_warning
        self.debug_logger = debug_logger

    @staticmethod
    def build_context(history: Sequence[ConversationMessage], character_persona: str) -> str:
        recent = "\n".join(f"{m.role.value}: {m.content}" for m in list(history)[-CONTEXT_MESSAGES:])
        return (
            f"Conversation History (last {CONTEXT_MESSAGES} messages):\n{recent}\n\n"
            f"Character Persona:\n{character_persona}"
        )

    async def _run_step(
        self,
        prompt: str,
        system_prompt: str,
        key: str,
        session_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """One bounded JSON step; raises LLMError (AbortError on cancel) or TimeoutError."""
        timeout = self.config.thinking.step_timeout_seconds
        call = self.llm_client.generate(
            prompt,
            system_prompt=system_prompt,
            temperature=STEP_TEMPERATURE,
            json_mode=True,
        )
        response = await asyncio.wait_for(race_cancellation(call, cancel_token), timeout=timeout)
        if self.debug_logger is not None:
            self.debug_logger.log_llm_interaction(
                conversation_id=session_id,
                interaction_type=f"thinking_{key}",
                model=self.llm_client.model,
                prompt=prompt,
                response=response.content,
                settings={"temperature": STEP_TEMPERATURE, "timeout": timeout},
            )
        if not response.content or not response.content.strip():
            raise LLMError("Received an empty response from the AI during a thinking step.")
        return extract_json_field(response.content.strip(), key)

    async def generate(
        self,
        history: Sequence[ConversationMessage],
        character_persona: str,
        build_messages: Callable[[Optional[str]], List[Dict[str, str]]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        session_id: str = "system",
    ) -> AsyncIterator[GenerationEvent]:
        """
        Yield reasoning steps, ``ResponseStarted``, then response chunks.

        Args:
            history: Fitted conversation history
            character_persona: Persona text used as step context
            build_messages: Builds provider messages given an optional
                thinking context block
        """
        depth = self.config.thinking.depth
        result = ThinkingResult()
        context = self.build_context(history, character_persona)

        try:
            if depth in ("medium", "deep"):
                result.analysis = await self._run_step(
                    context, ANALYSIS_SYSTEM, "analysis", session_id, cancel_token
                )
                yield ReasoningStep("Context Analysis", result.analysis)
                if cancel_token is not None and cancel_token.cancelled:
                    return

            result.plan = await self._run_step(
                f"{context}\n\nAnalysis:\n{result.analysis}", PLAN_SYSTEM, "plan", session_id, cancel_token
            )
            yield ReasoningStep("Response Plan", result.plan)
            if cancel_token is not None and cancel_token.cancelled:
                return

            if depth == "deep":
                result.reasoning = await self._run_step(
                    f"{context}\n\nAnalysis:\n{result.analysis}\n\nPlan:\n{result.plan}",
                    REASONING_SYSTEM,
                    "reasoning",
                    session_id,
                    cancel_token,
                )
                yield ReasoningStep("Character Reasoning", result.reasoning)
                if cancel_token is not None and cancel_token.cancelled:
                    return
        except AbortError:
            logger.info("Thinking cancelled; no final response requested")
            return
        except (LLMError, asyncio.TimeoutError) as e:
            reason = str(e) or "Thinking step timed out"
            logger.error(f"Thinking process failed: {reason}; falling back to direct generation")
            if self.on_warning is not None:
                self.on_warning(f"Thinking process failed: {reason}")
            messages = build_messages(None)
        else:
            yield ResponseStarted()
            messages = build_messages(result.as_context())

        stream = self.llm_client.stream_with_history(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            cancel_token=cancel_token,
        )
        async with aclosing(stream):
            async for text in stream:
                yield Chunk(text)
