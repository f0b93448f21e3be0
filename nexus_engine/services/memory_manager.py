"""
Memory Manager

Condenses the oldest part of a long conversation into a running summary.

Strategy:
1. Trigger only when memory is enabled for the session and the fitted
   history reaches trigger_ratio (75%) of the context budget
2. Send the oldest slice_ratio (50%) of messages, plus the previous summary,
   to the model for a consolidated third-person summary
3. Replace that slice with one system marker message

A failed summarization never blocks the user's turn: the caller gets the
history and summary back unchanged along with a warning. A cancelled one
raises AbortError so the turn ends as cancelled.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from nexus_engine.config.models import SystemConfig
from nexus_engine.llm.base import AbortError, BaseLLMClient, LLMError, race_cancellation
from nexus_engine.llm.retry import with_retries
from nexus_engine.models import ConversationMessage, MessageRole, Session
from nexus_engine.utils.cancellation import CancellationToken
from nexus_engine.utils.debug_logger import DebugLogger
from .context_window import estimate_messages_tokens

logger = logging.getLogger(__name__)

MEMORY_MARKER_TEXT = "[System: Distant memories were summarized to preserve context.]"
SUMMARIZATION_WARNING = "Auto-summarization failed. Check API key and model settings."

ROLE_LABELS = {
    MessageRole.USER: "User",
    MessageRole.ASSISTANT: "Assistant",
    MessageRole.SYSTEM: "System",
}

SUMMARY_SYSTEM_PROMPT = """You are an expert at creating and updating conversation summaries. Your task is to produce a new, consolidated summary.

Instructions:
1.  Read the "PREVIOUS SUMMARY" (if provided). This is the condensed history of events so far.
2.  Read the "NEW CONVERSATION LOG". These are the most recent messages that need to be integrated.
3.  Combine both sources into a single, coherent, and updated summary.
4.  The new summary MUST be written in the third person.
5.  It MUST capture all key events, character developments, important decisions, new lore, and crucial facts.
6.  CRITICAL: Do NOT repeat information. If the new log clarifies or supersedes something from the previous summary, update it. Keep the summary as concise as possible while retaining vital information."""


class SummarizationFailure(Exception):
    """Summarization could not produce a summary. Never fatal to a send."""
    pass


@dataclass
class MemoryOutcome:
    """History and summary to use for this turn."""
    history: List[ConversationMessage]
    summary: Optional[str]
    triggered: bool = False
    marker: Optional[ConversationMessage] = None
    warning: Optional[str] = None


def build_summary_prompt(messages: Sequence[ConversationMessage], previous_summary: Optional[str]) -> str:
    """User prompt folding the previous summary and the new log together."""
    conversation_text = "\n".join(f"{ROLE_LABELS[m.role]}: {m.content}" for m in messages)

    parts = []
    if previous_summary:
        parts.append("### PREVIOUS SUMMARY ###")
        parts.append(previous_summary)
    parts.append("### NEW CONVERSATION LOG ###")
    parts.append(conversation_text)
    parts.append("\nBased on the instructions, provide the new, consolidated summary.")
    return "\n\n".join(parts)


class MemoryManager:
    """Decides when to summarize and splices the summary back into the history."""

    def __init__(
        self,
        llm_client: BaseLLMClient,
        config: Optional[SystemConfig] = None,
        on_warning: Optional[Callable[[str], None]] = None,
        debug_logger: Optional[DebugLogger] = None,
        sleep=None,
    ):
        """
        Args:
            llm_client: Client used for the summarization call
            config: System config (memory, retry and llm sections are used)
            on_warning: Receives user-visible, non-fatal warnings
            debug_logger: Optional JSONL logger for the summarization call
            sleep: Backoff sleep override for tests
        """
        self.llm_client = llm_client
        self.config = config or SystemConfig()
        self.on_warning = on_warning
        self.debug_logger = debug_logger
        self._sleep = sleep

    def context_size_for(self, session: Session) -> int:
        return session.settings.context_size or self.config.llm.context_window

    def should_summarize(self, session: Session, history: Sequence[ConversationMessage]) -> bool:
        """True when memory is on and history has reached the trigger threshold."""
        if not session.memory_enabled:
            return False
        context_size = self.context_size_for(session)
        if context_size <= 0:
            return False
        total_tokens = estimate_messages_tokens(history)
        threshold = context_size * self.config.memory.trigger_ratio
        if total_tokens >= threshold:
            logger.info(
                f"Session {session.id} reached memory threshold: "
                f"{total_tokens} tokens >= {threshold:.0f}"
            )
            return True
        return False

    async def summarize_messages(
        self,
        messages: Sequence[ConversationMessage],
        previous_summary: Optional[str],
        session_id: str = "system",
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Produce a consolidated summary; retried on server errors.

        Raises:
            SummarizationFailure: If the call fails or returns nothing
            AbortError: The token was cancelled while the call was running
        """
        prompt = build_summary_prompt(messages, previous_summary)

        async def call():
            return await self.llm_client.generate(
                prompt,
                system_prompt=SUMMARY_SYSTEM_PROMPT,
                temperature=self.config.memory.summary_temperature,
            )

        retry_kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        try:
            response = await race_cancellation(
                with_retries(call, self.config.retry, description="Summarization", **retry_kwargs),
                cancel_token,
            )
        except AbortError:
            logger.info(f"Summarization cancelled for session {session_id}")
            raise
        except LLMError as e:
            self._log_interaction(session_id, prompt, None, str(e))
            raise SummarizationFailure(str(e)) from e

        summary = response.content.strip()
        self._log_interaction(session_id, prompt, summary, None)
        if not summary:
            raise SummarizationFailure("Invalid response format from summarization API.")
        return summary

    async def maybe_summarize(
        self,
        session: Session,
        fitted_history: Sequence[ConversationMessage],
        cancel_token: Optional[CancellationToken] = None,
    ) -> MemoryOutcome:
        """
        Summarize the oldest half of ``fitted_history`` if the threshold is hit.

        Returns:
            MemoryOutcome; on failure the original history and summary

        Raises:
            AbortError: The token was cancelled during the summarization call
        """
        history = list(fitted_history)
        unchanged = MemoryOutcome(history=history, summary=session.memory_summary)

        if not self.should_summarize(session, history):
            return unchanged

        slice_index = math.floor(len(history) * self.config.memory.slice_ratio)
        to_summarize = history[:slice_index]
        remaining = history[slice_index:]
        if not to_summarize:
            return unchanged

        try:
            new_summary = await self.summarize_messages(
                to_summarize, session.memory_summary, session.id, cancel_token=cancel_token
            )
        except SummarizationFailure as e:
            logger.error(f"Auto-summarization failed for session {session.id}: {e}")
            if self.on_warning is not None:
                self.on_warning(SUMMARIZATION_WARNING)
            unchanged.warning = SUMMARIZATION_WARNING
            return unchanged

        marker = ConversationMessage(role=MessageRole.SYSTEM, content=MEMORY_MARKER_TEXT)
        logger.info(
            f"Summarized {len(to_summarize)} messages for session {session.id}; "
            f"{len(remaining)} kept"
        )
        return MemoryOutcome(
            history=[marker] + remaining,
            summary=new_summary,
            triggered=True,
            marker=marker,
        )

    def _log_interaction(self, session_id: str, prompt: str, response: Optional[str], error: Optional[str]) -> None:
        if self.debug_logger is None:
            return
        self.debug_logger.log_llm_interaction(
            conversation_id=session_id,
            interaction_type="summarization",
            model=self.llm_client.model,
            prompt=prompt,
            response=response,
            settings={"temperature": self.config.memory.summary_temperature},
            error=error,
        )
