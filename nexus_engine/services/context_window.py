"""
Context Window Manager

Fits conversation history into a token budget and normalizes it into the
strictly alternating user/assistant sequence chat APIs expect.

Token counts are a coarse estimate (ceil(chars / 4)) applied uniformly.
"""

import logging
import math
from typing import Dict, List, Sequence

from nexus_engine.models import ConversationMessage, MessageRole

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate token count for a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_messages_tokens(messages: Sequence[ConversationMessage]) -> int:
    """Estimated token total for a message list."""
    return sum(estimate_tokens(m.content) for m in messages)


def fit_history(history: Sequence[ConversationMessage], token_budget: int) -> List[ConversationMessage]:
    """
    Keep the newest messages that fit in ``token_budget``.

    Scans from newest to oldest and stops at the first message that would
    exceed the budget, so the result is always a contiguous suffix of
    ``history`` in its original order.
    """
    if not history:
        return []

    result = []
    total_tokens = 0

    for message in reversed(history):
        message_tokens = estimate_tokens(message.content)
        if total_tokens + message_tokens > token_budget:
            break
        result.append(message)
        total_tokens += message_tokens

    result.reverse()

    if len(result) < len(history):
        logger.debug(
            f"History truncated: kept {len(result)}/{len(history)} messages "
            f"({total_tokens}/{token_budget} tokens)"
        )
    return result


def normalize_roles(messages: Sequence[ConversationMessage]) -> List[ConversationMessage]:
    """
    Merge runs of consecutive same-role messages.

    Merged content is joined with a blank line and takes the latest
    timestamp. System messages pass through untouched and never merge.
    """
    merged: List[ConversationMessage] = []

    for message in messages:
        previous = merged[-1] if merged else None
        if (
            previous is not None
            and message.role != MessageRole.SYSTEM
            and previous.role == message.role
        ):
            merged[-1] = previous.model_copy(update={
                "content": f"{previous.content}\n\n{message.content}",
                "timestamp": max(previous.timestamp, message.timestamp),
            })
        else:
            merged.append(message)

    return merged


def to_api_messages(system_prompt: str, history: Sequence[ConversationMessage]) -> List[Dict[str, str]]:
    """
    Build the provider message list: the directive, then normalized history.

    System markers inside the history (e.g. memory notices) are dropped here;
    their information already lives in the directive.
    """
    dialogue = [m for m in history if m.role != MessageRole.SYSTEM]
    messages = [{"role": "system", "content": system_prompt}]
    for message in normalize_roles(dialogue):
        messages.append({"role": message.role.value, "content": message.content})
    return messages
