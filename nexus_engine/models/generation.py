"""Generation stream events and terminal results."""

import enum
from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass(frozen=True)
class Chunk:
    """Next fragment of response text."""
    text: str


@dataclass(frozen=True)
class ReasoningStep:
    """One completed thinking step, shown alongside the message."""
    title: str
    content: str


@dataclass(frozen=True)
class ResponseStarted:
    """Thinking finished; text chunks follow."""


GenerationEvent = Union[Chunk, ReasoningStep, ResponseStarted]


class GenerationState(str, enum.Enum):
    """Orchestrator lifecycle state."""
    IDLE = "idle"
    GENERATING = "generating"


@dataclass(frozen=True)
class Completed:
    """Generation ran to the end of the stream."""
    message_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Cancelled:
    """Stopped by the user; partial content is kept."""
    message_id: Optional[str] = None
    reason: str = "Generation stopped by user."


@dataclass(frozen=True)
class Failed:
    """Generation failed; ``error`` is the user-facing message."""
    error: str
    exception: Optional[BaseException] = None


GenerationResult = Union[Completed, Cancelled, Failed]
