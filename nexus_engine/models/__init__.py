"""Models package for Nexus Engine."""

from .conversation import (
    Alternates,
    Character,
    ConversationMessage,
    GenerationSettings,
    GroupSession,
    MessageRole,
    NARRATOR_ID,
    NARRATOR_NAME,
    Persona,
    Session,
    ThinkingStepRecord,
    TurnAction,
    generate_uuid,
    now_ms,
)
from .generation import (
    Cancelled,
    Chunk,
    Completed,
    Failed,
    GenerationEvent,
    GenerationResult,
    GenerationState,
    ReasoningStep,
    ResponseStarted,
)
from .world import EntryInteractionStat, KnowledgeBase, KnowledgeEntry, WorldEntryCategory

__all__ = [
    "Alternates",
    "Cancelled",
    "Character",
    "Chunk",
    "Completed",
    "ConversationMessage",
    "EntryInteractionStat",
    "Failed",
    "GenerationEvent",
    "GenerationResult",
    "GenerationSettings",
    "GenerationState",
    "GroupSession",
    "KnowledgeBase",
    "KnowledgeEntry",
    "MessageRole",
    "NARRATOR_ID",
    "NARRATOR_NAME",
    "Persona",
    "ReasoningStep",
    "ResponseStarted",
    "Session",
    "ThinkingStepRecord",
    "TurnAction",
    "WorldEntryCategory",
    "generate_uuid",
    "now_ms",
]
