"""Conversation records: messages, sessions, characters and personas."""

import enum
import time
import uuid
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


NARRATOR_ID = "narrator"
NARRATOR_NAME = "Narrator"


def generate_uuid():
    """Generate a UUID string."""
    return str(uuid.uuid4())


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


class MessageRole(str, enum.Enum):
    """Message role types."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Alternates(BaseModel):
    """Sibling regenerations of one assistant turn, one of them shown."""
    model_config = ConfigDict(frozen=True)

    ids: List[str]
    active_index: int = 0

    @model_validator(mode="after")
    def _active_index_in_range(self) -> "Alternates":
        if not 0 <= self.active_index < len(self.ids):
            raise ValueError(
                f"active_index {self.active_index} out of range for {len(self.ids)} alternates"
            )
        return self

    @property
    def active_id(self) -> str:
        return self.ids[self.active_index]


class ThinkingStepRecord(BaseModel):
    """A reasoning step kept on the message it produced."""
    model_config = ConfigDict(frozen=True)

    title: str
    content: str


class ConversationMessage(BaseModel):
    """
    One turn in a conversation.

    ``character_id`` attributes assistant turns in group sessions; narrator
    turns use ``NARRATOR_ID``.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_uuid)
    role: MessageRole
    content: str = ""
    timestamp: int = Field(default_factory=now_ms)
    character_id: Optional[str] = None
    alternates: Optional[Alternates] = None
    is_thinking: bool = False
    thinking_process: List[ThinkingStepRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def _self_in_alternates(self) -> "ConversationMessage":
        if self.alternates is not None and self.id not in self.alternates.ids:
            raise ValueError(f"Message {self.id} is not part of its own alternates group")
        return self


class GenerationSettings(BaseModel):
    """Per-session overrides; ``None`` falls back to system config."""
    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    context_size: Optional[int] = Field(default=None, gt=0)
    max_output_tokens: Optional[int] = Field(default=None, ge=0)


class Session(BaseModel):
    """Single-character chat session. ``message_ids`` is the canonical turn order."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_uuid)
    title: str = "New Chat"
    character_id: Optional[str] = None
    message_ids: List[str] = Field(default_factory=list)
    world_id: Optional[str] = None
    settings: GenerationSettings = Field(default_factory=GenerationSettings)
    memory_enabled: bool = False
    memory_summary: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return False


class GroupSession(Session):
    """Multi-character session driven by the scene director."""

    character_ids: List[str] = Field(default_factory=list)
    scenario: str = ""

    @property
    def is_group(self) -> bool:
        return True


class Character(BaseModel):
    """A roleplay character the model embodies."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_uuid)
    name: str
    persona: str = ""
    greeting: str = ""
    description: str = ""


class Persona(BaseModel):
    """The user's own roleplay persona."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_uuid)
    name: str
    description: str = ""


class TurnAction(BaseModel):
    """One attributed unit of dialogue or narration from the scene director."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    speaker_name: str = Field(alias="characterName")
    content: str
