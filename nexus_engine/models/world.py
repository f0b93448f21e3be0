"""Knowledge base (world) records and entry interaction stats."""

import enum
import json
import time
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class WorldEntryCategory(str, enum.Enum):
    """Optional category tag for a lore entry."""
    WORLD = "World"
    CHARACTER = "Character"
    LOCATION = "Location"
    ITEM = "Item"
    FACTION = "Faction"
    LORE = "Lore/History"
    EVENT = "Event"


class KnowledgeEntry(BaseModel):
    """
    A single lore fact with trigger keywords.

    Entries are immutable values: edits produce a new entry via
    ``model_copy(update=...)``.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    keys: List[str] = Field(default_factory=list)
    content: str = ""
    enabled: bool = True
    is_always_active: bool = False
    category: Optional[WorldEntryCategory] = None

    @property
    def display_name(self) -> str:
        return self.name or "Untitled"


class KnowledgeBase(BaseModel):
    """A world: an ordered list of lore entries with unique ids."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    entries: List[KnowledgeEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_entry_ids(self) -> "KnowledgeBase":
        seen = set()
        for entry in self.entries:
            if entry.id in seen:
                raise ValueError(f"Duplicate entry id '{entry.id}' in world '{self.id}'")
            seen.add(entry.id)
        return self

    @property
    def enabled_entries(self) -> List[KnowledgeEntry]:
        return [e for e in self.entries if e.enabled]

    def entries_snapshot(self) -> str:
        """Serialized entry set used as the lore index cache key."""
        return json.dumps(
            [e.model_dump(mode="json") for e in self.entries],
            sort_keys=True,
            ensure_ascii=False,
        )

    def replace_entry(self, entry: KnowledgeEntry) -> "KnowledgeBase":
        """Return a copy of this base with ``entry`` swapped in by id."""
        entries = [entry if e.id == entry.id else e for e in self.entries]
        return self.model_copy(update={"entries": entries})


class EntryInteractionStat(BaseModel):
    """How often a lore entry has been viewed; a retrieval signal."""
    model_config = ConfigDict(frozen=True)

    view_count: int = Field(default=0, ge=0)
    last_viewed: float = 0.0

    def record_view(self, now: Optional[float] = None) -> "EntryInteractionStat":
        return EntryInteractionStat(
            view_count=self.view_count + 1,
            last_viewed=now if now is not None else time.time(),
        )
