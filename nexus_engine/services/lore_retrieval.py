"""
Lore Retrieval Service

Ranks a world's entries against the current scene. Signals are additive:

- always-active entries: flat bonus
- previously viewed entries: round(log1p(views) * weight)
- entries keyed on an active character's name: flat bonus
- contextual keyword matches: base * count^1.2 per scanned text, where the
  base decays with message age (max(2, 12 - 2 * age)) and persona texts use
  fixed lower weights

Retrieval is pure: it reads the index and stats and returns a new ranking.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from nexus_engine.config.models import RetrievalConfig
from nexus_engine.models import ConversationMessage, EntryInteractionStat, KnowledgeEntry
from .lore_index import LoreIndex, normalize_keyword, stem

logger = logging.getLogger(__name__)

WORD_PATTERN = re.compile(r"\b[\w'-]+\b")
FREQUENCY_EXPONENT = 1.2


@dataclass
class AuxiliaryText:
    """Non-message text scanned for keywords (persona descriptions)."""
    text: Optional[str]
    weight: float
    label: str


@dataclass
class TextMatch:
    """Matches of one entry inside one scanned text."""
    entry: KnowledgeEntry
    count: int = 0
    reasons: List[str] = field(default_factory=list)

    def add(self, reason: str) -> None:
        self.count += 1
        if reason not in self.reasons:
            self.reasons.append(reason)


@dataclass
class ScoredEntry:
    """A candidate entry with its accumulated score and why it scored."""
    entry: KnowledgeEntry
    score: float = 0.0
    reasons: List[str] = field(default_factory=list)


def recency_score(age: int) -> float:
    """Base score for a message ``age`` turns before the newest one."""
    return max(2, 12 - 2 * age)


def find_matches_in_text(text: Optional[str], index: LoreIndex) -> Dict[str, TextMatch]:
    """
    Find every entry referenced by ``text``.

    Regex keys count each occurrence; exact and stemmed keys count once per
    distinct word. A stem hit is skipped when the word is itself one of the
    entry's keys, so exact matches are not double counted.
    """
    matches: Dict[str, TextMatch] = {}
    if not text:
        return matches

    def add(entry: KnowledgeEntry, reason: str) -> None:
        matches.setdefault(entry.id, TextMatch(entry)).add(reason)

    lower_text = text.lower()

    for keyword in index.regex_keywords:
        hits = sum(1 for _ in keyword.pattern.finditer(lower_text))
        for entry in keyword.entries:
            for _ in range(hits):
                add(entry, f'Regex: "{keyword.source}"')

    words = dict.fromkeys(WORD_PATTERN.findall(lower_text))
    for word in words:
        for entry in index.exact.get(word, ()):
            add(entry, f'Exact: "{word}"')

        stemmed_word = stem(word)
        for entry in index.stemmed.get(stemmed_word, ()):
            plain_keys = [normalize_keyword(k) for k in entry.keys]
            if word not in plain_keys:
                add(entry, f'Stem: "{word}" -> "{stemmed_word}"')

    return matches


class LoreRetriever:
    """Scores and ranks lore entries for prompt injection."""

    def __init__(self, config: Optional[RetrievalConfig] = None):
        self.config = config or RetrievalConfig()

    def retrieve(
        self,
        index: LoreIndex,
        conversation_window: Sequence[ConversationMessage],
        auxiliary_texts: Iterable[AuxiliaryText] = (),
        interaction_stats: Optional[Mapping[str, EntryInteractionStat]] = None,
        linked_speaker_names: Iterable[str] = (),
    ) -> List[ScoredEntry]:
        """
        Rank entries for the current turn.

        Args:
            index: Lore index of the session's world
            conversation_window: Recent messages, oldest first; the last one
                is the newest (age 0)
            auxiliary_texts: Persona texts with their fixed weights
            interaction_stats: View stats by entry id for this world
            linked_speaker_names: Names of characters present in the scene

        Returns:
            Up to ``max_lore_entries`` entries with nonzero score, best first;
            ties keep the order in which entries were first scored
        """
        if index.is_empty():
            return []

        candidates: Dict[str, ScoredEntry] = {}

        def add_score(entry: KnowledgeEntry, score: float, reason: str) -> None:
            scored = candidates.setdefault(entry.id, ScoredEntry(entry))
            scored.score += score
            scored.reasons.append(reason)

        stats = interaction_stats or {}
        for entry in index.enabled_entries:
            if entry.is_always_active:
                add_score(entry, self.config.always_active_bonus, "Always Active")
            stat = stats.get(entry.id)
            if stat is not None:
                interaction_score = round(math.log1p(stat.view_count) * self.config.interaction_weight)
                if interaction_score > 0:
                    add_score(entry, interaction_score, f"User Interaction ({stat.view_count} views)")

        for name in linked_speaker_names:
            if not name:
                continue
            for entry in index.exact.get(name.lower(), ()):
                add_score(entry, self.config.speaker_link_bonus, f'Linked to active character: "{name}"')

        def search_context(text: Optional[str], base_score: float, label: str) -> None:
            for match in find_matches_in_text(text, index).values():
                score = base_score * math.pow(match.count, FREQUENCY_EXPONENT)
                reason_summary = ", ".join(match.reasons[:2])
                add_score(match.entry, score, f"{label}: {reason_summary} (x{match.count})")

        window = list(conversation_window)
        for i, message in enumerate(window):
            age = len(window) - 1 - i
            search_context(message.content, recency_score(age), f"Message (t-{age})")

        for aux in auxiliary_texts:
            search_context(aux.text, aux.weight, aux.label)

        ranked = sorted(
            (c for c in candidates.values() if c.score > 0),
            key=lambda c: c.score,
            reverse=True,
        )
        return ranked[: self.config.max_lore_entries]

    def suggest(self, index: LoreIndex, messages: Sequence[ConversationMessage]) -> List[KnowledgeEntry]:
        """
        Suggest entries the user may want to look at.

        Uses contextual matches only, skips always-active entries and entries
        whose name already appears in the last message.
        """
        if index.is_empty() or not messages:
            return []

        scores: Dict[str, ScoredEntry] = {}
        for i, message in enumerate(messages):
            age = len(messages) - 1 - i
            for match in find_matches_in_text(message.content, index).values():
                scored = scores.setdefault(match.entry.id, ScoredEntry(match.entry))
                scored.score += recency_score(age) * math.pow(match.count, FREQUENCY_EXPONENT)

        last_content = (messages[-1].content or "").lower()
        ranked = sorted(
            (
                s for s in scores.values()
                if not s.entry.is_always_active
                and not (s.entry.name and s.entry.name.lower() in last_content)
            ),
            key=lambda s: s.score,
            reverse=True,
        )
        return [s.entry for s in ranked[: self.config.max_suggestions]]
