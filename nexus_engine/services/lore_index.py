"""
Lore Index

Inverted keyword index over a world's enabled entries:
- exact keyword table
- stemmed keyword table (only for keys the stemmer changes)
- compiled word-boundary patterns for keys containing regex syntax

Indexes are cached per world id and rebuilt only when the serialized entry
set changes. The cache is an explicit object owned by the assembly service.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Tuple

from nexus_engine.models import KnowledgeBase, KnowledgeEntry

logger = logging.getLogger(__name__)

REGEX_METACHARACTERS = re.compile(r"[*+?()|\[\]{}^$\\]")
MIN_KEYWORD_LENGTH = 2


def stem(word: str) -> str:
    """
    Conservative English suffix stripper.

    Handles plurals (cats -> cat, boxes -> box) and simple verb tenses
    (walking -> walk, walked -> walk). Short words are left alone so that
    "cared" does not become "car".
    """
    if len(word) < 4:
        return word

    if word.endswith("es") and len(word) > 4:
        return word[:-2]
    if word.endswith("s") and not word.endswith("ss") and not word.endswith("us"):
        return word[:-1]

    if word.endswith("ing") and len(word) > 5:
        return word[:-3]
    if word.endswith("ed") and len(word) > 5:
        return word[:-2]

    return word


def normalize_keyword(key: str) -> str:
    return key.strip().lower()


@dataclass
class RegexKeyword:
    """A user keyword compiled as ``\\b(<key>)\\b``."""
    source: str
    pattern: Pattern[str]
    entries: List[KnowledgeEntry]


@dataclass
class LoreIndex:
    """Derived, disposable lookup structure for one world."""
    world_id: str
    exact: Dict[str, List[KnowledgeEntry]] = field(default_factory=dict)
    stemmed: Dict[str, List[KnowledgeEntry]] = field(default_factory=dict)
    regex_keywords: List[RegexKeyword] = field(default_factory=list)
    entries_by_id: Dict[str, KnowledgeEntry] = field(default_factory=dict)

    @property
    def enabled_entries(self) -> List[KnowledgeEntry]:
        """Enabled entries in world order."""
        return list(self.entries_by_id.values())

    def is_empty(self) -> bool:
        return not self.entries_by_id


def _add(table: Dict[str, List[KnowledgeEntry]], key: str, entry: KnowledgeEntry) -> None:
    table.setdefault(key, []).append(entry)


def build_lore_index(world: KnowledgeBase) -> LoreIndex:
    """Build an index from scratch. Prefer ``LoreIndexCache.get_index``."""
    index = LoreIndex(world_id=world.id)

    for entry in world.enabled_entries:
        index.entries_by_id[entry.id] = entry
        for key in entry.keys:
            lower_key = normalize_keyword(key)
            if len(lower_key) < MIN_KEYWORD_LENGTH:
                continue

            if REGEX_METACHARACTERS.search(lower_key):
                try:
                    pattern = re.compile(rf"\b({lower_key})\b", re.IGNORECASE)
                except re.error as e:
                    logger.warning(
                        f"Invalid regex keyword {lower_key!r} in entry '{entry.display_name}': {e}; "
                        f"using exact match"
                    )
                    _add(index.exact, lower_key, entry)
                    continue
                index.regex_keywords.append(RegexKeyword(lower_key, pattern, [entry]))
                continue

            _add(index.exact, lower_key, entry)
            stemmed_key = stem(lower_key)
            if stemmed_key != lower_key:
                _add(index.stemmed, stemmed_key, entry)

    return index


class LoreIndexCache:
    """
    Per-world index cache keyed by world id.

    A cached index is reused while the world's entry snapshot is unchanged;
    any edit to any entry rebuilds that world's index only.
    """

    def __init__(self):
        self._cache: Dict[str, Tuple[str, LoreIndex]] = {}
        self.build_count = 0

    def get_index(self, world: KnowledgeBase) -> LoreIndex:
        snapshot = world.entries_snapshot()
        cached = self._cache.get(world.id)
        if cached is not None and cached[0] == snapshot:
            logger.debug(f"Using cached lore index for world {world.id}")
            return cached[1]

        logger.info(f"Building lore index for world '{world.name}' ({world.id})")
        index = build_lore_index(world)
        self._cache[world.id] = (snapshot, index)
        self.build_count += 1
        return index

    def invalidate(self, world_id: Optional[str] = None) -> None:
        """Drop one world's index, or all of them."""
        if world_id is None:
            self._cache.clear()
        else:
            self._cache.pop(world_id, None)

    def __contains__(self, world_id: str) -> bool:
        return world_id in self._cache
