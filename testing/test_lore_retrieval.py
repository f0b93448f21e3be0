"""
Tests for lore retrieval scoring.

Tests cover:
- Keyword matching (exact, stemmed, regex occurrence counts)
- Recency decay and frequency weighting
- Always-active, interaction and speaker-link signals
- Stable ordering and the entry limit
- Lore suggestions
"""

import math

import pytest

from nexus_engine.config.models import RetrievalConfig
from nexus_engine.models import (
    ConversationMessage,
    EntryInteractionStat,
    KnowledgeBase,
    KnowledgeEntry,
    MessageRole,
)
from nexus_engine.services.lore_index import build_lore_index
from nexus_engine.services.lore_retrieval import (
    AuxiliaryText,
    LoreRetriever,
    find_matches_in_text,
    recency_score,
)


def user(content):
    return ConversationMessage(role=MessageRole.USER, content=content)


def assistant(content):
    return ConversationMessage(role=MessageRole.ASSISTANT, content=content)


def index_of(*entries):
    return build_lore_index(KnowledgeBase(id="w1", name="Aerth", entries=list(entries)))


SWORD = KnowledgeEntry(id="sword", name="Sword", keys=["sword"], content="A blade.")
SHIELD = KnowledgeEntry(id="shield", name="Shield", keys=["shield"], content="A shield.")


class TestFindMatches:
    """Test suite for find_matches_in_text."""

    def test_exact_word_match(self):
        """Test only entries whose keys appear as words are matched."""
        matches = find_matches_in_text("I draw my sword", index_of(SWORD, SHIELD))

        assert list(matches) == ["sword"]
        assert matches["sword"].count == 1

    def test_exact_match_is_case_insensitive_and_deduplicated(self):
        """Test repeated words count once."""
        matches = find_matches_in_text("Sword! The SWORD, the sword.", index_of(SWORD))
        assert matches["sword"].count == 1

    def test_stemmed_key_matches_singular_word(self):
        """Test a plural key is found through the singular form."""
        entry = KnowledgeEntry(id="d", keys=["dragons"])
        matches = find_matches_in_text("a dragon appears", index_of(entry))

        assert matches["d"].count == 1
        assert matches["d"].reasons[0].startswith("Stem:")

    def test_exact_word_is_not_double_counted_by_stem(self):
        """Test a word equal to the key does not also count as a stem hit."""
        entry = KnowledgeEntry(id="d", keys=["dragons"])
        matches = find_matches_in_text("dragons everywhere", index_of(entry))

        assert matches["d"].count == 1
        assert matches["d"].reasons == ['Exact: "dragons"']

    def test_regex_counts_every_occurrence(self):
        """Test regex keys count each hit."""
        entry = KnowledgeEntry(id="d", keys=["dragons?"])
        matches = find_matches_in_text("a dragon and two dragons", index_of(entry))
        assert matches["d"].count == 2

    def test_empty_text(self):
        """Test no text yields no matches."""
        assert find_matches_in_text("", index_of(SWORD)) == {}
        assert find_matches_in_text(None, index_of(SWORD)) == {}


class TestRecencyScore:
    """Test suite for recency decay."""

    def test_decay_and_floor(self):
        """Test the base score drops by two per turn and never below two."""
        assert [recency_score(age) for age in range(7)] == [12, 10, 8, 6, 4, 2, 2]


class TestLoreRetriever:
    """Test suite for LoreRetriever.retrieve."""

    def test_contextual_match_in_newest_message(self):
        """Test a single mention in the newest message scores 12."""
        ranked = LoreRetriever().retrieve(index_of(SWORD, SHIELD), [user("I draw my sword")])

        assert [s.entry.id for s in ranked] == ["sword"]
        assert ranked[0].score == 12

    def test_older_messages_score_lower(self):
        """Test the same mention scores less the older the message is."""
        window = [user("the shield"), assistant("hm"), user("the sword")]
        ranked = LoreRetriever().retrieve(index_of(SWORD, SHIELD), window)
        scores = {s.entry.id: s.score for s in ranked}

        assert scores == {"sword": 12, "shield": 8}

    def test_frequency_weighting(self):
        """Test multiple hits in one text scale by count^1.2."""
        entry = KnowledgeEntry(id="d", keys=["dragons?"])
        ranked = LoreRetriever().retrieve(index_of(entry), [user("a dragon and two dragons")])
        assert ranked[0].score == pytest.approx(12 * math.pow(2, 1.2))

    def test_always_active_entries_rank_high(self):
        """Test always-active entries score at least the flat bonus."""
        rule = KnowledgeEntry(id="rule", keys=[], is_always_active=True, content="Magic is rare.")
        ranked = LoreRetriever().retrieve(index_of(SWORD, rule), [user("I draw my sword")])

        assert ranked[0].entry.id == "rule"
        assert ranked[0].score >= 100
        assert ranked[1].entry.id == "sword"

    def test_interaction_stats(self):
        """Test viewed entries get round(log1p(views) * 15)."""
        stats = {"shield": EntryInteractionStat(view_count=1)}
        ranked = LoreRetriever().retrieve(index_of(SWORD, SHIELD), [user("hello")], interaction_stats=stats)

        assert [s.entry.id for s in ranked] == ["shield"]
        assert ranked[0].score == round(math.log1p(1) * 15)

    def test_speaker_link_bonus(self):
        """Test an entry keyed on an active character's name gets the link bonus."""
        elara = KnowledgeEntry(id="elara", name="Elara", keys=["Elara"], content="A ranger.")
        ranked = LoreRetriever().retrieve(index_of(elara), [user("hello")], linked_speaker_names=["Elara"])

        assert ranked[0].score == 50
        assert ranked[0].reasons == ['Linked to active character: "Elara"']

    def test_persona_texts_use_fixed_weights(self):
        """Test auxiliary texts add their own weight, not the recency score."""
        ranked = LoreRetriever().retrieve(
            index_of(SWORD, SHIELD),
            [],
            auxiliary_texts=[
                AuxiliaryText("carries a sword", 5, "User Persona"),
                AuxiliaryText("hides behind a shield", 3, "Character Persona"),
                AuxiliaryText(None, 5, "Empty"),
            ],
        )
        assert {s.entry.id: s.score for s in ranked} == {"sword": 5, "shield": 3}

    def test_ties_keep_first_scored_order(self):
        """Test equally scored entries stay in world order."""
        entries = [
            KnowledgeEntry(id=f"rule{i}", is_always_active=True, content="x") for i in range(4)
        ]
        ranked = LoreRetriever().retrieve(index_of(*entries), [])
        assert [s.entry.id for s in ranked] == ["rule0", "rule1", "rule2", "rule3"]

    def test_result_is_limited(self):
        """Test at most max_lore_entries are returned."""
        entries = [
            KnowledgeEntry(id=f"rule{i}", is_always_active=True, content="x") for i in range(5)
        ]
        retriever = LoreRetriever(RetrievalConfig(max_lore_entries=2))
        assert [s.entry.id for s in retriever.retrieve(index_of(*entries), [])] == ["rule0", "rule1"]

    def test_unmatched_entries_are_dropped(self):
        """Test entries with no signal are not returned."""
        assert LoreRetriever().retrieve(index_of(SWORD), [user("nothing here")]) == []


class TestSuggest:
    """Test suite for LoreRetriever.suggest."""

    def test_suggests_matched_entries(self):
        """Test entries mentioned in the messages are suggested, best first."""
        messages = [user("the shield"), assistant("the sword"), user("the sword again"), user("okay")]
        suggestions = LoreRetriever().suggest(index_of(SWORD, SHIELD), messages)
        assert [e.id for e in suggestions] == ["sword", "shield"]

    def test_skips_always_active_and_named_in_last_message(self):
        """Test always-active entries and entries named in the last message are excluded."""
        rule = KnowledgeEntry(id="rule", name="Rule", keys=["magic"], is_always_active=True)
        messages = [user("the shield and magic"), user("my Sword")]
        suggestions = LoreRetriever().suggest(index_of(SWORD, SHIELD, rule), messages)
        assert [e.id for e in suggestions] == ["shield"]
