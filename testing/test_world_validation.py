"""
Tests for world validation.

Tests cover:
- Duplicate and overlapping keywords
- Unused, unnamed and placeholder entries
- LLM consistency check parsing and preconditions
"""

import asyncio

import pytest
from fakes import FakeLLMClient, no_sleep

from nexus_engine.llm.base import ParseError, ServerError
from nexus_engine.models import KnowledgeBase, KnowledgeEntry
from nexus_engine.services.world_validation import check_consistency, validate_world

LONG = "This entry has more than enough content to not look like a placeholder at all."


def world_of(*entries):
    return KnowledgeBase(id="w1", name="Aerth", entries=list(entries))


def issues_of_type(issues, issue_type):
    return [i for i in issues if i.type == issue_type]


class TestValidateWorld:
    """Test suite for validate_world."""

    def test_clean_world(self):
        """Test a well-formed world has no issues."""
        world = world_of(
            KnowledgeEntry(id="a", name="Sword", keys=["sword"], content=LONG),
            KnowledgeEntry(id="b", name="Shield", keys=["shield"], content=LONG),
        )
        assert validate_world(world) == []

    def test_duplicate_keyword(self):
        """Test one keyword on two entries is flagged, case-insensitively."""
        world = world_of(
            KnowledgeEntry(id="a", name="Sword", keys=["Blade"], content=LONG),
            KnowledgeEntry(id="b", name="Knife", keys=["blade "], content=LONG),
        )
        [issue] = issues_of_type(validate_world(world), "DuplicateKeyword")

        assert issue.severity == "warning"
        assert issue.entry_ids == ["a", "b"]
        assert issue.related_data["keyword"] == "blade"

    def test_unused_entry(self):
        """Test an entry without keys that is not always active is flagged."""
        world = world_of(
            KnowledgeEntry(id="a", name="Orphan", keys=[" "], content=LONG),
            KnowledgeEntry(id="b", name="Rule", keys=[], content=LONG, is_always_active=True),
        )
        [issue] = issues_of_type(validate_world(world), "UnusedEntry")
        assert issue.entry_ids == ["a"]

    def test_missing_name_and_short_content(self):
        """Test unnamed entries and placeholder content are flagged."""
        world = world_of(KnowledgeEntry(id="a", name="  ", keys=["x1"], content="TODO"))
        issues = validate_world(world)

        assert [i.entry_ids for i in issues_of_type(issues, "MissingName")] == [["a"]]
        assert [i.severity for i in issues_of_type(issues, "ShortContent")] == ["info"]

    def test_overlapping_keyword(self):
        """Test a keyword contained in another entry's keyword is flagged."""
        world = world_of(
            KnowledgeEntry(id="a", name="King", keys=["king"], content=LONG),
            KnowledgeEntry(id="b", name="Kingdom", keys=["kingdom"], content=LONG),
        )
        [issue] = issues_of_type(validate_world(world), "OverlappingKeyword")

        assert issue.entry_ids == ["a", "b"]
        assert issue.related_data == {"keyword": "king", "other_keyword": "kingdom"}

    def test_overlap_within_one_entry_is_fine(self):
        """Test substring keys on the same entry are not flagged."""
        world = world_of(KnowledgeEntry(id="a", name="King", keys=["king", "kingdom"], content=LONG))
        assert issues_of_type(validate_world(world), "OverlappingKeyword") == []


class TestCheckConsistency:
    """Test suite for check_consistency."""

    WORLD = world_of(
        KnowledgeEntry(id="a", name="King", keys=["king"], content="The king is alive."),
        KnowledgeEntry(id="b", name="Funeral", keys=["funeral"], content="The king died last winter."),
    )

    def test_reports_contradictions(self):
        """Test contradictions become warnings with the conflicting ids."""
        llm = FakeLLMClient(responses=[
            '{"contradictions": [{"explanation": "The king is both alive and dead.", "conflictingEntryIds": ["a", "b"]}]}'
        ])
        [issue] = asyncio.run(check_consistency(self.WORLD, llm))

        assert issue.type == "Contradiction"
        assert issue.severity == "warning"
        assert issue.entry_ids == ["a", "b"]
        assert llm.generate_calls[0]["json_mode"] is True
        assert llm.generate_calls[0]["temperature"] == 0.2
        assert "--- Entry ID: a, Name: King ---" in llm.generate_calls[0]["messages"][1]["content"]

    def test_accepts_bare_array(self):
        """Test a bare JSON array reply is accepted."""
        llm = FakeLLMClient(responses=['Here you go: [{"explanation": "x", "conflictingEntryIds": ["a"]}]'])
        issues = asyncio.run(check_consistency(self.WORLD, llm))
        assert [i.message for i in issues] == ["x"]

    def test_entry_ids_shape_is_normalized(self):
        """Test a single id string stays whole and a non-list value is dropped."""
        llm = FakeLLMClient(responses=[
            '{"contradictions": ['
            '{"explanation": "one", "conflictingEntryIds": "king-entry"}, '
            '{"explanation": "two", "conflictingEntryIds": 7}]}'
        ])
        issues = asyncio.run(check_consistency(self.WORLD, llm))

        assert [i.entry_ids for i in issues] == [["king-entry"], []]

    def test_no_contradictions(self):
        """Test an empty list means no issues."""
        llm = FakeLLMClient(responses=['{"contradictions": []}'])
        assert asyncio.run(check_consistency(self.WORLD, llm)) == []

    def test_unparsable_reply(self):
        """Test a reply without a list raises ParseError."""
        llm = FakeLLMClient(responses=["I found nothing wrong."])
        with pytest.raises(ParseError):
            asyncio.run(check_consistency(self.WORLD, llm))

    def test_needs_two_enabled_entries(self):
        """Test fewer than two enabled entries skips the call."""
        world = world_of(
            KnowledgeEntry(id="a", content="One."),
            KnowledgeEntry(id="b", content="Two.", enabled=False),
        )
        llm = FakeLLMClient()
        assert asyncio.run(check_consistency(world, llm)) == []
        assert llm.generate_calls == []

    def test_server_error_is_retried(self):
        """Test the consistency call goes through the retry policy."""
        llm = FakeLLMClient(responses=[ServerError("Server error: 500", 500), '{"contradictions": []}'])
        assert asyncio.run(check_consistency(self.WORLD, llm, sleep=no_sleep)) == []
        assert len(llm.generate_calls) == 2
