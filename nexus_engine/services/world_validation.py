"""
World validation

Static checks over a knowledge base (duplicate, overlapping and missing
keywords, unnamed and placeholder entries) plus an optional LLM pass that
looks for contradictions between entries.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from nexus_engine.config.models import RetryConfig
from nexus_engine.llm.base import BaseLLMClient, ParseError
from nexus_engine.llm.retry import with_retries
from nexus_engine.models import KnowledgeBase
from .json_extraction import extract_json_block

logger = logging.getLogger(__name__)

MIN_CONTENT_LENGTH = 50
CONSISTENCY_TEMPERATURE = 0.2

IssueType = Literal[
    "DuplicateKeyword",
    "UnusedEntry",
    "MissingName",
    "ShortContent",
    "OverlappingKeyword",
    "Contradiction",
]

CONSISTENCY_SYSTEM_PROMPT = """You are a meticulous continuity editor for a fictional world. Your task is to analyze a set of lore entries and identify any direct contradictions or significant logical inconsistencies.

CRITICAL INSTRUCTIONS:
1.  Read all the provided lore entries carefully. Each entry has a unique ID.
2.  Identify pairs or groups of entries that contain conflicting information. Focus on direct contradictions (e.g., "The king is alive" vs. "The king is dead"; "Magic is impossible" vs. "She is a wizard").
3.  For each contradiction you find, you MUST provide a concise explanation of the conflict and the exact IDs of the entries involved.
4.  If there are no contradictions, return an empty list.
5.  Respond ONLY with a JSON object of the form {"contradictions": [{"explanation": string, "conflictingEntryIds": [string]}]}."""


@dataclass
class ValidationIssue:
    type: IssueType
    severity: Literal["warning", "info"]
    message: str
    entry_ids: List[str]
    related_data: Dict[str, Any] = field(default_factory=dict)


def validate_world(world: KnowledgeBase) -> List[ValidationIssue]:
    """Run the static lint checks. Disabled entries are included."""
    issues: List[ValidationIssue] = []
    if not world.entries:
        return issues

    names = {e.id: e.name or "Unnamed" for e in world.entries}

    keyword_map: "OrderedDict[str, List[str]]" = OrderedDict()
    for entry in world.entries:
        for key in entry.keys:
            lower_key = key.strip().lower()
            if lower_key:
                keyword_map.setdefault(lower_key, []).append(entry.id)

    for keyword, entry_ids in keyword_map.items():
        if len(entry_ids) > 1:
            entry_names = [names[i] for i in entry_ids]
            issues.append(ValidationIssue(
                type="DuplicateKeyword",
                severity="warning",
                message=(
                    f'Keyword "{keyword}" is used in multiple entries: {", ".join(entry_names)}. '
                    f"This can cause unpredictable lore injection."
                ),
                entry_ids=entry_ids,
                related_data={"keyword": keyword, "other_entry_names": entry_names},
            ))

    for entry in world.entries:
        name = names[entry.id]
        has_keys = any(k.strip() for k in entry.keys)
        if not has_keys and not entry.is_always_active:
            issues.append(ValidationIssue(
                type="UnusedEntry",
                severity="info",
                message=f'Entry "{name}" has no keywords and is not "Always Active", so it may never be used.',
                entry_ids=[entry.id],
            ))
        if not entry.name or not entry.name.strip():
            issues.append(ValidationIssue(
                type="MissingName",
                severity="warning",
                message="This entry is missing a name, which can make it hard to manage.",
                entry_ids=[entry.id],
            ))
        if len(entry.content.strip()) < MIN_CONTENT_LENGTH:
            issues.append(ValidationIssue(
                type="ShortContent",
                severity="info",
                message=f'Content for "{name}" is very short. It might be a placeholder.',
                entry_ids=[entry.id],
            ))

    keywords = sorted(keyword_map, key=len)
    for i, shorter in enumerate(keywords):
        for longer in keywords[i + 1:]:
            if shorter not in longer:
                continue
            shorter_ids = keyword_map[shorter]
            longer_ids = keyword_map[longer]
            if any(entry_id not in longer_ids for entry_id in shorter_ids):
                issues.append(ValidationIssue(
                    type="OverlappingKeyword",
                    severity="info",
                    message=(
                        f'Keyword "{shorter}" is a substring of "{longer}". This might cause the wrong '
                        f"entry to be triggered. Consider making keywords more specific."
                    ),
                    entry_ids=list(dict.fromkeys(shorter_ids + longer_ids)),
                    related_data={"keyword": shorter, "other_keyword": longer},
                ))

    return issues


async def check_consistency(
    world: KnowledgeBase,
    llm_client: BaseLLMClient,
    retry_config: Optional[RetryConfig] = None,
    sleep=None,
) -> List[ValidationIssue]:
    """
    Ask the model for contradictions between enabled entries.

    Needs at least two enabled entries. Server errors are retried; other
    provider errors propagate.

    Raises:
        LLMError: Provider failure (including ConfigurationError)
        ParseError: Reply is not a contradictions list
    """
    enabled = [e for e in world.entries if e.enabled]
    if len(enabled) < 2:
        return []

    world_content = "\n\n".join(
        f"--- Entry ID: {e.id}, Name: {e.name or 'Unnamed'} ---\n{e.content}"
        for e in enabled
        if e.content
    )
    if not world_content:
        return []

    prompt = (
        f'Here are the lore entries for the world of "{world.name}". '
        f"Please analyze them for contradictions.\n\n{world_content}"
    )

    async def call():
        return await llm_client.generate(
            prompt,
            system_prompt=CONSISTENCY_SYSTEM_PROMPT,
            temperature=CONSISTENCY_TEMPERATURE,
            json_mode=True,
        )

    logger.info(f"Checking world '{world.name}' for inconsistencies ({len(enabled)} entries)")
    retry_kwargs = {"sleep": sleep} if sleep is not None else {}
    response = await with_retries(call, retry_config, description="Consistency check", **retry_kwargs)

    parsed, _ = extract_json_block(response.content, "object")
    if isinstance(parsed, dict) and "contradictions" in parsed:
        reports = parsed["contradictions"]
    else:
        parsed, _ = extract_json_block(response.content, "array")
        if parsed is None:
            raise ParseError("Consistency check did not return a contradictions list")
        reports = parsed

    if not isinstance(reports, list):
        raise ParseError("Consistency check did not return a contradictions list")

    issues = []
    for report in reports:
        if not isinstance(report, dict) or "explanation" not in report:
            logger.warning(f"Skipping malformed contradiction report: {report!r}")
            continue
        entry_ids = report.get("conflictingEntryIds") or []
        if isinstance(entry_ids, str):
            entry_ids = [entry_ids]
        elif not isinstance(entry_ids, list):
            logger.warning(f"Ignoring malformed conflictingEntryIds: {entry_ids!r}")
            entry_ids = []
        issues.append(ValidationIssue(
            type="Contradiction",
            severity="warning",
            message=str(report["explanation"]),
            entry_ids=[str(i) for i in entry_ids],
        ))
    logger.info(f"Consistency check found {len(issues)} contradictions")
    return issues
