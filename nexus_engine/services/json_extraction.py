"""
Helpers for extracting and parsing JSON blocks from LLM responses.
"""

from __future__ import annotations

import json
import re
from typing import Any, List, Literal, Tuple

from pydantic import ValidationError

from nexus_engine.llm.base import ParseError
from nexus_engine.models import TurnAction


ExpectedRoot = Literal["array", "object"]


def extract_json_block(text: str, expected_root: ExpectedRoot) -> Tuple[Any | None, str]:
    """
    Extract and parse JSON from text, returning (parsed, parse_mode).

    parse_mode:
        - "raw" if full text parses directly
        - "fenced" if parsed from first fenced block
        - "balanced" if parsed from first balanced [] or {} substring
        - "failed" if parsing fails
    """
    if text is None:
        return None, "failed"

    parsed = _try_load(text)
    if parsed is not None and _matches_root(parsed, expected_root):
        return parsed, "raw"

    stripped = text.strip()

    fenced = _extract_first_fenced_block(stripped)
    if fenced is not None:
        parsed = _try_load(fenced)
        if parsed is not None and _matches_root(parsed, expected_root):
            return parsed, "fenced"

    balanced = _extract_first_balanced(stripped, expected_root)
    if balanced is not None:
        parsed = _try_load(balanced)
        if parsed is not None and _matches_root(parsed, expected_root):
            return parsed, "balanced"

    return None, "failed"


def extract_json_field(text: str, key: str) -> str:
    """
    Return the string value of ``key`` from a JSON object reply.

    Raises:
        ParseError: No object found or the key is missing/not a string
    """
    parsed, mode = extract_json_block(text, "object")
    if parsed is None:
        raise ParseError(f"Expected a JSON object with key '{key}'")
    value = parsed.get(key)
    if not isinstance(value, str):
        raise ParseError(f"JSON object ({mode}) has no string field '{key}'")
    return value


def parse_turn_actions(text: str) -> List[TurnAction]:
    """
    Parse a scene director reply into turn actions.

    Accepts ``{"turn": [...]}`` or a bare array, raw or embedded in prose.
    The speaker may be given as ``characterName`` or ``speakerName``.

    Raises:
        ParseError: No turn array, or an item without speaker/content
    """
    items = None
    parsed, _ = extract_json_block(text, "object")
    if isinstance(parsed, dict) and isinstance(parsed.get("turn"), list):
        items = parsed["turn"]
    else:
        parsed, _ = extract_json_block(text, "array")
        if isinstance(parsed, list):
            items = parsed

    if items is None:
        raise ParseError("API did not return a `turn` array.")

    actions = []
    for item in items:
        if not isinstance(item, dict):
            raise ParseError(f"Turn action is not an object: {item!r}")
        data = dict(item)
        if "characterName" not in data and "speakerName" in data:
            data["characterName"] = data.pop("speakerName")
        try:
            actions.append(TurnAction.model_validate(data))
        except ValidationError as e:
            raise ParseError(f"Invalid turn action {item!r}: {e.error_count()} error(s)") from e
    return actions


def _try_load(text: str) -> Any | None:
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return None


def _matches_root(parsed: Any, expected_root: ExpectedRoot) -> bool:
    if expected_root == "array":
        return isinstance(parsed, list)
    return isinstance(parsed, dict)


def _extract_first_fenced_block(text: str) -> str | None:
    # Match ```json ... ``` or ``` ... ```
    match = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL | re.IGNORECASE)
    if not match:
        return None
    return match.group(1).strip()


def _extract_first_balanced(text: str, expected_root: ExpectedRoot) -> str | None:
    if expected_root == "array":
        opener = "["
        closer = "]"
    else:
        opener = "{"
        closer = "}"

    start = text.find(opener)
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == "\"":
                in_string = False
            continue

        if ch == "\"":
            in_string = True
            continue

        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]

    return None
