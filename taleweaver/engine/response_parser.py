"""Lenient extraction of role results from quasi-JSON model output.

The structured roles are asked for a single JSON object, but the text that
comes back may carry chatter around it, lose a closing quote, or invent
fields. The parsers here scan for the few fields they need and fall back to
documented defaults, so they never raise:

    noise {"action": "DEPART", "items": ["sword"], "scene_context": "x"} trailing

This is not a JSON parser. Nested objects, escaped quotes inside list items
and non-string list elements are out of scope.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


GM_ACTIONS: frozenset[str] = frozenset({"CONTINUE", "DEPART"})
DEFAULT_ACTION = "CONTINUE"
DEFAULT_SCENE_CONTEXT = "The conversation with the young traveller continues."
DEFAULT_HIT_TEXT = "attack hit!"
DEFAULT_MISS_TEXT = "attack missed"

_SCALAR_END = ",}\n\r"
_LEADING_INT = re.compile(r"[+-]?\d+")


@dataclass(frozen=True)
class GmResponse:
    scene_context: str = DEFAULT_SCENE_CONTEXT
    action: str = DEFAULT_ACTION
    items: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class BattleResponse:
    damage: int = 0
    hit: bool = False
    effect_text: str = DEFAULT_MISS_TEXT


# =============================================================================
# Scanning helpers
# =============================================================================


def extract_object(raw: str) -> str | None:
    """Return the span from the first `{` to the last `}`, or None."""
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end == -1 or start >= end:
        return None
    return raw[start : end + 1]


def _value_start(body: str, key: str) -> int | None:
    key_pos = body.find(f'"{key}"')
    if key_pos == -1:
        return None
    colon = body.find(":", key_pos + len(key) + 2)
    if colon == -1:
        return None
    return colon + 1


def find_string(body: str, key: str) -> str | None:
    """Quoted key, then the colon, then the first quoted value after it."""
    start = _value_start(body, key)
    if start is None:
        return None
    open_quote = body.find('"', start)
    if open_quote == -1:
        return None
    close_quote = body.find('"', open_quote + 1)
    if close_quote == -1:
        return None
    return body[open_quote + 1 : close_quote]


def find_string_list(body: str, key: str) -> list[str] | None:
    """Quoted strings inside the `[...]` following the key."""
    key_pos = body.find(f'"{key}"')
    if key_pos == -1:
        return None
    open_bracket = body.find("[", key_pos)
    if open_bracket == -1:
        return None
    close_bracket = body.find("]", open_bracket)
    if close_bracket == -1:
        return None

    items: list[str] = []
    for segment in body[open_bracket + 1 : close_bracket].split(","):
        first = segment.find('"')
        last = segment.rfind('"')
        if first == -1 or first == last:
            continue
        items.append(segment[first + 1 : last])
    return items


def find_scalar(body: str, key: str) -> str | None:
    """Read a quoted string, a number, or `true`/`false` after the key.

    Unquoted values run to the next `,`, `}` or line break.
    """
    start = _value_start(body, key)
    if start is None:
        return None

    n = len(body)
    while start < n and body[start] in " \t\n\r":
        start += 1
    if start >= n:
        return None

    first = body[start]
    if first == '"':
        end = start + 1
        while end < n:
            if body[end] == '"' and body[end - 1] != "\\":
                return body[start + 1 : end]
            end += 1
        return None

    if first.isdigit() or first in "-+tf":
        end = start
        while end < n and body[end] not in _SCALAR_END:
            end += 1
        return body[start:end].rstrip(" \t")

    return None


# =============================================================================
# Role parsers
# =============================================================================


def parse_gm_response(raw: str) -> GmResponse:
    """Extract scene context, action tag and item list from GM output."""
    body = extract_object(raw)
    if body is None:
        logger.debug("GM output has no JSON object; using defaults")
        return GmResponse()

    scene_context = find_string(body, "scene_context") or DEFAULT_SCENE_CONTEXT

    action = (find_string(body, "action") or "").strip().upper()
    if action not in GM_ACTIONS:
        if action:
            logger.debug("GM action %r is not one of %s; using %s", action, sorted(GM_ACTIONS), DEFAULT_ACTION)
        action = DEFAULT_ACTION

    items = find_string_list(body, "items") or []
    return GmResponse(scene_context=scene_context, action=action, items=items)


def parse_battle_response(raw: str) -> BattleResponse:
    """Extract damage, hit flag and effect text from arbiter output."""
    body = extract_object(raw)
    if body is None:
        logger.debug("Battle output has no JSON object; scoring a miss")
        return BattleResponse()

    damage = 0
    damage_str = find_scalar(body, "damage")
    if damage_str:
        # Leading integer only: "15 (weak spot!)" is 15, "12.5" is 12.
        match = _LEADING_INT.match(damage_str.strip())
        if match:
            damage = int(match.group())
        else:
            logger.debug("Unparseable damage %r; using 0", damage_str)

    hit = find_scalar(body, "hit") == "true"

    effect_text = find_scalar(body, "effect_text")
    if not effect_text:
        effect_text = DEFAULT_HIT_TEXT if hit else DEFAULT_MISS_TEXT

    return BattleResponse(damage=damage, hit=hit, effect_text=effect_text)
