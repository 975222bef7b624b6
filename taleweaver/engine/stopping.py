"""Per-role stopping policy and its per-call tracker.

After every produced token the tracker checks, in order:

1. literal stop markers in the accumulated text,
2. the role's semantic stop (balanced JSON braces, or sentence-ending
   punctuation past a minimum length),
3. the context-position ceiling,
4. the token budget.

End-of-generation tokens are handled by the pipeline before any text is
appended, so they always win.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Sequence

from .types import FinishReason


LLAMA3_STOP_MARKERS: tuple[str, ...] = ("<|eot_id|>", "<|end_of_text|>", "[/GPT]", "</s>")

LLAMA3_CLEANUP_MARKERS: tuple[str, ...] = (
    "<|eot_id|>",
    "<|start_header_id|>",
    "<|end_header_id|>",
    "<|begin_of_text|>",
    "[/GPT]",
    "[GPT]",
    "</s>",
    "<s>",
    "<|end_of_text|>",
)

MINIMAL_CLEANUP_MARKERS: tuple[str, ...] = ("<|eot_id|>", "<|end_of_text|>", "</s>")

DIALOGUE_PUNCTUATION: tuple[str, ...] = ("。", "！", "？", ".", "!", "?")


@dataclass(frozen=True)
class StoppingPolicy:
    """Stopping rules for one role.

    Notes:
    - `json_braces` only fires once an opening brace has been produced.
    - `terminal_punctuation` is for free dialogue; it needs more than
      `min_length` characters of output so short fragments do not end a line.
    """

    stop_markers: tuple[str, ...] = LLAMA3_STOP_MARKERS
    json_braces: bool = False
    terminal_punctuation: tuple[str, ...] = ()
    min_length: int = 20
    cleanup_markers: tuple[str, ...] = LLAMA3_CLEANUP_MARKERS
    strip_prefixes: tuple[str, ...] = ()

    def validate(self) -> None:
        if self.min_length < 0:
            raise ValueError("'stopping.min_length' must be >= 0.")
        if self.json_braces and self.terminal_punctuation:
            raise ValueError("'stopping.json_braces' and 'stopping.terminal_punctuation' are exclusive.")
        for name in ("stop_markers", "cleanup_markers", "terminal_punctuation", "strip_prefixes"):
            if any(not isinstance(s, str) or not s for s in getattr(self, name)):
                raise ValueError(f"'stopping.{name}' must contain non-empty strings.")

    def merged(self, override: Any | None) -> "StoppingPolicy":
        if override is None:
            return self
        if isinstance(override, StoppingPolicy):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("'stopping' must be an object.")

        data: dict[str, Any] = {}
        for key, raw in override.items():
            if key in {"stop_markers", "terminal_punctuation", "cleanup_markers", "strip_prefixes"}:
                if isinstance(raw, str) or not isinstance(raw, (list, tuple)):
                    raise ValueError(f"'stopping.{key}' must be a list of strings.")
                data[key] = tuple(raw)
            elif key == "json_braces":
                if not isinstance(raw, bool):
                    raise ValueError("'stopping.json_braces' must be a boolean.")
                data[key] = raw
            elif key == "min_length":
                if isinstance(raw, bool) or not isinstance(raw, int):
                    raise ValueError("'stopping.min_length' must be an integer.")
                data[key] = raw
            else:
                raise ValueError(f"Unknown stopping option: {key!r}")

        merged = replace(self, **data)
        merged.validate()
        return merged


@dataclass
class StopTracker:
    """Mutable stop state for one generation call."""

    policy: StoppingPolicy
    n_ctx: int
    max_tokens: int
    produced: int = 0
    json_started: bool = False
    brace_depth: int = 0
    marker_index: int | None = field(default=None, repr=False)

    def check(self, piece: str, text: str, *, position: int) -> FinishReason | None:
        """Evaluate the stop conditions after `piece` was appended to `text`.

        Args:
            piece: Text contributed by the newest token.
            text: Accumulated output including `piece`.
            position: Absolute position the newest token would be decoded at.
        """
        self.produced += 1
        policy = self.policy

        idx = find_earliest(text, policy.stop_markers)
        if idx is not None:
            self.marker_index = idx
            return "stop"

        if policy.json_braces and self._json_complete(piece):
            return "json_complete"

        if policy.terminal_punctuation and len(text) > policy.min_length:
            if any(p in piece for p in policy.terminal_punctuation):
                return "punctuation"

        if position >= self.n_ctx - 1:
            return "context"

        if self.produced >= self.max_tokens:
            return "length"
        return None

    def _json_complete(self, piece: str) -> bool:
        if not self.json_started:
            start = piece.find("{")
            if start == -1:
                return False
            self.json_started = True
            piece = piece[start:]
        for ch in piece:
            if ch == "{":
                self.brace_depth += 1
            elif ch == "}":
                self.brace_depth -= 1
                if self.brace_depth <= 0:
                    return True
        return False


def find_earliest(text: str, markers: Sequence[str]) -> int | None:
    earliest: int | None = None
    for marker in markers:
        idx = text.find(marker)
        if idx == -1:
            continue
        if earliest is None or idx < earliest:
            earliest = idx
    return earliest


def cleanup_text(text: str, policy: StoppingPolicy) -> str:
    """Truncate leaked marker fragments and speaker prefixes from final output."""
    for marker in policy.cleanup_markers:
        idx = text.find(marker)
        if idx != -1:
            text = text[:idx]
    for prefix in policy.strip_prefixes:
        idx = text.find(prefix)
        if idx != -1:
            text = text[:idx] if idx > 0 else text[len(prefix):]
    return text
