"""Engine parameter and generation result types.

These types are used internally by the pool, the pipeline and the adapters.
They are independent of any prompt template or game logic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


Speaker = Literal["system", "user", "assistant"]

FinishReason = Literal["eog", "stop", "json_complete", "punctuation", "context", "length", "error"]


class GenerationState(str, Enum):
    """Lifecycle of a single `generate` call."""

    PROMPT_DECODED = "prompt_decoded"
    SAMPLING = "sampling"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class ChatMessage:
    """One conversation turn as supplied by the caller.

    `user` is the player, `assistant` the dialogue character; `system`
    entries are placeholders and never rendered.
    """

    role: Speaker
    content: str = ""


@dataclass(frozen=True)
class EngineParams:
    """Load-time engine knobs, fixed for the lifetime of an instance.

    Notes:
    - `use_mmap` defaults to False: the whole model is read into resident
      memory up front, which costs RAM but keeps per-request latency steady.
    - `backend=None` picks the adapter from the artifact path.
    """

    n_ctx: int = 2048
    n_batch: int = 256
    n_threads: int = 8
    n_threads_batch: int = 8
    use_mmap: bool = False
    use_mlock: bool = False
    backend: str | None = None
    device: str = "cpu"
    dtype: str = "float32"

    def validate(self) -> None:
        if self.n_ctx <= 0:
            raise ValueError("'engine.n_ctx' must be > 0.")
        if self.n_batch <= 0:
            raise ValueError("'engine.n_batch' must be > 0.")
        if self.n_batch > self.n_ctx:
            raise ValueError("'engine.n_batch' must be <= 'engine.n_ctx'.")
        if self.n_threads <= 0:
            raise ValueError("'engine.n_threads' must be > 0.")
        if self.n_threads_batch <= 0:
            raise ValueError("'engine.n_threads_batch' must be > 0.")


@dataclass(frozen=True)
class Timing:
    prefill_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None


@dataclass(frozen=True)
class GenerationResult:
    """Raw output of one pipeline call."""

    text: str
    state: GenerationState = GenerationState.STOPPED
    finish_reason: FinishReason = "eog"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    timing: Timing = field(default_factory=Timing)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.state is GenerationState.STOPPED
