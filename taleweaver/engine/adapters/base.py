"""Base engine interface for inference backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    import torch

    from ..types import EngineParams


class TokenizeError(RuntimeError):
    """The backend tokenizer rejected the input."""


class DecodeError(RuntimeError):
    """The backend failed to process a batch of tokens."""


class BaseEngine(ABC):
    """
    Abstract base class for backend engines.

    An engine owns one loaded model artifact plus the execution session bound
    to it (KV cache / llama context). The pipeline drives it token by token, so
    the surface is deliberately low level: tokenize, decode a chunk at explicit
    positions, read back logits, clear memory.

    Thread Safety:
        Engines are NOT thread-safe. The pool pairs every engine with a lock
        and the pipeline holds it for a whole generation.
    """

    #: Registry name of the backend (e.g. "hf", "llama_cpp").
    backend_name: str = ""

    # -------------------------------------------------------------------------
    # Process-wide lifecycle
    # -------------------------------------------------------------------------

    @classmethod
    def backend_init(cls, params: EngineParams) -> None:
        """One-time process-wide setup, run before the first load."""

    @classmethod
    def backend_free(cls) -> None:
        """Process-wide teardown, run after the last unload."""

    # -------------------------------------------------------------------------
    # Instance lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    def load(self, model_path: str, params: EngineParams) -> None:
        """
        Load the model artifact and create its execution session.

        Args:
            model_path: Local path of the artifact.
            params: Context size, batch width, thread counts, mmap policy.

        Raises:
            Exception: Any failure; the pool turns it into a fatal load error.
        """
        pass

    def unload(self) -> None:
        """
        Release the session, then the model.

        Default implementation does nothing; override if cleanup is needed.
        Must be safe to call more than once.
        """
        pass

    # -------------------------------------------------------------------------
    # Generation primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    def tokenize(self, text: str) -> list[int]:
        """
        Tokenize a fully rendered prompt. Special markup is parsed, no BOS is added.

        Raises:
            TokenizeError: If the tokenizer cannot handle the input.
        """
        pass

    @abstractmethod
    def decode(self, tokens: Sequence[int], *, start_pos: int, want_logits: bool) -> torch.Tensor | None:
        """
        Feed one chunk of tokens into the session.

        Args:
            tokens: Token ids; at most `n_batch` of them.
            start_pos: Absolute position of the first token in the chunk.
            want_logits: Return the last token's next-token logits.

        Returns:
            1-D float tensor of vocabulary logits, or None.

        Raises:
            DecodeError: If the backend fails to process the chunk.
        """
        pass

    @abstractmethod
    def clear_memory(self) -> None:
        """Drop all session-local cached state."""
        pass

    @abstractmethod
    def detokenize(self, tokens: Sequence[int]) -> str:
        """Render token ids back to text (incomplete UTF-8 tails are dropped)."""
        pass

    @abstractmethod
    def is_eog(self, token_id: int) -> bool:
        """Whether the token is an end-of-generation marker of the vocabulary."""
        pass

    @property
    @abstractmethod
    def n_ctx(self) -> int:
        """Context window (token capacity) of the session."""
        pass

    @property
    @abstractmethod
    def n_batch(self) -> int:
        """Maximum tokens per decode call."""
        pass

    @property
    def model_info(self) -> dict[str, Any]:
        return {"backend": self.backend_name}
