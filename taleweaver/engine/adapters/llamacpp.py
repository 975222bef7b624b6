"""Adapter for GGUF models through llama-cpp-python."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Sequence

from .base import BaseEngine, DecodeError, TokenizeError

if TYPE_CHECKING:
    import torch

    from ..types import EngineParams

logger = logging.getLogger(__name__)


def _import_llama_cpp():
    try:
        import llama_cpp
    except ImportError as exc:
        raise RuntimeError(
            "llama-cpp-python is not installed. Install the 'llama' extra to load GGUF models."
        ) from exc
    return llama_cpp


class LlamaCppEngine(BaseEngine):
    """
    Engine backed by `llama_cpp.Llama`.

    `Llama.eval` writes at the context's current token count, so `decode`
    requires `start_pos` to match it; the pipeline always advances positions
    monotonically from zero after `clear_memory()`.
    """

    backend_name = "llama_cpp"

    def __init__(self) -> None:
        self._llm = None
        self._lib = None
        self._vocab = None
        self._model_path: str | None = None
        self._n_batch: int = 0

    @classmethod
    def backend_init(cls, params: EngineParams) -> None:
        _import_llama_cpp().llama_backend_init()

    @classmethod
    def backend_free(cls) -> None:
        _import_llama_cpp().llama_backend_free()

    @property
    def n_ctx(self) -> int:
        if self._llm is None:
            return 0
        return int(self._llm.n_ctx())

    @property
    def n_batch(self) -> int:
        return self._n_batch

    @property
    def model_info(self) -> dict[str, Any]:
        return {
            "backend": self.backend_name,
            "model_path": self._model_path,
            "n_ctx": self.n_ctx,
            "n_batch": self._n_batch,
            "loaded": self._llm is not None,
        }

    def load(self, model_path: str, params: EngineParams) -> None:
        llama_cpp = _import_llama_cpp()

        self._model_path = model_path
        self._n_batch = min(int(params.n_batch), int(params.n_ctx))
        # KQV cache stays on the CPU; flash attention off.
        self._llm = llama_cpp.Llama(
            model_path=model_path,
            n_ctx=int(params.n_ctx),
            n_batch=self._n_batch,
            n_threads=int(params.n_threads),
            n_threads_batch=int(params.n_threads_batch),
            use_mmap=bool(params.use_mmap),
            use_mlock=bool(params.use_mlock),
            offload_kqv=False,
            flash_attn=False,
            verbose=False,
        )
        self._lib = llama_cpp
        self._vocab = llama_cpp.llama_model_get_vocab(self._llm.model)

    def unload(self) -> None:
        """`Llama.close()` frees the context before the model."""
        if self._llm is None:
            return
        llm = self._llm
        self._llm = None
        self._vocab = None
        llm.close()

    def _ensure_loaded(self) -> None:
        if self._llm is None:
            raise RuntimeError("Model not loaded. Call load() first.")

    def tokenize(self, text: str) -> list[int]:
        self._ensure_loaded()
        try:
            return list(self._llm.tokenize(text.encode("utf-8"), add_bos=False, special=True))
        except Exception as exc:
            raise TokenizeError(f"tokenizer rejected prompt: {exc}") from exc

    def decode(self, tokens: Sequence[int], *, start_pos: int, want_logits: bool) -> torch.Tensor | None:
        import numpy as np
        import torch

        self._ensure_loaded()
        if not tokens:
            raise DecodeError("empty batch")
        if len(tokens) > self._n_batch:
            raise DecodeError(f"batch of {len(tokens)} tokens exceeds n_batch={self._n_batch}")
        if start_pos != self._llm.n_tokens:
            raise DecodeError(f"position mismatch: start_pos={start_pos} n_tokens={self._llm.n_tokens}")

        try:
            self._llm.eval(list(tokens))
        except Exception as exc:
            raise DecodeError(f"llama_decode failed at pos={start_pos}: {exc}") from exc

        if not want_logits:
            return None
        # Without logits_all, `Llama.scores` is never filled; the context
        # only holds logits for the last token of the batch just decoded.
        try:
            ptr = self._lib.llama_get_logits_ith(self._llm.ctx, -1)
            if not ptr:
                raise DecodeError(f"no logits after decode at pos={start_pos}")
            row = np.array(np.ctypeslib.as_array(ptr, shape=(self._llm.n_vocab(),)), dtype=np.float32)
        except DecodeError:
            raise
        except Exception as exc:
            raise DecodeError(f"logits readback failed at pos={start_pos}: {exc}") from exc
        return torch.from_numpy(row)

    def clear_memory(self) -> None:
        self._ensure_loaded()
        # eval() trims the KV cache from n_tokens onward, so resetting the
        # cursor is enough to start from an empty sequence.
        self._llm.reset()

    def detokenize(self, tokens: Sequence[int]) -> str:
        self._ensure_loaded()
        # special=True so control tokens render as their literal markers.
        return self._llm.detokenize(list(tokens), special=True).decode("utf-8", errors="ignore")

    def is_eog(self, token_id: int) -> bool:
        """True for every end-of-generation token, e.g. both `<|eot_id|>` and `<|end_of_text|>`."""
        self._ensure_loaded()
        return bool(self._lib.llama_vocab_is_eog(self._vocab, int(token_id)))
