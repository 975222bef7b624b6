"""Adapter for Hugging Face Transformers causal LMs."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Sequence

from .base import BaseEngine, DecodeError, TokenizeError

if TYPE_CHECKING:
    import torch

    from ..types import EngineParams

logger = logging.getLogger(__name__)


def _dtype_from_string(dtype: str) -> Any:
    import torch

    dt = dtype.strip().lower()
    if dt in {"fp16", "float16", "half"}:
        return torch.float16
    if dt in {"bf16", "bfloat16"}:
        return torch.bfloat16
    if dt in {"fp32", "float32"}:
        return torch.float32
    raise ValueError(f"Unknown dtype: {dtype!r}")


class HFEngine(BaseEngine):
    """
    Engine backed by `transformers.AutoModelForCausalLM`.

    The execution session is the model's KV cache (`past_key_values`), advanced
    with explicit `cache_position`s so chunked prefill and single-token decode
    share one code path. Clearing memory simply drops the cache.

    Example:
        >>> engine = HFEngine()
        >>> engine.load("path/to/model", EngineParams())
        >>> ids = engine.tokenize("Hello")
        >>> logits = engine.decode(ids, start_pos=0, want_logits=True)
    """

    backend_name = "hf"

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._device: str = "cpu"
        self._dtype = None
        self._n_ctx: int = 0
        self._n_batch: int = 0
        self._past_key_values: Any = None
        self._eog_ids: set[int] = set()

    @classmethod
    def backend_init(cls, params: EngineParams) -> None:
        import torch

        torch.set_num_threads(int(params.n_threads))
        try:
            torch.set_num_interop_threads(int(params.n_threads_batch))
        except RuntimeError:
            # Interop threads can only be set before any parallel work has started.
            logger.debug("torch interop thread count already fixed; keeping it")

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def tokenizer(self):
        """Access the tokenizer (for encoding/decoding at higher layers)."""
        return self._tokenizer

    @property
    def n_ctx(self) -> int:
        return self._n_ctx

    @property
    def n_batch(self) -> int:
        return self._n_batch

    @property
    def model_info(self) -> dict[str, Any]:
        return {
            "backend": self.backend_name,
            "model_path": self._model_path,
            "device": self._device,
            "dtype": str(self._dtype),
            "n_ctx": self._n_ctx,
            "n_batch": self._n_batch,
            "loaded": self._model is not None,
        }

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str, params: EngineParams) -> None:
        """Load a causal LM and its tokenizer.

        `params.use_mmap` maps to `low_cpu_mem_usage`; with it off the weights
        are materialized eagerly. GGUF files are accepted through `gguf_file`.
        """
        from pathlib import Path

        from transformers import AutoModelForCausalLM, AutoTokenizer

        self._model_path = model_path
        self._device = params.device
        self._dtype = _dtype_from_string(params.dtype)

        source = model_path
        extra: dict[str, Any] = {}
        path = Path(model_path)
        if path.suffix.lower() == ".gguf":
            source = str(path.parent)
            extra["gguf_file"] = path.name

        self._tokenizer = AutoTokenizer.from_pretrained(source, **extra)
        self._model = AutoModelForCausalLM.from_pretrained(
            source,
            torch_dtype=self._dtype,
            low_cpu_mem_usage=bool(params.use_mmap),
            **extra,
        )
        self._model.to(self._device)
        self._model.eval()

        max_positions = getattr(self._model.config, "max_position_embeddings", None)
        self._n_ctx = int(params.n_ctx)
        if isinstance(max_positions, int) and max_positions > 0:
            self._n_ctx = min(self._n_ctx, max_positions)
        self._n_batch = min(int(params.n_batch), self._n_ctx)
        self._eog_ids = self._collect_eog_ids()
        self._past_key_values = None

    def unload(self) -> None:
        """Drop the KV cache first, then the model and tokenizer."""
        import gc

        if self._model is None and self._tokenizer is None:
            return

        self._past_key_values = None
        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None

        gc.collect()

    def _collect_eog_ids(self) -> set[int]:
        ids: set[int] = set()
        eos = getattr(self._tokenizer, "eos_token_id", None)
        if isinstance(eos, int):
            ids.add(eos)
        gen_cfg = getattr(self._model, "generation_config", None)
        gen_eos = getattr(gen_cfg, "eos_token_id", None)
        if isinstance(gen_eos, int):
            ids.add(gen_eos)
        elif isinstance(gen_eos, (list, tuple)):
            ids.update(int(t) for t in gen_eos)
        return ids

    def _ensure_loaded(self) -> None:
        """Raise if model/tokenizer not loaded."""
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")

    # -------------------------------------------------------------------------
    # Generation primitives
    # -------------------------------------------------------------------------

    def tokenize(self, text: str) -> list[int]:
        self._ensure_loaded()
        try:
            ids = self._tokenizer.encode(text, add_special_tokens=False)
        except Exception as exc:
            raise TokenizeError(f"tokenizer rejected prompt: {exc}") from exc
        return [int(t) for t in ids]

    def decode(self, tokens: Sequence[int], *, start_pos: int, want_logits: bool) -> torch.Tensor | None:
        import torch

        self._ensure_loaded()
        if not tokens:
            raise DecodeError("empty batch")
        if len(tokens) > self._n_batch:
            raise DecodeError(f"batch of {len(tokens)} tokens exceeds n_batch={self._n_batch}")
        if start_pos + len(tokens) > self._n_ctx:
            raise DecodeError(f"positions up to {start_pos + len(tokens)} exceed n_ctx={self._n_ctx}")

        input_ids = torch.tensor([list(tokens)], dtype=torch.long, device=self._device)
        cache_position = torch.arange(start_pos, start_pos + len(tokens), device=self._device)

        try:
            with torch.no_grad():
                outputs = self._model(
                    input_ids,
                    past_key_values=self._past_key_values,
                    cache_position=cache_position,
                    use_cache=True,
                )
        except Exception as exc:
            raise DecodeError(f"forward pass failed at pos={start_pos}: {exc}") from exc

        self._past_key_values = outputs.past_key_values
        if not want_logits:
            return None
        return outputs.logits[0, -1, :].float()

    def clear_memory(self) -> None:
        self._past_key_values = None

    def detokenize(self, tokens: Sequence[int]) -> str:
        self._ensure_loaded()
        text = self._tokenizer.decode(list(tokens), skip_special_tokens=False)
        # Byte-level BPE renders a partial multi-byte character as U+FFFD.
        return text.rstrip("\ufffd")

    def is_eog(self, token_id: int) -> bool:
        return int(token_id) in self._eog_ids
