"""Char-level fake engine shared by the engine tests.

Token ids are code points; id 0 is end-of-generation. The fake answers with
one-hot logits that force a scripted output, so any sampling policy yields
exactly the scripted text.
"""

from __future__ import annotations

import threading
import time
from typing import Sequence

import torch

from taleweaver.engine.adapters.base import BaseEngine, DecodeError, TokenizeError

EOG = 0
VOCAB = 0x10000


def one_hot(token_id: int) -> torch.Tensor:
    logits = torch.full((VOCAB,), -1e9)
    logits[token_id] = 0.0
    return logits


class Recorder:
    def __init__(self) -> None:
        self.backend_inits = 0
        self.backend_frees = 0
        self.loads: list[str] = []
        self.unloads: list[str] = []
        self.decodes: list[tuple[int, int, bool]] = []
        self.active = 0
        self.max_active = 0
        self.lock = threading.Lock()


def make_engine_class(
    scripts: dict[str, str] | str = "",
    *,
    fail_load: set[str] | None = None,
    fail_tokenize: bool = False,
    fail_decode_at: int | None = None,
    decode_delay: float = 0.0,
):
    """Build a fresh `BaseEngine` subclass with its own `Recorder`.

    `scripts` maps a prompt substring to the output it should produce; the
    empty key is the default. A plain string is the default script.
    """
    if isinstance(scripts, str):
        scripts = {"": scripts}
    record = Recorder()

    class FakeEngine(BaseEngine):
        backend_name = "fake"
        recorder = record

        @classmethod
        def backend_init(cls, params) -> None:
            record.backend_inits += 1

        @classmethod
        def backend_free(cls) -> None:
            record.backend_frees += 1

        def load(self, model_path: str, params) -> None:
            if fail_load and model_path in fail_load:
                raise OSError(f"cannot open {model_path}")
            record.loads.append(model_path)
            self.model_path = model_path
            self._n_ctx = params.n_ctx
            self._n_batch = params.n_batch
            self._script = ""
            self._step = 0

        def unload(self) -> None:
            record.unloads.append(self.model_path)

        def tokenize(self, text: str) -> list[int]:
            if fail_tokenize:
                raise TokenizeError("bad input")
            self._script = self._pick_script(text)
            return [ord(ch) for ch in text]

        def _pick_script(self, text: str) -> str:
            for key, script in scripts.items():
                if key and key in text:
                    return script
            return scripts.get("", "")

        def decode(self, tokens: Sequence[int], *, start_pos: int, want_logits: bool):
            with record.lock:
                record.active += 1
                record.max_active = max(record.max_active, record.active)
                record.decodes.append((len(tokens), start_pos, want_logits))
            try:
                if decode_delay:
                    time.sleep(decode_delay)
                if fail_decode_at is not None and start_pos <= fail_decode_at < start_pos + len(tokens):
                    raise DecodeError(f"kv cache full at {fail_decode_at}")
                if not want_logits:
                    return None
                step = self._step
                self._step += 1
                if step < len(self._script):
                    return one_hot(ord(self._script[step]))
                return one_hot(EOG)
            finally:
                with record.lock:
                    record.active -= 1

        def clear_memory(self) -> None:
            self._step = 0

        def detokenize(self, tokens: Sequence[int]) -> str:
            return "".join(chr(t) for t in tokens)

        def is_eog(self, token_id: int) -> bool:
            return token_id == EOG

        @property
        def n_ctx(self) -> int:
            return self._n_ctx

        @property
        def n_batch(self) -> int:
            return self._n_batch

    return FakeEngine


def resolver(engine_cls):
    """`resolve_engine` callable for `EnginePool` that ignores the backend name."""

    def _resolve(backend: str):
        return engine_cls

    return _resolve
