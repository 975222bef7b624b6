"""Generation pipeline: tokenize, chunked prompt decode, then the sampling loop.

Every call starts from a cleared engine memory; nothing is cached across
turns. The prompt is fed in chunks of at most `n_batch` tokens and only the
final prompt token requests logits. Each sampled token is then fed back as a
width-1 chunk so the engine state advances token by token.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Mapping

from .adapters.base import BaseEngine, DecodeError, TokenizeError
from .pool import EnginePool
from .sampling import SamplingPolicy, TokenSampler
from .stopping import StoppingPolicy, StopTracker, cleanup_text
from .types import FinishReason, GenerationResult, GenerationState, Timing

logger = logging.getLogger(__name__)


class TokenizationFailed(RuntimeError):
    """The prompt could not be tokenized; this one generation is aborted."""


class DecodeFailed(RuntimeError):
    """The engine failed while processing the prompt."""

    def __init__(self, message: str, *, partial_text: str = "") -> None:
        super().__init__(message)
        self.partial_text = partial_text


@dataclass(frozen=True)
class RolePolicy:
    """Sampling + stopping configuration bound to a role."""

    sampling: SamplingPolicy
    stopping: StoppingPolicy


class GenerationPipeline:
    """Runs one role's generation against the pool.

    Thread-safety:
        Each call holds the engine instance's lock for its whole duration, so
        roles sharing an instance serialize while roles on different
        instances run in parallel.
    """

    def __init__(self, pool: EnginePool, policies: Mapping[str, RolePolicy]) -> None:
        self._pool = pool
        self._policies = dict(policies)

    def policy_for(self, role: str) -> RolePolicy:
        policy = self._policies.get(role)
        if policy is None:
            return RolePolicy(sampling=SamplingPolicy(), stopping=StoppingPolicy())
        return policy

    def generate(self, role: str, prompt: str) -> GenerationResult:
        """Generate raw text for `role` from a fully rendered prompt.

        Raises:
            RoleNotFound: If the role has no engine instance.
            TokenizationFailed: If the prompt cannot be tokenized.
            DecodeFailed: If the prompt cannot be fed to the engine.
        """
        instance = self._pool.lookup(role)
        policy = self.policy_for(role)

        with instance.lock:
            result = self._run(role, instance.engine, prompt, policy)

        logger.info(
            "role=%s prompt_tokens=%d completion_tokens=%d finish=%s state=%s total=%.2fs",
            role,
            result.prompt_tokens,
            result.completion_tokens,
            result.finish_reason,
            result.state.value,
            result.timing.total_s or 0.0,
        )
        return result

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run(self, role: str, engine: BaseEngine, prompt: str, policy: RolePolicy) -> GenerationResult:
        started = time.monotonic()
        logger.debug("=== %s PROMPT ===\n%s\n=== END %s PROMPT ===", role, prompt, role)

        engine.clear_memory()

        try:
            tokens = engine.tokenize(prompt)
        except TokenizeError as exc:
            raise TokenizationFailed(f"tokenization failed for role {role!r}: {exc}") from exc
        if not tokens:
            raise TokenizationFailed(f"tokenization produced no tokens for role {role!r}")

        logits = self._decode_prompt(role, engine, tokens)
        prefill_done = time.monotonic()

        text, state, finish_reason, produced = self._sample_loop(
            engine, logits, n_prompt=len(tokens), policy=policy
        )
        ended = time.monotonic()

        logger.debug("=== %s RAW OUTPUT ===\n%r\n=== END %s RAW OUTPUT ===", role, text, role)
        text = cleanup_text(text, policy.stopping)

        return GenerationResult(
            text=text,
            state=state,
            finish_reason=finish_reason,
            prompt_tokens=len(tokens),
            completion_tokens=produced,
            timing=Timing(
                prefill_s=max(prefill_done - started, 0.0),
                decode_s=max(ended - prefill_done, 0.0),
                total_s=max(ended - started, 0.0),
            ),
        )

    def _decode_prompt(self, role: str, engine: BaseEngine, tokens: list[int]):
        n_tokens = len(tokens)
        n_ctx = engine.n_ctx
        if n_tokens > n_ctx:
            raise DecodeFailed(f"prompt for role {role!r} has {n_tokens} tokens, context holds {n_ctx}")

        chunk_size = max(min(engine.n_batch, n_tokens), 1)
        logits = None
        processed = 0
        while processed < n_tokens:
            chunk = tokens[processed : processed + chunk_size]
            is_last = processed + len(chunk) >= n_tokens
            try:
                logits = engine.decode(chunk, start_pos=processed, want_logits=is_last)
            except DecodeError as exc:
                raise DecodeFailed(f"prompt decode failed for role {role!r}: {exc}") from exc
            processed += len(chunk)

        if logits is None:
            raise DecodeFailed(f"engine returned no logits for the prompt of role {role!r}")
        return logits

    def _sample_loop(
        self,
        engine: BaseEngine,
        logits,
        *,
        n_prompt: int,
        policy: RolePolicy,
    ) -> tuple[str, GenerationState, FinishReason, int]:
        sampler = TokenSampler(policy.sampling)
        tracker = StopTracker(
            policy=policy.stopping,
            n_ctx=engine.n_ctx,
            max_tokens=policy.sampling.max_tokens,
        )

        out_tokens: list[int] = []
        text = ""
        position = n_prompt
        finish_reason: FinishReason = "length"

        # PROMPT_DECODED -> SAMPLING
        while True:
            token_id = sampler.sample(logits)
            sampler.accept(token_id)

            if engine.is_eog(token_id):
                finish_reason = "eog"
                break

            out_tokens.append(token_id)
            new_text = engine.detokenize(out_tokens)
            piece = _delta(text, new_text)
            text = new_text

            reason = tracker.check(piece, text, position=position)
            if reason is not None:
                finish_reason = reason
                if reason == "stop" and tracker.marker_index is not None:
                    text = text[: tracker.marker_index]
                break

            try:
                logits = engine.decode([token_id], start_pos=position, want_logits=True)
            except DecodeError as exc:
                logger.warning("Decode failed mid-generation at pos=%d; keeping partial output: %s", position, exc)
                return text, GenerationState.ERROR, "error", len(out_tokens)
            position += 1

        return text, GenerationState.STOPPED, finish_reason, len(out_tokens)


def _delta(previous: str, current: str) -> str:
    """Text added by the newest token.

    Detokenizing the whole output each step keeps multi-byte characters
    intact; when the tail of `previous` was an incomplete character the
    common prefix is shorter than `previous`.
    """
    if current.startswith(previous):
        return current[len(previous):]
    common = 0
    for a, b in zip(previous, current):
        if a != b:
            break
        common += 1
    return current[common:]
