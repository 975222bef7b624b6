"""Per-role sampling policy and the token sampler chain.

The chain order is fixed: repetition penalty over recent history, top-k,
top-p, then a temperature-scaled draw. Roles differ only in parameter
values.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    import torch


@dataclass(frozen=True)
class SamplingPolicy:
    """Sampling parameters for one role.

    Notes:
    - `seed=None` draws a fresh random seed on every call.
    - `temperature <= 0` means greedy decoding.
    - `top_k <= 0` and `top_p >= 1` disable those truncations.
    """

    temperature: float = 0.7
    top_k: int = 35
    top_p: float = 0.9
    repeat_penalty: float = 1.0
    penalty_last_n: int = 64
    seed: int | None = 1234
    max_tokens: int = 80

    def validate(self) -> None:
        if self.temperature < 0:
            raise ValueError("'sampling.temperature' must be >= 0.")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError("'sampling.top_p' must be in (0, 1].")
        if self.repeat_penalty <= 0:
            raise ValueError("'sampling.repeat_penalty' must be > 0.")
        if self.penalty_last_n < 0:
            raise ValueError("'sampling.penalty_last_n' must be >= 0.")
        if self.max_tokens <= 0:
            raise ValueError("'sampling.max_tokens' must be > 0.")

    def merged(self, override: Any | None) -> "SamplingPolicy":
        """Merge a per-role override (typically from a config file)."""
        if override is None:
            return self
        if isinstance(override, SamplingPolicy):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("'sampling' must be an object.")

        data: dict[str, Any] = {}
        for key, raw in override.items():
            if key in {"temperature", "top_p", "repeat_penalty"}:
                data[key] = _coerce_float(raw, key)
            elif key in {"top_k", "penalty_last_n", "max_tokens"}:
                data[key] = _coerce_int(raw, key)
            elif key == "seed":
                data[key] = None if raw is None else _coerce_int(raw, key)
            else:
                raise ValueError(f"Unknown sampling option: {key!r}")

        merged = replace(self, **data)
        merged.validate()
        return merged


def _coerce_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"'sampling.{name}' must be an integer.")
    try:
        return int(value)
    except Exception as exc:
        raise ValueError(f"'sampling.{name}' must be an integer.") from exc


def _coerce_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"'sampling.{name}' must be a number.")
    try:
        return float(value)
    except Exception as exc:
        raise ValueError(f"'sampling.{name}' must be a number.") from exc


# =============================================================================
# Chain steps
# =============================================================================


def apply_repetition_penalty(
    logits: torch.Tensor, recent_tokens: Sequence[int], penalty: float
) -> torch.Tensor:
    """Push down logits of tokens seen in `recent_tokens`.

    Positive logits are divided by `penalty`, negative ones multiplied, so
    the adjustment always lowers the token's probability.
    """
    import torch

    if penalty == 1.0 or not recent_tokens:
        return logits
    ids = torch.tensor(sorted(set(int(t) for t in recent_tokens)), dtype=torch.long, device=logits.device)
    ids = ids[(ids >= 0) & (ids < logits.shape[-1])]
    if ids.numel() == 0:
        return logits
    out = logits.clone()
    picked = out[ids]
    out[ids] = torch.where(picked > 0, picked / penalty, picked * penalty)
    return out


def apply_top_k(logits: torch.Tensor, k: int) -> torch.Tensor:
    import torch

    if k <= 0 or k >= logits.shape[-1]:
        return logits
    kth = torch.topk(logits, k).values[-1]
    return logits.masked_fill(logits < kth, float("-inf"))


def apply_top_p(logits: torch.Tensor, p: float, *, min_keep: int = 1) -> torch.Tensor:
    """Keep the smallest set of tokens whose cumulative probability reaches `p`."""
    import torch

    if p >= 1.0:
        return logits
    sorted_logits, sorted_idx = torch.sort(logits, descending=True)
    probs = torch.softmax(sorted_logits.float(), dim=-1)
    cumulative = torch.cumsum(probs, dim=-1)
    # Drop a token once the mass *before* it already reaches p.
    drop = (cumulative - probs) >= p
    drop[:min_keep] = False
    mask = torch.zeros_like(drop).scatter(0, sorted_idx, drop)
    return logits.masked_fill(mask, float("-inf"))


def draw(logits: torch.Tensor, temperature: float, generator: torch.Generator | None) -> int:
    """Temperature-scaled random draw (greedy when temperature <= 0)."""
    import torch

    if temperature <= 0:
        return int(torch.argmax(logits).item())

    # Numerical stability: softmax in fp32.
    probs = torch.softmax(logits.float() / float(temperature), dim=-1)
    if torch.isnan(probs).any() or float(probs.sum()) <= 0:
        return int(torch.argmax(logits).item())
    return int(torch.multinomial(probs, 1, generator=generator).item())


# =============================================================================
# Sampler
# =============================================================================


class TokenSampler:
    """Stateful view of a `SamplingPolicy` for exactly one generation call.

    Holds the call's random generator and the penalty window; a new sampler
    is created for every call so nothing leaks across turns.
    """

    def __init__(self, policy: SamplingPolicy, *, history: Sequence[int] = ()) -> None:
        import torch

        self.policy = policy
        self._generator = torch.Generator(device="cpu")
        if policy.seed is None:
            self._generator.seed()
        else:
            self._generator.manual_seed(int(policy.seed))
        self._history: list[int] = list(history)

    def sample(self, logits: torch.Tensor) -> int:
        policy = self.policy
        logits = logits.detach().to("cpu").float().reshape(-1)

        if policy.penalty_last_n > 0:
            window = self._history[-policy.penalty_last_n :]
            logits = apply_repetition_penalty(logits, window, policy.repeat_penalty)
        logits = apply_top_k(logits, policy.top_k)
        logits = apply_top_p(logits, policy.top_p)
        return draw(logits, policy.temperature, self._generator)

    def accept(self, token_id: int) -> None:
        self._history.append(int(token_id))
