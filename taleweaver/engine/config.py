"""Orchestrator configuration: role bindings, engine knobs, role policies.

A config file is plain JSON:

    {
      "model_dir": "models",
      "models": {"GM": "llama3-8b.gguf", "NPC": "llama3-8b.gguf", "BATTLE": "llama3-8b.gguf"},
      "engine": {"n_ctx": 2048, "n_batch": 256, "n_threads": 8},
      "roles": {"NPC": {"sampling": {"temperature": 0.8}}}
    }

Relative model paths resolve against `model_dir`, then the
`TALEWEAVER_MODEL_DIR` environment variable, then the file's directory.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Sequence

from .pipeline import RolePolicy
from .sampling import SamplingPolicy
from .stopping import DIALOGUE_PUNCTUATION, MINIMAL_CLEANUP_MARKERS, StoppingPolicy
from .prompts import ELDER_LABEL
from .types import EngineParams


GM_ROLE = "GM"
NPC_ROLE = "NPC"
BATTLE_ROLE = "BATTLE"

MODEL_DIR_ENV = "TALEWEAVER_MODEL_DIR"


def default_role_policies() -> dict[str, RolePolicy]:
    """Built-in policies: low-temperature JSON roles, looser dialogue."""
    structured_sampling = SamplingPolicy(temperature=0.3, top_k=20, top_p=0.85, max_tokens=150)
    return {
        GM_ROLE: RolePolicy(
            sampling=structured_sampling,
            stopping=StoppingPolicy(json_braces=True),
        ),
        BATTLE_ROLE: RolePolicy(
            sampling=structured_sampling,
            stopping=StoppingPolicy(json_braces=True, cleanup_markers=MINIMAL_CLEANUP_MARKERS),
        ),
        NPC_ROLE: RolePolicy(
            sampling=SamplingPolicy(temperature=0.7, top_k=35, top_p=0.9, max_tokens=80),
            stopping=StoppingPolicy(
                terminal_punctuation=DIALOGUE_PUNCTUATION,
                min_length=20,
                strip_prefixes=(ELDER_LABEL,),
            ),
        ),
    }


@dataclass(frozen=True)
class OrchestratorConfig:
    """Everything needed to build a `RoleOrchestrator`."""

    model_paths: dict[str, str]
    engine: EngineParams = field(default_factory=EngineParams)
    policies: dict[str, RolePolicy] = field(default_factory=default_role_policies)

    def validate(self) -> None:
        if not self.model_paths:
            raise ValueError("'models' must bind at least one role.")
        for role, path in self.model_paths.items():
            if not isinstance(role, str) or not role:
                raise ValueError("'models' keys must be non-empty role names.")
            if not isinstance(path, str) or not path:
                raise ValueError(f"'models.{role}' must be a non-empty path.")
        self.engine.validate()
        for policy in self.policies.values():
            policy.sampling.validate()
            policy.stopping.validate()

    def merged_roles(self, overrides: Mapping[str, Any] | None) -> "OrchestratorConfig":
        """Apply `{"ROLE": {"sampling": {...}, "stopping": {...}}}` overrides."""
        if not overrides:
            return self
        if not isinstance(overrides, Mapping):
            raise ValueError("'roles' must be an object.")

        policies = dict(self.policies)
        for role, data in overrides.items():
            if not isinstance(data, Mapping):
                raise ValueError(f"'roles.{role}' must be an object.")
            unknown = set(data) - {"sampling", "stopping"}
            if unknown:
                raise ValueError(f"Unknown option(s) for role {role!r}: {sorted(unknown)}")
            base = policies.get(role) or RolePolicy(sampling=SamplingPolicy(), stopping=StoppingPolicy())
            policies[role] = RolePolicy(
                sampling=base.sampling.merged(data.get("sampling")),
                stopping=base.stopping.merged(data.get("stopping")),
            )
        return replace(self, policies=policies)


def engine_params_from_dict(data: Mapping[str, Any] | None) -> EngineParams:
    if data is None:
        return EngineParams()
    if not isinstance(data, Mapping):
        raise ValueError("'engine' must be an object.")
    known = {f.name for f in fields(EngineParams)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown engine option(s): {sorted(unknown)}")
    params = EngineParams(**dict(data))
    params.validate()
    return params


def resolve_model_paths(model_paths: Mapping[str, str], base_dir: str | Path | None) -> dict[str, str]:
    out: dict[str, str] = {}
    env_dir = os.environ.get(MODEL_DIR_ENV)
    for role, raw in model_paths.items():
        if not isinstance(raw, str) or not raw:
            # Left for validate() to reject.
            out[role] = raw
            continue
        path = Path(os.path.expanduser(raw))
        if not path.is_absolute():
            if base_dir is not None:
                path = Path(base_dir) / path
            elif env_dir:
                path = Path(env_dir) / path
        out[role] = str(path)
    return out


def parse_model_bindings(values: Sequence[str]) -> dict[str, str]:
    """Parse `ROLE=PATH` pairs (CLI style)."""
    out: dict[str, str] = {}
    for item in values:
        role, sep, path = item.partition("=")
        role = role.strip()
        path = path.strip()
        if not sep or not role or not path:
            raise ValueError(f"Expected ROLE=PATH, got {item!r}")
        out[role] = path
    return out


def config_from_dict(data: Mapping[str, Any], *, base_dir: str | Path | None = None) -> OrchestratorConfig:
    if not isinstance(data, Mapping):
        raise ValueError("Config must be a JSON object.")
    models = data.get("models")
    if not isinstance(models, Mapping):
        raise ValueError("'models' must be an object mapping role names to paths.")

    model_dir = data.get("model_dir")
    if model_dir is not None:
        model_dir = Path(os.path.expanduser(str(model_dir)))
        if base_dir is not None and not model_dir.is_absolute():
            model_dir = Path(base_dir) / model_dir
    elif not os.environ.get(MODEL_DIR_ENV):
        model_dir = base_dir

    config = OrchestratorConfig(
        model_paths=resolve_model_paths(models, model_dir),
        engine=engine_params_from_dict(data.get("engine")),
    ).merged_roles(data.get("roles"))
    config.validate()
    return config


def load_config(path: str | Path) -> OrchestratorConfig:
    """Load an `OrchestratorConfig` from a JSON file."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in config file {p}: {exc}") from exc
    return config_from_dict(data, base_dir=p.parent)
