"""Role orchestrator: the call surface the game loop talks to.

Wires the pool, the generation pipeline, the role prompt templates and the
response parsers together. Pipeline failures stop here: every call returns
*some* result, a parsed default for the structured roles or an
in-character line for dialogue.

Usage:
    >>> orch = RoleOrchestrator({"GM": "m.gguf", "NPC": "m.gguf", "BATTLE": "m.gguf"})
    >>> handle = orch.launch_gm(history)
    >>> ...  # keep rendering, then poll
    >>> orch.shutdown()
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Mapping, Sequence, Type

from .adapters.base import BaseEngine
from .config import BATTLE_ROLE, GM_ROLE, NPC_ROLE, OrchestratorConfig
from .pipeline import DecodeFailed, GenerationPipeline, TokenizationFailed
from .pool import EnginePool
from .prompts import render_battle_prompt, render_gm_prompt, render_npc_prompt
from .registry import get_engine_class
from .response_parser import BattleResponse, GmResponse, parse_battle_response, parse_gm_response
from .tasks import TurnHandle, launch
from .types import ChatMessage, GenerationResult

logger = logging.getLogger(__name__)


NPC_FALLBACK_LINE = "(...the words will not come together...)"

_STRUCTURED_PARSERS: dict[str, Callable[[str], GmResponse | BattleResponse]] = {
    GM_ROLE: parse_gm_response,
    BATTLE_ROLE: parse_battle_response,
}


class RoleOrchestrator:
    """Owns the engine pool for the process lifetime and serves role calls.

    Construction loads every configured artifact; a load failure aborts it
    with nothing left loaded.
    """

    def __init__(
        self,
        config: OrchestratorConfig | Mapping[str, str],
        *,
        resolve_engine: Callable[[str], Type[BaseEngine]] = get_engine_class,
    ) -> None:
        if not isinstance(config, OrchestratorConfig):
            config = OrchestratorConfig(model_paths=dict(config))
        config.validate()
        self._config = config
        self._pool = EnginePool(config.model_paths, params=config.engine, resolve_engine=resolve_engine)
        self._pipeline = GenerationPipeline(self._pool, config.policies)
        self._handles: list[TurnHandle] = []
        self._handles_lock = threading.Lock()
        self._closed = False

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def pool(self) -> EnginePool:
        return self._pool

    # -------------------------------------------------------------------------
    # Synchronous calls
    # -------------------------------------------------------------------------

    def generate(self, role: str, prompt: str) -> GenerationResult:
        """Raw pipeline call; failures propagate."""
        return self._pipeline.generate(role, prompt)

    def generate_structured(self, role: str, *args, **kwargs) -> GmResponse | BattleResponse:
        """Run a JSON-emitting role and parse its output.

        `GM` takes `(history)`; `BATTLE` takes the arguments of
        `render_battle_prompt`.
        """
        parser = _STRUCTURED_PARSERS.get(role)
        if parser is None:
            raise ValueError(f"Role {role!r} has no structured output; expected one of {sorted(_STRUCTURED_PARSERS)}")

        prompt = render_gm_prompt(*args, **kwargs) if role == GM_ROLE else render_battle_prompt(*args, **kwargs)
        try:
            result = self._pipeline.generate(role, prompt)
        except (TokenizationFailed, DecodeFailed) as exc:
            logger.warning("%s generation failed, using defaults: %s", role, exc)
            return parser("")
        return parser(result.text)

    def generate_gm(self, history: Sequence[ChatMessage]) -> GmResponse:
        return self.generate_structured(GM_ROLE, history)

    def generate_battle(
        self,
        player_stats: str,
        enemy_stats: str,
        player_action: str,
        enemy_info: str = "",
    ) -> BattleResponse:
        return self.generate_structured(BATTLE_ROLE, player_stats, enemy_stats, player_action, enemy_info)

    def generate_text(self, history: Sequence[ChatMessage], scene_context: str) -> str:
        """One line of dialogue for the NPC role."""
        prompt = render_npc_prompt(history, scene_context)
        try:
            result = self._pipeline.generate(NPC_ROLE, prompt)
        except DecodeFailed as exc:
            logger.warning("NPC generation failed: %s", exc)
            partial = exc.partial_text.strip()
            return partial or NPC_FALLBACK_LINE
        except TokenizationFailed as exc:
            logger.warning("NPC prompt could not be tokenized: %s", exc)
            return NPC_FALLBACK_LINE

        text = result.text.strip()
        if not text and not result.ok:
            return NPC_FALLBACK_LINE
        return text

    # -------------------------------------------------------------------------
    # Background calls
    # -------------------------------------------------------------------------

    def launch_gm(self, history: Sequence[ChatMessage]) -> TurnHandle[GmResponse]:
        return self._launch("gm", self.generate_gm, list(history))

    def launch_npc(self, history: Sequence[ChatMessage], scene_context: str) -> TurnHandle[str]:
        return self._launch("npc", self.generate_text, list(history), scene_context)

    def launch_battle(
        self,
        player_stats: str,
        enemy_stats: str,
        player_action: str,
        enemy_info: str = "",
    ) -> TurnHandle[BattleResponse]:
        return self._launch("battle", self.generate_battle, player_stats, enemy_stats, player_action, enemy_info)

    def _launch(self, name: str, fn: Callable, *args) -> TurnHandle:
        with self._handles_lock:
            if self._closed:
                raise RuntimeError("RoleOrchestrator has been shut down.")
            self._handles = [h for h in self._handles if not h.done]
            handle = launch(name, fn, *args)
            self._handles.append(handle)
        return handle

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def shutdown(self, timeout: float | None = None) -> None:
        """Wait for in-flight turns, then release every engine instance."""
        with self._handles_lock:
            if self._closed:
                return
            self._closed = True
            handles = self._handles
            self._handles = []

        for handle in handles:
            if not handle.wait(timeout):
                logger.warning("Turn task %r still running at shutdown", handle.name)
        self._pool.teardown()
        logger.info("Orchestrator shut down")

    def __enter__(self) -> "RoleOrchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
