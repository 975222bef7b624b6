"""
Taleweaver - Local LLM role orchestration for a text role-playing game.

Several narrative roles (game master, dialogue character, combat arbiter)
are served from a small pool of locally loaded models. Roles pointing at the
same artifact share one loaded instance.

Quick Start:
    from taleweaver import RoleOrchestrator, ChatMessage

    orch = RoleOrchestrator({"GM": "models/llama3.gguf", "NPC": "models/llama3.gguf"})
    gm = orch.generate_gm([ChatMessage("user", "I am ready to set out.")])
    line = orch.generate_text(history, gm.scene_context)
    orch.shutdown()

Submodules:
    - taleweaver.engine.pool: Engine instance pool and role binding
    - taleweaver.engine.pipeline: Tokenize, decode and sample one generation
    - taleweaver.engine.orchestrator: Role call surface and background turns
    - taleweaver.engine.response_parser: Lenient JSON field extraction

Environment Variables:
    TALEWEAVER_MODEL_DIR: Base directory for relative model paths in config
        files that do not set "model_dir".
"""

from taleweaver._version import __version__

from taleweaver.engine.config import OrchestratorConfig, load_config
from taleweaver.engine.orchestrator import RoleOrchestrator
from taleweaver.engine.pipeline import DecodeFailed, TokenizationFailed
from taleweaver.engine.pool import EngineLoadError, EnginePool, RoleNotFound
from taleweaver.engine.response_parser import BattleResponse, GmResponse
from taleweaver.engine.types import ChatMessage, EngineParams

__all__ = [
    "__version__",
    # Orchestration
    "RoleOrchestrator",
    "OrchestratorConfig",
    "load_config",
    "EnginePool",
    # Types
    "ChatMessage",
    "EngineParams",
    "GmResponse",
    "BattleResponse",
    # Errors
    "RoleNotFound",
    "EngineLoadError",
    "TokenizationFailed",
    "DecodeFailed",
]
