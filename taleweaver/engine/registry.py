"""Engine adapter registry.

Maps backend names to their corresponding engine classes.
"""

from pathlib import Path
from typing import Type

from .adapters.base import BaseEngine
from .adapters.hf import HFEngine
from .adapters.llamacpp import LlamaCppEngine

# Registry mapping backend names to engine classes
_ENGINE_REGISTRY: dict[str, Type[BaseEngine]] = {
    "hf": HFEngine,
    "llama_cpp": LlamaCppEngine,
}


def get_engine_class(backend: str) -> Type[BaseEngine]:
    """
    Get the engine class for the given backend.

    Args:
        backend: Name of the backend (e.g., "llama_cpp").

    Returns:
        The engine class registered under that name.

    Raises:
        ValueError: If the backend is not registered.
    """
    if backend not in _ENGINE_REGISTRY:
        available = ", ".join(_ENGINE_REGISTRY.keys())
        raise ValueError(f"Unknown backend: {backend!r}. Available: {available}")
    return _ENGINE_REGISTRY[backend]


def register_engine(backend: str, engine_cls: Type[BaseEngine]) -> None:
    """
    Register a new engine class for a backend.

    Args:
        backend: Name of the backend.
        engine_cls: Engine class (must inherit from BaseEngine).
    """
    _ENGINE_REGISTRY[backend] = engine_cls


def list_backends() -> list[str]:
    """Return list of registered backend names."""
    return list(_ENGINE_REGISTRY.keys())


def backend_for_path(model_path: str, configured: str | None = None) -> str:
    """Pick a backend: the configured one, else llama_cpp for GGUF files, else hf."""
    if configured:
        return configured
    if Path(model_path).suffix.lower() == ".gguf":
        return "llama_cpp"
    return "hf"
