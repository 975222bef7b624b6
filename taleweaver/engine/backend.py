"""Process-scoped backend lifecycle.

Inference libraries keep global state (thread pools, NUMA setup, ggml
backends) that must be initialized once before any model is loaded and torn
down once after every model is released. `BackendLifecycle` makes that an
explicit object owned by the pool instead of a hidden singleton.
"""

from __future__ import annotations

import logging
from typing import Type

from .adapters.base import BaseEngine
from .types import EngineParams

logger = logging.getLogger(__name__)


class BackendLifecycle:
    """Tracks which backend families have been initialized.

    `ensure(engine_cls)` runs the class's `backend_init` hook the first time a
    family is seen; `shutdown()` runs every `backend_free` hook once, in
    reverse init order.
    """

    def __init__(self, params: EngineParams) -> None:
        self._params = params
        self._initialized: list[Type[BaseEngine]] = []
        self._closed = False

    @property
    def active(self) -> list[str]:
        return [cls.backend_name or cls.__name__ for cls in self._initialized]

    def ensure(self, engine_cls: Type[BaseEngine]) -> None:
        if self._closed:
            raise RuntimeError("Backend lifecycle already shut down.")
        if engine_cls in self._initialized:
            return
        logger.debug("Initializing backend %s", engine_cls.backend_name or engine_cls.__name__)
        engine_cls.backend_init(self._params)
        self._initialized.append(engine_cls)

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        errors: list[BaseException] = []
        while self._initialized:
            engine_cls = self._initialized.pop()
            try:
                engine_cls.backend_free()
            except Exception as exc:
                logger.warning("Backend %s teardown failed: %s", engine_cls.backend_name, exc)
                errors.append(exc)
        if errors:
            raise RuntimeError(f"{len(errors)} backend(s) failed to shut down cleanly") from errors[0]
