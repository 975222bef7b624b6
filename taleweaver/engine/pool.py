"""Engine instance pool: load once per artifact, bind roles by index.

The pool is the sole owner of every loaded engine. Roles never hold an
engine directly; they map to an index into the pool's arena, so several
roles naming the same artifact share one instance and teardown walks the
arena, never the role map.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator, Mapping, Type

from .adapters.base import BaseEngine
from .backend import BackendLifecycle
from .registry import backend_for_path, get_engine_class
from .types import EngineParams

logger = logging.getLogger(__name__)


class RoleNotFound(KeyError):
    """Lookup of a role that was never configured."""

    def __init__(self, role: str) -> None:
        super().__init__(role)
        self.role = role

    def __str__(self) -> str:
        return f"Role {self.role!r} is not bound to any engine instance."


class EngineLoadError(RuntimeError):
    """A configured artifact failed to load; the pool was not created."""


@dataclass
class EngineInstance:
    """A loaded engine plus the lock that serializes its use."""

    model_path: str
    engine: BaseEngine
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class EnginePool:
    """
    Owns the loaded engine instances and the role to instance binding.

    Usage:
        >>> pool = EnginePool({"GM": "models/a.gguf", "NPC": "models/a.gguf"})
        >>> pool.lookup("GM") is pool.lookup("NPC")
        True
        >>> pool.teardown()
    """

    def __init__(
        self,
        model_paths: Mapping[str, str] | None = None,
        *,
        params: EngineParams | None = None,
        resolve_engine: Callable[[str], Type[BaseEngine]] = get_engine_class,
    ) -> None:
        self._params = params or EngineParams()
        self._params.validate()
        self._resolve_engine = resolve_engine
        self._instances: list[EngineInstance] = []
        self._role_index: dict[str, int] = {}
        self._lifecycle: BackendLifecycle | None = None
        self._closed = False

        if model_paths is not None:
            self.initialize(model_paths)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def params(self) -> EngineParams:
        return self._params

    @property
    def instances(self) -> list[EngineInstance]:
        """Distinct owned instances, in load order."""
        return list(self._instances)

    def roles(self) -> list[str]:
        return list(self._role_index.keys())

    def shared_roles(self) -> dict[str, list[str]]:
        """Artifact path to the roles bound to it."""
        out: dict[str, list[str]] = {}
        for role, idx in self._role_index.items():
            out.setdefault(self._instances[idx].model_path, []).append(role)
        return out

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self, model_paths: Mapping[str, str]) -> None:
        """Load one engine per distinct artifact path and bind every role.

        Raises:
            EngineLoadError: If any artifact fails to load. Everything loaded
                so far is released before raising.
        """
        if self._instances or self._lifecycle is not None:
            raise RuntimeError("EnginePool is already initialized.")
        if self._closed:
            raise RuntimeError("EnginePool has been torn down.")

        self._lifecycle = BackendLifecycle(self._params)
        index_by_path: dict[str, int] = {}

        try:
            for role, path in model_paths.items():
                if not isinstance(role, str) or not role:
                    raise ValueError("Role names must be non-empty strings.")
                existing = index_by_path.get(path)
                if existing is not None:
                    self._role_index[role] = existing
                    logger.info("Role %r shares model instance from: %s", role, path)
                    continue

                self._instances.append(self._load(role, path))
                index_by_path[path] = len(self._instances) - 1
                self._role_index[role] = index_by_path[path]
                logger.info("New model instance for role %r loaded from: %s", role, path)
        except Exception:
            try:
                self._release_all()
            except RuntimeError as exc:
                logger.warning("Backend shutdown after failed load also failed: %s", exc)
            raise

    def _load(self, role: str, path: str) -> EngineInstance:
        backend = backend_for_path(path, self._params.backend)
        try:
            engine_cls = self._resolve_engine(backend)
            self._lifecycle.ensure(engine_cls)
            engine = engine_cls()
            engine.load(path, self._params)
        except Exception as exc:
            raise EngineLoadError(
                f"failed to load model for role {role!r} from {path} (backend={backend}): {exc}"
            ) from exc
        return EngineInstance(model_path=path, engine=engine)

    def lookup(self, role: str) -> EngineInstance:
        """Return the instance serving `role`.

        Raises:
            RoleNotFound: If the role was never configured.
        """
        idx = self._role_index.get(role)
        if idx is None:
            raise RoleNotFound(role)
        return self._instances[idx]

    def teardown(self) -> None:
        """Release every distinct instance exactly once, then the backend."""
        if self._closed:
            return
        self._closed = True
        self._release_all()

    def _release_all(self) -> None:
        instances = self._instances
        self._instances = []
        self._role_index = {}
        for instance in instances:
            try:
                instance.engine.unload()
            except Exception as exc:
                logger.warning("Failed to unload %s: %s", instance.model_path, exc)
        lifecycle = self._lifecycle
        self._lifecycle = None
        if lifecycle is not None:
            lifecycle.shutdown()

    def __iter__(self) -> Iterator[tuple[str, EngineInstance]]:
        for role, idx in self._role_index.items():
            yield role, self._instances[idx]

    def __enter__(self) -> "EnginePool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.teardown()
