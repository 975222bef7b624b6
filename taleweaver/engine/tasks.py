"""Background turn tasks with a non-blocking poll contract.

A frame-driven loop launches a generation, keeps drawing, and checks the
handle once per frame:

    handle = launch("gm", orchestrator.generate_gm, history)
    ...
    status = handle.poll()
    if isinstance(status, Ready):
        result = handle.collect()

Each task runs on its own daemon thread. There is no cancellation; a caller
that no longer wants the result simply stops polling.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskUsageError(RuntimeError):
    """A handle was collected twice or before it finished."""


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Ready(Generic[T]):
    result: T


@dataclass(frozen=True)
class Failed:
    error: BaseException


PollResult = Union[Pending, Ready, Failed]

_PENDING = Pending()


class TurnHandle(Generic[T]):
    """Handle to one background generation."""

    def __init__(self, name: str, fn: Callable[..., T], args: tuple[Any, ...] = ()) -> None:
        self.name = name
        self._fn = fn
        self._args = args
        self._done = threading.Event()
        self._outcome: Ready | Failed | None = None
        self._collected = False
        self._collect_lock = threading.Lock()
        self._thread = threading.Thread(target=self._worker, name=f"turn-{name}", daemon=True)

    def start(self) -> "TurnHandle[T]":
        self._thread.start()
        return self

    def _worker(self) -> None:
        outcome: Ready | Failed | None = None
        try:
            outcome = Ready(self._fn(*self._args))
        except Exception as exc:
            logger.warning("Turn task %r failed: %s", self.name, exc)
            outcome = Failed(exc)
        except BaseException as exc:
            # Still ends the thread; the handle settles as Failed first.
            outcome = Failed(exc)
            raise
        finally:
            self._outcome = outcome
            self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def poll(self) -> PollResult:
        """Return the current status without blocking."""
        outcome = self._outcome
        if outcome is None or not self._done.is_set():
            return _PENDING
        return outcome

    def collect(self) -> T:
        """Return the result, or re-raise the task's error. Only once.

        Raises:
            TaskUsageError: If the task is still running or was already collected.
        """
        with self._collect_lock:
            if not self._done.is_set():
                raise TaskUsageError(f"Turn task {self.name!r} is still running.")
            if self._collected:
                raise TaskUsageError(f"Turn task {self.name!r} was already collected.")
            self._collected = True

        outcome = self._outcome
        if isinstance(outcome, Failed):
            raise outcome.error
        if not isinstance(outcome, Ready):
            raise TaskUsageError(f"Turn task {self.name!r} finished without a result.")
        return outcome.result

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the task finishes. Returns False on timeout."""
        return self._done.wait(timeout)


def launch(name: str, fn: Callable[..., T], *args: Any) -> TurnHandle[T]:
    """Run `fn(*args)` on a fresh daemon thread and return its handle."""
    return TurnHandle(name, fn, args).start()
