"""Run context: the execution state carried alongside (not inside) shared state."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping

from .errors import StateCloneError
from .options import RunOptions

BATCH_ITEM = "batch_item"

_MISSING = object()


@dataclass
class RunContext:
    """Mutable per-run context handed to every step body and hook.

    User data lives in the shared state; everything the engine and its
    collaborators need during a run lives here instead:

    - ``params``: read-only caller parameters for this run.
    - named slots: batch items (``ctx.item``, ``ctx.slot(key)``) and any
      other per-run value a hook or extension wants to publish.
    - stream subscribers reached through ``emit()``.
    - run counters: ``steps`` executed and ``cycles`` (label jumps) taken.

    One context is created per ``run()`` call and shared by nested chains.
    """

    params: Mapping[str, Any] = field(default_factory=dict)
    options: RunOptions = field(default_factory=RunOptions)
    clone: Callable[[Any], Any] = copy.deepcopy

    # Counters (set by the executor, not by steps)
    steps: int = 0
    cycles: int = 0
    step_index: int = 0

    _slots: dict = field(default_factory=dict, repr=False)
    _subscribers: list = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.params, MappingProxyType):
            self.params = MappingProxyType(dict(self.params))

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    @property
    def item(self) -> Any:
        """Current item of the innermost batch using the default key."""
        return self._slots.get(BATCH_ITEM)

    def slot(self, key: str, default: Any = None) -> Any:
        return self._slots.get(key, default)

    def has_slot(self, key: str) -> bool:
        return key in self._slots

    def set_slot(self, key: str, value: Any) -> None:
        self._slots[key] = value

    def clear_slot(self, key: str) -> None:
        self._slots.pop(key, None)

    def save_slot(self, key: str) -> Any:
        """Return a token for ``restore_slot`` capturing presence and value."""
        return self._slots.get(key, _MISSING)

    def restore_slot(self, key: str, token: Any) -> None:
        if token is _MISSING:
            self._slots.pop(key, None)
        else:
            self._slots[key] = token

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def subscribe(self, subscriber: Callable[[Any], None]) -> None:
        self._subscribers.append(subscriber)

    def emit(self, chunk: Any) -> None:
        """Push *chunk* to every subscriber; a no-op when nobody listens."""
        for subscriber in list(self._subscribers):
            subscriber(chunk)

    # ------------------------------------------------------------------
    # Isolation
    # ------------------------------------------------------------------

    def snapshot(self, value: Any) -> Any:
        """Return an independent copy of *value* using the flow's clone function.

        Raises ``StateCloneError`` instead of silently dropping fields that
        cannot be copied.
        """
        try:
            return self.clone(value)
        except Exception as exc:
            raise StateCloneError(
                f"shared state could not be cloned ({type(exc).__name__}: {exc}); "
                "pass Flow(clone=...) for state holding handles or callbacks"
            ) from exc


def emit(ctx: RunContext, chunk: Any) -> None:
    """Push *chunk* to the run's stream subscribers.

    Safe to call unconditionally: silently does nothing when the flow is not
    being streamed and no subscriber was registered.
    """
    ctx.emit(chunk)
