"""Structural protocol for step bodies and the stream event type."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from .context import RunContext
from .steps import StepMeta

STEP_BEFORE = "step:before"
STEP_AFTER = "step:after"
CHUNK = "chunk"
ERROR = "error"
DONE = "done"


@runtime_checkable
class StepFn(Protocol):
    """Anything callable as ``fn(shared, ctx)``.

    The return value is ``None`` to continue, ``Jump(label)`` to move to a
    label, or ``FINISH`` to end the current chain.  Bodies may be plain
    functions, coroutine functions, or async generators whose yielded values
    are streamed as chunks.
    """

    def __call__(self, shared: Any, ctx: RunContext) -> Any: ...


@dataclass
class StreamEvent:
    """One event yielded by ``Flow.stream()``.

    ``step:after`` events carry the live shared object (not a copy), so a
    consumer observes the exact post-step state.  Every stream ends with
    exactly one ``done`` event; a failure is reported first as one
    ``error`` event.
    """

    type: str
    meta: Optional[StepMeta] = None
    shared: Any = None
    data: Any = None
    error: Optional[BaseException] = None
