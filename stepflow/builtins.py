"""Built-in extension operations.

Each operation receives the flow as its first argument, registers hooks and
returns the flow.  Install them with ``ExtensionRegistry(BUILTINS)`` or use
``default_registry``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .errors import CycleLimitError, InterruptError, StepLimitError
from .executor import race
from .extensions import ExtensionRegistry
from .hooks import maybe_await

logger = logging.getLogger(__name__)

FALLBACK_ERROR = "fallback_error"


def with_cycles(flow, max_jumps: int = 100):
    """Fail the run once more than *max_jumps* label jumps have been taken."""

    def guard(meta, shared, ctx):
        if ctx.cycles > max_jumps:
            raise CycleLimitError(ctx.cycles, max_jumps)

    return flow.add_hooks(before_step=guard)


def with_step_limit(flow, max_steps: int = 1000):
    """Fail the run when more than *max_steps* steps execute."""

    def guard(meta, shared, ctx):
        if ctx.steps > max_steps:
            raise StepLimitError(ctx.steps, max_steps)

    return flow.add_hooks(before_step=guard)


def with_replay(flow, from_index: int):
    """Skip the bodies of all steps before *from_index*.

    Hooks still fire for skipped steps.  Restore ``shared`` from an interrupt
    snapshot or a checkpoint, then replay from the first unfinished index.
    """

    async def gate(meta, proceed, shared, ctx):
        if meta.index < from_index:
            return
        await proceed()

    return flow.add_hooks(wrap_step=gate)


def with_stream(flow, subscriber: Callable[[Any], None]):
    """Register *subscriber* to receive every ``ctx.emit()`` chunk."""

    def attach(shared, ctx):
        ctx.subscribe(subscriber)

    return flow.add_hooks(before_flow=attach)


def with_timeout(flow, seconds: float):
    """Apply a wall-clock limit to every step, hooks inside it included."""

    async def limit(meta, proceed, shared, ctx):
        await race(proceed(), seconds, meta.index)

    return flow.add_hooks(wrap_step=limit)


def with_fallback(flow, fn: Callable[..., Any]):
    """Swallow step failures and run ``fn(shared, ctx)`` instead.

    The caught error is published in the ``fallback_error`` context slot.
    Interrupts are not swallowed.
    """

    async def recover(meta, proceed, shared, ctx):
        try:
            await proceed()
        except InterruptError:
            raise
        except Exception as exc:
            logger.warning("step %d failed, running fallback: %s", meta.index, exc)
            ctx.set_slot(
                FALLBACK_ERROR,
                {"step_index": meta.index, "step_kind": meta.kind.value, "error": exc},
            )
            await maybe_await(fn(shared, ctx))

    return flow.add_hooks(wrap_step=recover)


def with_verbose(flow, log: Optional[logging.Logger] = None):
    """Log every step's lifecycle at INFO level."""
    log = log or logger

    def before(meta, shared, ctx):
        log.info("step %d (%s) starting", meta.index, meta.kind.value)

    def after(meta, shared, ctx):
        log.info("step %d (%s) finished", meta.index, meta.kind.value)

    def failed(meta, error, shared, ctx):
        log.error("step %d (%s) failed: %s", meta.index, meta.kind.value, error)

    return flow.add_hooks(before_step=before, after_step=after, on_error=failed)


BUILTINS = {
    "with_cycles": with_cycles,
    "with_step_limit": with_step_limit,
    "with_replay": with_replay,
    "with_stream": with_stream,
    "with_timeout": with_timeout,
    "with_fallback": with_fallback,
    "with_verbose": with_verbose,
}

default_registry = ExtensionRegistry(BUILTINS)
