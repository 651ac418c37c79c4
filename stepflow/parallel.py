"""Concurrent fan-out for ``parallel`` and ``parallel_atomic`` steps."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .context import RunContext
from .errors import InterruptError, ParallelError
from .hooks import HookRegistry
from .steps import ParallelStep, StepMeta

logger = logging.getLogger(__name__)


async def fan_out(
    step: ParallelStep,
    meta: StepMeta,
    shared: Any,
    ctx: RunContext,
    hooks: HookRegistry,
    attempt: Callable[[Callable[..., Any], Any], Awaitable[Any]],
) -> None:
    """Run every fn of *step* concurrently and join on all of them.

    ``attempt(fn, target)`` runs one fn against *target* honouring the step's
    retry and timeout options.

    Plain ``parallel``: every fn receives the live shared object, so
    overlapping writes race.  ``parallel_atomic``: every fn receives its own
    deep-copied draft; once all settle the reducer is called synchronously
    with ``(shared, drafts)`` and decides how they merge.

    ``return_exceptions=True`` guarantees all fns run to completion even when
    one fails; the full failure list is surfaced via ``ParallelError`` and
    the reducer is not called.  An interrupt raised by any fn propagates as is.
    """
    if step.atomic:
        targets = [ctx.snapshot(shared) for _ in step.fns]
    else:
        targets = [shared] * len(step.fns)

    async def run_one(fn_index: int, fn: Callable[..., Any], target: Any) -> None:
        async def base() -> None:
            await attempt(fn, target)

        await hooks.wrap_parallel_fn(base, meta, fn_index, target, ctx)

    raw = await asyncio.gather(
        *[run_one(i, fn, target) for i, (fn, target) in enumerate(zip(step.fns, targets))],
        return_exceptions=True,
    )
    failures = [r for r in raw if isinstance(r, BaseException)]
    for failure in failures:
        if isinstance(failure, (InterruptError, asyncio.CancelledError)):
            raise failure
    if failures:
        logger.debug("%d of %d parallel fns failed at step %d", len(failures), len(raw), meta.index)
        raise ParallelError(failures)

    if step.atomic:
        step.reducer(shared, targets)
