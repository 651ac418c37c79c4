"""Run loop: walks one finalised chain applying hooks, retries, timeouts and jumps."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Optional

from .context import RunContext
from .errors import (
    CycleLimitError,
    FlowCancelledError,
    FlowConfigError,
    FlowError,
    InterruptError,
    StepLimitError,
    StepTimeoutError,
)
from .hooks import HookRegistry, maybe_await
from .options import StepOptions
from .parallel import fan_out
from .steps import FINISH, Jump, StepKind, StepMeta, is_route, step_label

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Chain:
    """A finalised step chain: steps, resolved label table and hooks."""

    steps: tuple
    labels: Mapping[str, int]
    hooks: HookRegistry


def build_chain(steps: list, hooks: HookRegistry) -> Chain:
    labels: dict[str, int] = {}
    for index, step in enumerate(steps):
        if step.kind is StepKind.LABEL:
            if step.name in labels:
                raise FlowConfigError(f'duplicate label "{step.name}"')
            labels[step.name] = index
    return Chain(steps=tuple(steps), labels=MappingProxyType(labels), hooks=hooks)


# ---------------------------------------------------------------------------
# Body invocation
# ---------------------------------------------------------------------------


async def invoke(fn: Callable[..., Any], shared: Any, ctx: RunContext) -> Any:
    """Call a step body and return its routing result.

    Sync, async and async-generator bodies are accepted.  Every value an
    async generator yields is emitted as a stream chunk, except routing
    markers, which become the step's result.
    """
    result = fn(shared, ctx)
    if inspect.isasyncgen(result):
        route = None
        async for value in result:
            if is_route(value):
                route = value
            else:
                ctx.emit(value)
        return route
    return await maybe_await(result)


def _consume(task: asyncio.Future) -> None:
    # Abandoned attempts may still fail; retrieve the error so it is not logged.
    if not task.cancelled():
        task.exception()


async def race(awaitable: Awaitable[Any], seconds: float, index: Optional[int] = None) -> Any:
    """Await *awaitable* for at most *seconds*.

    On timeout the work is abandoned, not cancelled, and
    ``StepTimeoutError`` is raised.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=seconds)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if task in done:
        return task.result()
    task.add_done_callback(_consume)
    raise StepTimeoutError(seconds, index)


async def with_retries(
    options: StepOptions,
    shared: Any,
    ctx: RunContext,
    call: Callable[[], Awaitable[Any]],
    index: Optional[int] = None,
) -> Any:
    """Run *call* up to ``options.retries`` times; the last error propagates.

    A timed-out attempt counts as a failed attempt.  Interrupts are never
    retried.
    """
    retries = int(options.resolve("retries", shared, ctx))
    delay = options.resolve("retry_delay", shared, ctx)
    timeout = options.resolve("timeout", shared, ctx)

    attempt = 1
    while True:
        try:
            if timeout:
                return await race(call(), timeout, index)
            return await call()
        except InterruptError:
            raise
        except Exception as exc:
            if attempt >= retries:
                raise
            logger.warning("Attempt %d/%d at step %s: %s", attempt, retries, index, exc)
            attempt += 1
            if delay and delay > 0:
                await asyncio.sleep(delay)


# ---------------------------------------------------------------------------
# Per-kind execution
# ---------------------------------------------------------------------------


def _engine_error(label: str, cause: BaseException, index: int) -> FlowError:
    err = FlowError(label, cause, index=index)
    err._engine_labelled = True
    err._position = index
    return err


async def _run_nested(kind: str, chain: Chain, shared: Any, ctx: RunContext) -> None:
    """Run an inner chain; relabel its failures with the failing index in *chain*."""
    try:
        await execute_chain(chain, shared, ctx)
    except FlowError as err:
        if not err._engine_labelled:
            raise
        position = err._position
        raise _engine_error(f"{kind} (step {position})", err.cause, position) from err.cause


async def _run_branch(step: Any, meta: StepMeta, shared: Any, ctx: RunContext) -> Any:
    key = await with_retries(
        step.options, shared, ctx, lambda: invoke(step.router, shared, ctx), meta.index
    )
    if key is None:
        key = "default"
    body = step.table.get(key)
    if body is None:
        body = step.table.get("default")
    if body is None:
        logger.debug("branch at step %d: no entry for %r and no default", meta.index, key)
        return None
    return await with_retries(
        step.options, shared, ctx, lambda: invoke(body, shared, ctx), meta.index
    )


async def _run_loop(step: Any, shared: Any, ctx: RunContext) -> None:
    inner = step.body._chain()
    while await maybe_await(step.condition(shared, ctx)):
        await _run_nested("loop", inner, shared, ctx)


async def _run_batch(step: Any, shared: Any, ctx: RunContext) -> None:
    inner = step.body._chain()
    source = await maybe_await(step.items_of(shared, ctx))
    if hasattr(source, "__aiter__"):
        items = [item async for item in source]
    else:
        items = list(source)

    token = ctx.save_slot(step.key)
    try:
        for item in items:
            ctx.set_slot(step.key, item)
            await _run_nested("batch", inner, shared, ctx)
    finally:
        ctx.restore_slot(step.key, token)


async def _run_step(step: Any, meta: StepMeta, shared: Any, ctx: RunContext, chain: Chain) -> Any:
    kind = step.kind
    if kind is StepKind.FN:
        return await with_retries(
            step.options, shared, ctx, lambda: invoke(step.fn, shared, ctx), meta.index
        )
    if kind is StepKind.BRANCH:
        return await _run_branch(step, meta, shared, ctx)
    if kind is StepKind.LOOP:
        await _run_loop(step, shared, ctx)
        return None
    if kind is StepKind.BATCH:
        await _run_batch(step, shared, ctx)
        return None

    def attempt(fn: Callable[..., Any], target: Any) -> Awaitable[Any]:
        return with_retries(step.options, target, ctx, lambda: invoke(fn, target, ctx), meta.index)

    await fan_out(step, meta, shared, ctx, chain.hooks, attempt)
    return None


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------


def _poll_cancel(ctx: RunContext) -> None:
    signal = ctx.options.cancel
    if signal is not None and signal.is_set():
        raise FlowCancelledError(f"flow cancelled before step {ctx.step_index}")


def _check_step_limit(ctx: RunContext) -> None:
    limit = ctx.options.max_steps
    if limit is not None and ctx.steps >= limit:
        raise StepLimitError(ctx.steps + 1, limit)


def _next_index(chain: Chain, route: Any, index: int, ctx: RunContext) -> Optional[int]:
    if route is FINISH:
        return None
    if isinstance(route, Jump):
        target = chain.labels.get(route.target)
        if target is None:
            raise FlowConfigError(f'jump target label "{route.target}" not found')
        ctx.cycles += 1
        limit = ctx.options.max_cycles
        if limit is not None and ctx.cycles > limit:
            raise CycleLimitError(ctx.cycles, limit)
        return target + 1
    return index + 1


def _step_body(
    step: Any, meta: StepMeta, shared: Any, ctx: RunContext, chain: Chain, outcome: list
) -> Callable[[], Awaitable[None]]:
    # One holder per step; a body abandoned by a timeout only writes here.
    async def base() -> None:
        outcome.append(await _run_step(step, meta, shared, ctx, chain))

    return base


async def execute_chain(chain: Chain, shared: Any, ctx: RunContext) -> None:
    """Execute *chain* against *shared*.

    Per step: poll cancellation, enforce ceilings, fire ``before_step``, run
    the composed ``wrap_step`` middleware around the body, fire
    ``after_step`` and resolve the next index.  On failure ``on_error``
    fires and the error is raised as a ``FlowError`` (unless it already is
    one, or is an interrupt).
    """
    steps = chain.steps
    hooks = chain.hooks
    index = 0
    while index < len(steps):
        step = steps[index]
        if step.kind is StepKind.LABEL:
            index += 1
            continue

        ctx.step_index = index
        _poll_cancel(ctx)
        meta = StepMeta(index=index, kind=step.kind, label=getattr(step, "name", None))
        outcome: list = []
        base = _step_body(step, meta, shared, ctx, chain, outcome)

        try:
            _check_step_limit(ctx)
            ctx.steps += 1
            await hooks.fire("before_step", meta, shared, ctx)
            await hooks.wrap_step(base, meta, shared, ctx)
            await hooks.fire("after_step", meta, shared, ctx)
            route = outcome[-1] if outcome else None
            next_index = _next_index(chain, route, index, ctx)
        except InterruptError:
            raise
        except Exception as exc:
            logger.debug("step %d (%s) failed: %r", index, step.kind.value, exc)
            await hooks.fire("on_error", meta, exc, shared, ctx)
            if isinstance(exc, FlowError):
                if exc._engine_labelled:
                    exc._position = index
                raise
            raise _engine_error(step_label(step, index), exc, index) from exc

        if next_index is None:
            return
        index = next_index
