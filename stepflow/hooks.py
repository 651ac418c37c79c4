"""Lifecycle hooks and their deterministic composition."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Optional

Next = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class Hooks:
    """One registration of lifecycle callbacks.  Every slot is optional.

    Signatures (each may be sync or ``async``)::

        before_flow(shared, ctx)
        before_step(meta, shared, ctx)
        wrap_step(meta, next, shared, ctx)            # await next() to run the step
        after_step(meta, shared, ctx)
        wrap_parallel_fn(meta, fn_index, next, shared, ctx)
        on_error(meta, error, shared, ctx)
        after_flow(shared, ctx)

    ``wrap_step`` is middleware: not awaiting ``next()`` skips the step body,
    catching around it swallows the failure.
    """

    before_flow: Optional[Callable[..., Any]] = None
    before_step: Optional[Callable[..., Any]] = None
    wrap_step: Optional[Callable[..., Any]] = None
    after_step: Optional[Callable[..., Any]] = None
    wrap_parallel_fn: Optional[Callable[..., Any]] = None
    on_error: Optional[Callable[..., Any]] = None
    after_flow: Optional[Callable[..., Any]] = None


HOOK_SLOTS = tuple(f.name for f in fields(Hooks))


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ---------------------------------------------------------------------------
# Middleware folding
# ---------------------------------------------------------------------------


def _fold(wrappers: list, invoke: Callable) -> Callable:
    """Fold *wrappers* into one callable; the first registered is outermost.

    The result is called as ``await chain(base, args)`` where ``base`` is the
    innermost coroutine function and ``args`` the hook arguments.
    """

    async def terminal(base: Next, args: tuple) -> None:
        await base()

    chain = terminal
    for wrap in reversed(wrappers):
        chain = _layer(wrap, chain, invoke)
    return chain


def _layer(wrap: Callable, inner: Callable, invoke: Callable) -> Callable:
    async def layer(base: Next, args: tuple) -> None:
        async def proceed() -> None:
            await inner(base, args)

        await maybe_await(invoke(wrap, proceed, args))

    return layer


def _invoke_step(wrap: Callable, proceed: Next, args: tuple) -> Any:
    meta, shared, ctx = args
    return wrap(meta, proceed, shared, ctx)


def _invoke_parallel(wrap: Callable, proceed: Next, args: tuple) -> Any:
    meta, fn_index, shared, ctx = args
    return wrap(meta, fn_index, proceed, shared, ctx)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class HookRegistry:
    """Ordered collection of ``Hooks`` registrations for one builder.

    Registrations are never dropped.  Per-slot callback lists and the folded
    middleware chains are computed once and cached until the next ``add()``.
    """

    def __init__(self, hooks: list[Hooks] | None = None) -> None:
        self._hooks: list[Hooks] = list(hooks or [])
        self._cache: dict[str, Any] | None = None

    def add(self, hooks: Hooks) -> None:
        self._hooks.append(hooks)
        self._cache = None

    def derive(self, hooks: Hooks) -> "HookRegistry":
        """Return a new registry with *hooks* appended; ``self`` is untouched."""
        return HookRegistry(self._hooks + [hooks])

    def __len__(self) -> int:
        return len(self._hooks)

    def _compiled(self) -> dict[str, Any]:
        if self._cache is None:
            cache: dict[str, Any] = {
                slot: [getattr(h, slot) for h in self._hooks if getattr(h, slot)]
                for slot in HOOK_SLOTS
            }
            cache["_step_chain"] = _fold(cache["wrap_step"], _invoke_step)
            cache["_parallel_chain"] = _fold(cache["wrap_parallel_fn"], _invoke_parallel)
            self._cache = cache
        return self._cache

    def slot(self, name: str) -> list[Callable[..., Any]]:
        """Callbacks registered for *name*, in registration order."""
        return self._compiled()[name]

    async def fire(self, name: str, *args: Any) -> None:
        for callback in self.slot(name):
            await maybe_await(callback(*args))

    async def wrap_step(self, base: Next, meta: Any, shared: Any, ctx: Any) -> None:
        await self._compiled()["_step_chain"](base, (meta, shared, ctx))

    async def wrap_parallel_fn(
        self, base: Next, meta: Any, fn_index: int, shared: Any, ctx: Any
    ) -> None:
        await self._compiled()["_parallel_chain"](base, (meta, fn_index, shared, ctx))
