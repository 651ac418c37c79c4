"""Flow: fluent builder and entry points (run, run_async, stream)."""

from __future__ import annotations

import asyncio
import copy
import logging
import types
from collections.abc import AsyncIterator
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, Union

from .context import BATCH_ITEM, RunContext
from .errors import FlowConfigError, InterruptError
from .executor import Chain, build_chain, execute_chain
from .extensions import ExtensionRegistry
from .hooks import Hooks, HookRegistry, maybe_await
from .options import RunOptions, StepOptions
from .protocol import CHUNK, DONE, ERROR, STEP_AFTER, STEP_BEFORE, StreamEvent
from .steps import BatchStep, BranchStep, FnStep, LabelStep, LoopStep, ParallelStep

if TYPE_CHECKING:
    from .graph import Graph

logger = logging.getLogger(__name__)

OptionsArg = Union[StepOptions, Mapping[str, Any], None]
BodyArg = Union["Flow", Callable[["Flow"], Any]]


class Flow:
    """Ordered chain of steps run against one mutable shared state.

    Build via the fluent API::

        flow = (
            Flow()
            .start_with(load)
            .then(fetch, {"retries": 3, "retry_delay": 0.5})
            .branch(route, {"ok": publish, "default": report})
            .batch(lambda s, ctx: s["pages"], lambda b: b.then(render))
        )
        flow.run(shared)

    Every step body is called as ``fn(shared, ctx)`` where ``ctx`` is the
    per-run ``RunContext``.  Operations installed in an ``ExtensionRegistry``
    are available as methods on flows created from it (``registry.flow()``).
    """

    def __init__(
        self,
        steps: list | None = None,
        *,
        extensions: Union[ExtensionRegistry, Mapping[str, Callable[..., Any]], None] = None,
        clone: Optional[Callable[[Any], Any]] = None,
    ) -> None:
        self._steps: list = []
        self._hooks = HookRegistry()
        if isinstance(extensions, ExtensionRegistry):
            extensions = extensions.operations
        # Snapshot: installs after construction do not reach this builder.
        self._extensions: Mapping[str, Callable[..., Any]] = MappingProxyType(
            dict(extensions or {})
        )
        self._clone = clone or copy.deepcopy
        self._chain_cache: Optional[Chain] = None
        for step in steps or []:
            self._append(step)

    # ------------------------------------------------------------------
    # Extension lookup
    # ------------------------------------------------------------------

    def __getattr__(self, name: str) -> Any:
        # Only reached when normal attribute lookup fails.
        operations = self.__dict__.get("_extensions") or {}
        if name in operations:
            return types.MethodType(operations[name], self)
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")

    def _child(self) -> "Flow":
        return Flow(extensions=self._extensions, clone=self._clone)

    # ------------------------------------------------------------------
    # Chain bookkeeping
    # ------------------------------------------------------------------

    @property
    def steps(self) -> tuple:
        return tuple(self._steps)

    def _append(self, step: Any) -> "Flow":
        if isinstance(step, LabelStep) and any(
            isinstance(s, LabelStep) and s.name == step.name for s in self._steps
        ):
            raise FlowConfigError(f'duplicate label "{step.name}"')
        self._steps.append(step)
        self._chain_cache = None
        return self

    def _chain(self) -> Chain:
        if self._chain_cache is None:
            self._chain_cache = build_chain(self._steps, self._hooks)
        return self._chain_cache

    def _build_body(self, body: BodyArg) -> "Flow":
        if isinstance(body, Flow):
            return body
        inner = self._child()
        built = body(inner)
        return built if isinstance(built, Flow) else inner

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def use_hooks(self, hooks: Hooks) -> "Flow":
        """Register a ``Hooks`` set; active for every later run of this flow."""
        self._hooks.add(hooks)
        return self

    def add_hooks(self, **slots: Callable[..., Any]) -> "Flow":
        """Shorthand for ``use_hooks(Hooks(**slots))``."""
        return self.use_hooks(Hooks(**slots))

    # ------------------------------------------------------------------
    # Fluent builder
    # ------------------------------------------------------------------

    def start_with(self, fn: Callable[..., Any], options: OptionsArg = None, *, name: str | None = None) -> "Flow":
        """Reset the chain to a single first step."""
        self._steps = []
        self._chain_cache = None
        return self.then(fn, options, name=name)

    def then(self, fn: Callable[..., Any], options: OptionsArg = None, *, name: str | None = None) -> "Flow":
        """Append *fn* as a sequential step and return ``self`` for chaining."""
        return self._append(FnStep(fn=fn, options=StepOptions.coerce(options), name=name))

    def branch(
        self,
        router: Callable[..., Any],
        table: Mapping[Any, Callable[..., Any]],
        options: OptionsArg = None,
    ) -> "Flow":
        """Append a routing step.

        ``router(shared, ctx)`` returns a key; ``table[key]`` runs, else
        ``table["default"]``, else nothing.  The chain continues afterwards.
        """
        return self._append(
            BranchStep(
                router=router,
                table=MappingProxyType(dict(table)),
                options=StepOptions.coerce(options),
            )
        )

    def loop(self, condition: Callable[..., Any], body: BodyArg) -> "Flow":
        """Append a loop running *body* while ``condition(shared, ctx)`` holds.

        *body* is a ``Flow`` or a callable that populates a fresh child flow.
        """
        return self._append(LoopStep(condition=condition, body=self._build_body(body)))

    def batch(
        self,
        items_of: Callable[..., Any],
        body: BodyArg,
        *,
        key: str = BATCH_ITEM,
    ) -> "Flow":
        """Append a batch step running *body* once per item, in order.

        The current item is published in the run-context slot *key*
        (``ctx.item`` for the default key) and the slot's previous value is
        restored once the batch finishes.  Use a distinct *key* per nesting
        level.
        """
        return self._append(BatchStep(items_of=items_of, body=self._build_body(body), key=key))

    def parallel(self, fns: list, options: OptionsArg = None) -> "Flow":
        """Append a step running *fns* concurrently on the same shared object."""
        return self._append(ParallelStep(fns=tuple(fns), options=StepOptions.coerce(options)))

    def parallel_atomic(
        self,
        fns: list,
        reducer: Callable[[Any, list], Any],
        options: OptionsArg = None,
    ) -> "Flow":
        """Append a step running *fns* concurrently, each on its own draft.

        ``reducer(shared, drafts)`` is called once all fns finish and is
        solely responsible for merging drafts back into *shared*.
        """
        if reducer is None:
            raise FlowConfigError("parallel_atomic requires a reducer")
        return self._append(
            ParallelStep(fns=tuple(fns), options=StepOptions.coerce(options), reducer=reducer)
        )

    def label(self, name: str) -> "Flow":
        """Insert a named jump target; bodies return ``Jump(name)`` to go there."""
        return self._append(LabelStep(name=name))

    def add(self, fragment: "Flow") -> "Flow":
        """Splice all steps of *fragment* into this flow at the current position."""
        for step in fragment._steps:
            self._append(step)
        return self

    def interrupt_if(self, predicate: Callable[..., Any]) -> "Flow":
        """Append a step that pauses the run when ``predicate(shared, ctx)`` holds.

        Raises ``InterruptError`` carrying a deep copy of the shared state.
        Resume by editing the snapshot and running again (see ``with_replay``).
        """

        async def interrupt(shared: Any, ctx: RunContext) -> None:
            if await maybe_await(predicate(shared, ctx)):
                logger.info("Flow interrupted at step %d", ctx.step_index)
                raise InterruptError(ctx.snapshot(shared), step_index=ctx.step_index)

        return self.then(interrupt, name="interrupt")

    def graph(self) -> "Graph":
        """Return an empty ``Graph`` sharing this flow's extensions."""
        from .graph import Graph

        return Graph(extensions=self._extensions, clone=self._clone)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _new_context(self, params: Optional[Mapping[str, Any]], options: Optional[RunOptions]) -> RunContext:
        return RunContext(params=params or {}, options=options or RunOptions(), clone=self._clone)

    async def _drive(self, shared: Any, ctx: RunContext, chain: Chain) -> Any:
        hooks = chain.hooks
        logger.debug("Flow run started (%d steps)", len(chain.steps))
        try:
            await hooks.fire("before_flow", shared, ctx)
            await execute_chain(chain, shared, ctx)
        finally:
            await hooks.fire("after_flow", shared, ctx)
        logger.debug("Flow run finished after %d steps, %d jumps", ctx.steps, ctx.cycles)
        return shared

    def run(
        self,
        shared: Any,
        params: Optional[Mapping[str, Any]] = None,
        options: Optional[RunOptions] = None,
    ) -> Any:
        """Execute the flow (sync entry point) and return *shared*.

        Must not be called from a running event loop; use ``run_async``.
        """
        return asyncio.run(self.run_async(shared, params, options))

    async def run_async(
        self,
        shared: Any,
        params: Optional[Mapping[str, Any]] = None,
        options: Optional[RunOptions] = None,
    ) -> Any:
        """Async entry point; ``await flow.run_async(shared)`` from coroutines."""
        ctx = self._new_context(params, options)
        return await self._drive(shared, ctx, self._chain())

    async def stream(
        self,
        shared: Any,
        params: Optional[Mapping[str, Any]] = None,
        options: Optional[RunOptions] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Execute the flow and yield ``StreamEvent``s as they happen.

        Yields ``step:before`` / ``step:after`` around every top-level step,
        ``chunk`` for every ``ctx.emit()`` (or async generator yield), one
        ``error`` if the run fails, and always exactly one final ``done``.
        The stream hooks are scoped to this call; the flow's own hooks are
        not modified.
        """
        queue: asyncio.Queue = asyncio.Queue()
        ctx = self._new_context(params, options)
        ctx.subscribe(lambda chunk: queue.put_nowait(StreamEvent(CHUNK, data=chunk)))

        stream_hooks = Hooks(
            before_step=lambda meta, s, c: queue.put_nowait(StreamEvent(STEP_BEFORE, meta=meta)),
            after_step=lambda meta, s, c: queue.put_nowait(
                StreamEvent(STEP_AFTER, meta=meta, shared=s)
            ),
        )
        base = self._chain()
        chain = Chain(steps=base.steps, labels=base.labels, hooks=base.hooks.derive(stream_hooks))

        async def drive() -> None:
            try:
                await self._drive(shared, ctx, chain)
            except Exception as exc:
                queue.put_nowait(StreamEvent(ERROR, error=exc))
            finally:
                queue.put_nowait(None)

        task = asyncio.ensure_future(drive())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    yield StreamEvent(DONE)
                    return
                yield event
        finally:
            if not task.done():
                task.cancel()


class Fragment(Flow):
    """A reusable partial flow, embedded into other flows with ``Flow.add()``.

    Fragments cannot be run or streamed directly.
    """

    async def run_async(self, shared: Any = None, params: Any = None, options: Any = None) -> Any:
        raise FlowConfigError("Fragment cannot be run directly; use .add() to embed it in a Flow")

    def run(self, shared: Any = None, params: Any = None, options: Any = None) -> Any:
        raise FlowConfigError("Fragment cannot be run directly; use .add() to embed it in a Flow")

    async def stream(self, shared: Any = None, params: Any = None, options: Any = None) -> AsyncIterator[StreamEvent]:
        raise FlowConfigError("Fragment cannot be streamed directly; use .add() to embed it in a Flow")
        yield  # pragma: no cover


def fragment(**kwargs: Any) -> Fragment:
    """Create a new ``Fragment``."""
    return Fragment(**kwargs)
