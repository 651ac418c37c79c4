"""Flow error types."""

from __future__ import annotations

from typing import Any


class StepflowError(Exception):
    """Base class for every error raised by the flow engine."""


class FlowConfigError(StepflowError):
    """Invalid flow wiring.

    Examples:
    - Two ``label()`` calls with the same name in one chain.
    - A step returning ``Jump("x")`` when no label ``x`` exists.
    - An extension operation that would shadow a core ``Flow`` attribute.
    - Calling ``run()`` on a ``Fragment``.
    """


class GraphError(FlowConfigError):
    """A graph could not be compiled (empty, dangling edge, cycle, duplicate node)."""


class FlowError(StepflowError):
    """A step failed after its retries were exhausted.

    ``step`` is a human-readable label of the construct that failed
    (``"step 3"``, ``"loop (step 1)"``, ``"batch (step 0)"``) and ``index``
    the chain position that label refers to.  ``cause`` is the root failure.
    """

    def __init__(self, step: str, cause: BaseException, index: int | None = None) -> None:
        self.step = step
        self.cause = cause
        self.index = index
        super().__init__(f"Flow failed at {step}: {cause}")

    # Set on instances created by the executor itself; user-raised FlowErrors
    # keep their label through nested chains.
    _engine_labelled = False
    # Position of the failing step in the chain currently unwinding.
    _position: int | None = None


class InterruptError(StepflowError):
    """Deliberate pause raised by ``Flow.interrupt_if``.

    ``snapshot`` is an independent deep copy of the shared state taken when
    the interrupt fired; ``step_index`` is the position of the interrupting
    step.  Never wrapped in ``FlowError``.
    """

    def __init__(self, snapshot: Any, step_index: int | None = None) -> None:
        self.snapshot = snapshot
        self.step_index = step_index
        super().__init__("Flow interrupted")


class ParallelError(StepflowError):
    """One or more functions of a parallel step failed.

    All functions always run to completion before this is raised.
    ``failures`` contains the full list of exceptions, one per failed function.
    """

    def __init__(self, failures: list[BaseException]) -> None:
        self.failures = failures
        super().__init__(
            f"{len(failures)} parallel fn(s) failed: "
            + "; ".join(type(e).__name__ for e in failures)
        )


class CycleLimitError(StepflowError):
    """More label jumps happened in one run than the configured ceiling."""

    def __init__(self, cycles: int, limit: int) -> None:
        self.cycles = cycles
        self.limit = limit
        super().__init__(f"cycle limit exceeded: {cycles} jumps > max_cycles({limit})")


class StepLimitError(StepflowError):
    """More steps executed in one run than the configured ceiling."""

    def __init__(self, steps: int, limit: int) -> None:
        self.steps = steps
        self.limit = limit
        super().__init__(f"step limit exceeded: {steps} > {limit}")


class StepTimeoutError(StepflowError):
    """A step attempt did not finish within its timeout.

    The timed-out work is abandoned, not cancelled: side effects it performs
    after the timeout are not rolled back.
    """

    def __init__(self, seconds: float, index: int | None = None) -> None:
        self.seconds = seconds
        self.index = index
        where = "step" if index is None else f"step {index}"
        super().__init__(f"{where} timed out after {seconds}s")


class FlowCancelledError(StepflowError):
    """The run's cancellation signal was set; no further steps were started."""


class StateCloneError(StepflowError):
    """Shared state could not be copied for a draft or an interrupt snapshot."""
