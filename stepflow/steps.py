"""Step records, step metadata and routing markers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Optional

from .options import StepOptions

if TYPE_CHECKING:
    from .flow import Flow


class StepKind(str, Enum):
    FN = "fn"
    BRANCH = "branch"
    LOOP = "loop"
    BATCH = "batch"
    PARALLEL = "parallel"
    PARALLEL_ATOMIC = "parallel_atomic"
    LABEL = "label"


@dataclass(frozen=True)
class StepMeta:
    """What hooks see about the step being executed."""

    index: int
    kind: StepKind
    label: Optional[str] = None


# ---------------------------------------------------------------------------
# Routing markers returned from step bodies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Jump:
    """Continue execution right after ``label(target)``."""

    target: str


class _Finish:
    _instance: ClassVar[Optional["_Finish"]] = None

    def __new__(cls) -> "_Finish":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "FINISH"


#: Return from a step body to end the current chain early.
FINISH = _Finish()


def is_route(value: Any) -> bool:
    return value is FINISH or isinstance(value, Jump)


# ---------------------------------------------------------------------------
# Step records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FnStep:
    fn: Callable[..., Any]
    options: StepOptions = field(default_factory=StepOptions)
    name: Optional[str] = None
    kind: ClassVar[StepKind] = StepKind.FN


@dataclass(frozen=True)
class BranchStep:
    router: Callable[..., Any]
    table: MappingProxyType
    options: StepOptions = field(default_factory=StepOptions)
    kind: ClassVar[StepKind] = StepKind.BRANCH


@dataclass(frozen=True)
class LoopStep:
    condition: Callable[..., Any]
    body: "Flow"
    kind: ClassVar[StepKind] = StepKind.LOOP


@dataclass(frozen=True)
class BatchStep:
    items_of: Callable[..., Any]
    body: "Flow"
    key: str
    kind: ClassVar[StepKind] = StepKind.BATCH


@dataclass(frozen=True)
class ParallelStep:
    fns: tuple
    options: StepOptions = field(default_factory=StepOptions)
    reducer: Optional[Callable[[Any, list], Any]] = None

    @property
    def atomic(self) -> bool:
        return self.reducer is not None

    @property
    def kind(self) -> StepKind:
        return StepKind.PARALLEL_ATOMIC if self.atomic else StepKind.PARALLEL


@dataclass(frozen=True)
class LabelStep:
    name: str
    kind: ClassVar[StepKind] = StepKind.LABEL


def step_label(step: Any, index: int) -> str:
    """Human-readable position used in ``FlowError`` messages."""
    if step.kind is StepKind.FN:
        return f"step {index}"
    return f"{step.kind.value} (step {index})"
