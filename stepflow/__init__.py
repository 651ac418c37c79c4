"""Fluent flow engine: steps over one shared state, with hooks, control flow and graphs.

Public surface::

    from stepflow import (
        Flow,
        Fragment,
        fragment,
        Graph,
        Hooks,
        RunContext,
        emit,
        Jump,
        FINISH,
        StepOptions,
        RunOptions,
        StreamEvent,
        ExtensionRegistry,
        default_registry,
        FlowError,
        InterruptError,
        ...
    )
"""

from .context import RunContext, emit
from .errors import (
    CycleLimitError,
    FlowCancelledError,
    FlowConfigError,
    FlowError,
    GraphError,
    InterruptError,
    ParallelError,
    StateCloneError,
    StepflowError,
    StepLimitError,
    StepTimeoutError,
)
from .extensions import ExtensionRegistry
from .flow import Flow, Fragment, fragment
from .graph import Graph, GraphEdge, GraphNode
from .hooks import Hooks
from .options import RunOptions, StepOptions
from .protocol import StepFn, StreamEvent
from .steps import FINISH, Jump, StepKind, StepMeta
from .builtins import BUILTINS, default_registry

__all__ = [
    "Flow",
    "Fragment",
    "fragment",
    "Graph",
    "GraphNode",
    "GraphEdge",
    "Hooks",
    "RunContext",
    "emit",
    "Jump",
    "FINISH",
    "StepKind",
    "StepMeta",
    "StepOptions",
    "RunOptions",
    "StepFn",
    "StreamEvent",
    "ExtensionRegistry",
    "BUILTINS",
    "default_registry",
    "StepflowError",
    "FlowError",
    "FlowConfigError",
    "GraphError",
    "InterruptError",
    "ParallelError",
    "CycleLimitError",
    "StepLimitError",
    "StepTimeoutError",
    "FlowCancelledError",
    "StateCloneError",
]
