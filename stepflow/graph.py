"""Graph: declarative nodes and edges compiled to an ordinary Flow.

::

    flow = (
        Graph()
        .add_node("fetch", fetch)
        .add_node("transform", transform)
        .add_node("save", save)
        .add_edge("fetch", "transform")
        .add_edge("transform", "save")
        .add_edge("transform", "fetch", lambda s, ctx: s["needs_retry"])  # back-edge
        .compile()
    )

Only conditional edges may close a cycle.  The compiled flow runs the nodes
in topological order and, after any node with outgoing conditional edges,
a routing step jumps to the first target whose condition holds.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Union

from .errors import GraphError
from .extensions import ExtensionRegistry
from .flow import Flow, OptionsArg
from .hooks import maybe_await
from .options import StepOptions
from .steps import Jump

logger = logging.getLogger(__name__)

LABEL_PREFIX = "graph:"


@dataclass(frozen=True)
class GraphNode:
    name: str
    fn: Callable[..., Any]
    options: StepOptions = field(default_factory=StepOptions)


@dataclass(frozen=True)
class GraphEdge:
    source: str
    target: str
    # Edge is only followed when condition(shared, ctx) is truthy.
    condition: Optional[Callable[..., Any]] = None

    @property
    def conditional(self) -> bool:
        return self.condition is not None


def topological_order(nodes: list[str], edges: list[GraphEdge]) -> list[str]:
    """Kahn's algorithm over the unconditional edges.

    Ready nodes are taken in declaration order so disconnected nodes keep
    their relative order.  Raises ``GraphError`` on a cycle.
    """
    position = {name: i for i, name in enumerate(nodes)}
    adjacency: dict[str, list[str]] = {name: [] for name in nodes}
    in_degree = {name: 0 for name in nodes}
    for edge in edges:
        if edge.conditional:
            continue
        adjacency[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    ready = [position[name] for name in nodes if in_degree[name] == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        name = nodes[heapq.heappop(ready)]
        order.append(name)
        for target in adjacency[name]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                heapq.heappush(ready, position[target])

    if len(order) != len(nodes):
        done = set(order)
        stuck = [name for name in nodes if name not in done]
        raise GraphError(
            f"graph has cycles among unconditional edges involving: {', '.join(stuck)}. "
            "Use conditional edges to break cycles."
        )
    return order


def _router(routes: list[GraphEdge]) -> Callable[..., Any]:
    async def route(shared: Any, ctx: Any) -> Optional[Jump]:
        for edge in routes:
            if await maybe_await(edge.condition(shared, ctx)):
                return Jump(LABEL_PREFIX + edge.target)
        return None

    return route


class Graph:
    """Collects nodes and edges; ``compile()`` returns an executable ``Flow``."""

    def __init__(
        self,
        *,
        extensions: Union[ExtensionRegistry, Mapping[str, Callable[..., Any]], None] = None,
        clone: Optional[Callable[[Any], Any]] = None,
    ) -> None:
        self._nodes: dict[str, GraphNode] = {}
        self._edges: list[GraphEdge] = []
        if isinstance(extensions, ExtensionRegistry):
            extensions = extensions.operations
        # Snapshot: installs after construction do not reach the compiled flow.
        self._extensions: Mapping[str, Callable[..., Any]] = MappingProxyType(
            dict(extensions or {})
        )
        self._clone = clone

    @property
    def nodes(self) -> tuple:
        return tuple(self._nodes.values())

    @property
    def edges(self) -> tuple:
        return tuple(self._edges)

    def add_node(self, name: str, fn: Callable[..., Any], options: OptionsArg = None) -> "Graph":
        if name in self._nodes:
            raise GraphError(f'graph node "{name}" already exists')
        self._nodes[name] = GraphNode(name=name, fn=fn, options=StepOptions.coerce(options))
        return self

    def add_edge(
        self,
        source: str,
        target: str,
        condition: Optional[Callable[..., Any]] = None,
    ) -> "Graph":
        self._edges.append(GraphEdge(source=source, target=target, condition=condition))
        return self

    def compile(self) -> Flow:
        if not self._nodes:
            raise GraphError("cannot compile an empty graph")
        for edge in self._edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in self._nodes:
                    raise GraphError(f'edge references unknown node "{endpoint}"')

        order = topological_order(list(self._nodes), self._edges)

        routes: dict[str, list[GraphEdge]] = {}
        for edge in self._edges:
            if edge.conditional:
                routes.setdefault(edge.source, []).append(edge)
        targets = {edge.target for edge in self._edges if edge.conditional}

        flow = Flow(extensions=self._extensions, clone=self._clone)
        for name in order:
            node = self._nodes[name]
            if name in targets:
                flow.label(LABEL_PREFIX + name)
            flow.then(node.fn, node.options, name=name)
            if name in routes:
                flow.then(_router(routes[name]), name=f"{name}->")

        logger.debug(
            "Compiled graph: %d nodes, %d edges (%d conditional)",
            len(self._nodes),
            len(self._edges),
            sum(1 for e in self._edges if e.conditional),
        )
        return flow
