"""Extension registry: named operations added to flows without subclassing."""

from __future__ import annotations

from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Iterator, Mapping

from .errors import FlowConfigError

if TYPE_CHECKING:
    from .flow import Flow
    from .graph import Graph

Extension = Mapping[str, Callable[..., Any]]


class ExtensionRegistry:
    """An explicit, shareable table of extension operations.

    An extension is a flat mapping ``{"name": fn}``.  Each ``fn`` is bound to
    the flow it is called on (``fn(flow, *args)``), registers hooks and/or
    appends steps, and returns the flow so chaining keeps working::

        def with_audit(flow, sink):
            return flow.add_hooks(after_step=lambda meta, s, ctx: sink.append(meta.index))

        registry = ExtensionRegistry({"with_audit": with_audit})
        flow = registry.flow().with_audit(log).then(step)

    Flows created by ``registry.flow()`` take a snapshot of the operations
    installed at that moment.
    """

    def __init__(self, *extensions: Extension) -> None:
        self._operations: dict[str, Callable[..., Any]] = {}
        for extension in extensions:
            self.install(extension)

    def install(self, extension: Extension) -> "ExtensionRegistry":
        """Add every operation in *extension*; later installs win on name clashes."""
        from .flow import Flow

        for name, fn in extension.items():
            if not callable(fn):
                raise FlowConfigError(f"extension {name!r} is not callable")
            if name.startswith("_") or hasattr(Flow, name):
                raise FlowConfigError(
                    f"extension {name!r} would shadow a Flow attribute"
                )
            self._operations[name] = fn
        return self

    @property
    def operations(self) -> Mapping[str, Callable[..., Any]]:
        return MappingProxyType(dict(self._operations))

    def __contains__(self, name: object) -> bool:
        return name in self._operations

    def __iter__(self) -> Iterator[str]:
        return iter(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    def flow(self, **kwargs: Any) -> "Flow":
        """Create a ``Flow`` with every currently installed operation."""
        from .flow import Flow

        return Flow(extensions=self, **kwargs)

    def graph(self, **kwargs: Any) -> "Graph":
        """Create a ``Graph`` whose compiled flow carries these operations."""
        from .graph import Graph

        return Graph(extensions=self, **kwargs)
