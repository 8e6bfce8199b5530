"""Graph Base Classes

This module defines StateGraph, the builder for stateful workflows. The builder
accumulates nodes and edges; compile() validates the definition and freezes it
into an executable CompiledGraph.

Example:
    ```python
    class State(TypedDict):
        aggregate: Annotated[list, concat]

    def step(name):
        return lambda state: {"aggregate": [name]}

    graph = StateGraph(State)
    graph.add_node("a", step("A"))
    graph.add_node("b", step("B"))
    graph.add_node("c", step("C"))
    graph.add_node("d", step("D"), defer=True)

    graph.add_edge(START, "a")
    graph.add_edge("a", "b")
    graph.add_edge("a", "c")
    graph.add_edge("b", "d")
    graph.add_edge("c", "d")
    graph.add_edge("d", END)

    app = graph.compile()
    app.invoke({"aggregate": []})
    ```
"""

import inspect
from typing import (
    Any,
    Callable,
    Dict,
    Hashable,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)
from pydantic import BaseModel, Field, PrivateAttr

from stepgraph.core.checkpoint.base import BaseCheckpointSaver
from stepgraph.core.errors import GraphDefinitionError, RoutingError
from stepgraph.core.graph.command import END, START, Destination, Send
from stepgraph.core.graph.nodes.base.node import NodeSpec
from stepgraph.core.graph.state import Channel, channels_from_schema
from stepgraph.core.logging import get_logger, LogComponent
from stepgraph.core.pregel.compiled import CompiledGraph
from stepgraph.core.pregel.plan import ExecutionPlan
from stepgraph.core.store.base import BaseStore


class Branch(BaseModel):
    """A conditional edge.

    Attributes:
        source: Node the branch leaves from
        router: ``state -> name | [names] | Send | [Send]``
        destinations: Maps router return values to node names; None accepts node names directly
    """
    source: str
    router: Callable[..., Any]
    destinations: Optional[Dict[Hashable, str]] = None

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    def resolve(self, state: Mapping[str, Any]) -> List[Destination]:
        """Run the router and translate its result into destinations.

        Raises:
            RoutingError: The router returned a value outside ``destinations``
        """
        result = self.router(state)
        if inspect.isawaitable(result):
            raise RoutingError(self.source, self.router, "routers must be synchronous, got awaitable from")
        items = result if isinstance(result, (list, tuple)) else [result]

        resolved: List[Destination] = []
        for item in items:
            if isinstance(item, Send):
                resolved.append(item)
            elif self.destinations is not None:
                try:
                    resolved.append(self.destinations[item])
                except (KeyError, TypeError):
                    raise RoutingError(self.source, item, "router returned undeclared destination") from None
            else:
                resolved.append(item)
        return resolved


class Join(BaseModel):
    """A static edge that fires once every source has completed."""
    sources: Tuple[str, ...]
    destination: str

    class Config:
        frozen = True

    @property
    def key(self) -> str:
        return f"__join__:{'+'.join(self.sources)}->{self.destination}"


class StateGraph(BaseModel):
    """Builder for a stateful graph.

    The graph manages:
    - Node registration and edges (static, join and conditional)
    - Validation of the definition
    - Compilation into an executable CompiledGraph

    Attributes:
        state_schema: TypedDict, pydantic model or mapping of Channels
        nodes: Registered nodes, in registration order
        edges: Static ``(source, destination)`` edges
        joins: Edges waiting on several sources
        branches: Conditional edges per source node
    """
    state_schema: Any = None
    nodes: Dict[str, NodeSpec] = Field(default_factory=dict)
    edges: List[Tuple[str, str]] = Field(default_factory=list)
    joins: List[Join] = Field(default_factory=list)
    branches: Dict[str, List[Branch]] = Field(default_factory=dict)

    _logger: Any = PrivateAttr()
    _channels: Dict[str, Channel] = PrivateAttr()

    class Config:
        arbitrary_types_allowed = True

    def __init__(self, state_schema: Any = None, **data):
        if state_schema is None:
            raise GraphDefinitionError("StateGraph requires a state schema")
        super().__init__(state_schema=state_schema, **data)
        self._logger = get_logger(LogComponent.GRAPH)
        self._channels = channels_from_schema(state_schema)

    @property
    def channels(self) -> Dict[str, Channel]:
        return dict(self._channels)

    def add_node(
        self,
        name: Union[str, Callable, Any],
        handler: Optional[Any] = None,
        *,
        defer: bool = False,
        timeout: Optional[float] = None,
        destinations: Sequence[str] = (),
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "StateGraph":
        """Register a node.

        Args:
            name: Node name, or the handler itself (its ``__name__`` becomes the name)
            handler: Callable or compiled subgraph
            defer: Wait for every incoming branch before running
            timeout: Per-node timeout in seconds
            destinations: Nodes reachable through Command.goto, used by validation
                and deferred gating; a node declaring none may go to any node
                and deferred gating; a node declaring none may go to any node
            metadata: Free-form node metadata

        Raises:
            GraphDefinitionError: Duplicate or reserved name, or invalid handler
        """
        if handler is None and not isinstance(name, str):
            handler = name
            name = getattr(handler, "name", None) or getattr(handler, "__name__", None)
            if not name:
                raise GraphDefinitionError(f"Cannot infer a node name from {handler!r}")
        if name in self.nodes:
            raise GraphDefinitionError(f"Node '{name}' is already registered")

        try:
            node = NodeSpec(
                name=name,
                handler=handler,
                defer=defer,
                timeout=timeout,
                destinations=tuple(destinations),
                metadata=metadata or {},
            )
        except ValueError as e:
            raise GraphDefinitionError(f"Invalid node '{name}': {e}") from e

        self.nodes[name] = node
        self._logger.info(f"Added node: {name}{' (deferred)' if defer else ''}")
        return self

    def add_edge(self, source: Union[str, Sequence[str]], destination: str) -> "StateGraph":
        """Add a directed edge.

        A list of sources creates a join: ``destination`` runs once every
        source has completed.

        Raises:
            GraphDefinitionError: END used as a source or START as a destination
        """
        if destination == START:
            raise GraphDefinitionError("START cannot be an edge destination")

        if isinstance(source, str):
            if source == END:
                raise GraphDefinitionError("END cannot be an edge source")
            self.edges.append((source, destination))
            self._logger.info(f"Added edge: {source} --> {destination}")
            return self

        sources = tuple(source)
        if not sources:
            raise GraphDefinitionError("A join edge needs at least one source")
        if START in sources or END in sources:
            raise GraphDefinitionError("START and END cannot be join sources")
        if len(sources) == 1:
            return self.add_edge(sources[0], destination)
        self.joins.append(Join(sources=sources, destination=destination))
        self._logger.info(f"Added join: {list(sources)} --> {destination}")
        return self

    def add_conditional_edges(
        self,
        source: str,
        router: Callable[..., Any],
        destinations: Optional[Union[Sequence[str], Mapping[Hashable, str]]] = None,
    ) -> "StateGraph":
        """Add a conditional edge.

        Args:
            source: Node the branch leaves from
            router: Function of the committed state returning destination(s)
            destinations: Either the list of possible node names or a mapping
                from router return values to node names

        Raises:
            GraphDefinitionError: END used as a source
        """
        if source == END:
            raise GraphDefinitionError("END cannot be an edge source")
        if destinations is None:
            mapping = None
        elif isinstance(destinations, Mapping):
            mapping = dict(destinations)
        else:
            mapping = {name: name for name in destinations}

        self.branches.setdefault(source, []).append(
            Branch(source=source, router=router, destinations=mapping)
        )
        self._logger.info(
            f"Added conditional edge from {source}"
            + (f" to {sorted(set(mapping.values()))}" if mapping else "")
        )
        return self

    def set_entry_point(self, name: str) -> "StateGraph":
        """Shorthand for ``add_edge(START, name)``."""
        return self.add_edge(START, name)

    def set_finish_point(self, name: str) -> "StateGraph":
        """Shorthand for ``add_edge(name, END)``."""
        return self.add_edge(name, END)

    def add_sequence(self, nodes: Iterable[Union[Callable, Tuple[str, Any]]]) -> "StateGraph":
        """Register nodes and connect them in order.

        Items are handlers (named after ``__name__``) or ``(name, handler)``
        pairs. If nothing leaves START yet, the first node becomes the entry point.
        """
        names: List[str] = []
        for item in nodes:
            if isinstance(item, tuple):
                name, handler = item
                self.add_node(name, handler)
            else:
                self.add_node(item)
                name = list(self.nodes)[-1]
            names.append(name)

        if not names:
            raise GraphDefinitionError("add_sequence() needs at least one node")
        for source, destination in zip(names, names[1:]):
            self.add_edge(source, destination)
        if not self._start_edges() and START not in self.branches:
            self.set_entry_point(names[0])
        return self

    def _start_edges(self) -> List[str]:
        return [destination for source, destination in self.edges if source == START]

    def _successors(self, name: str) -> Set[str]:
        """Every node ``name`` can hand control to, for reachability."""
        found = {destination for source, destination in self.edges if source == name}
        for join in self.joins:
            if name in join.sources:
                found.add(join.destination)
        for branch in self.branches.get(name, []):
            if branch.destinations is None:
                found.update(self.nodes)
            else:
                found.update(branch.destinations.values())
        node = self.nodes.get(name)
        if node is not None:
            found.update(node.destinations)
        return found

    def validate(self) -> List[str]:
        """Validate the graph definition.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors: List[str] = []

        if not self.nodes:
            errors.append("Graph has no nodes")
            return errors

        known = set(self.nodes) | {START, END}

        for source, destination in self.edges:
            if source not in known:
                errors.append(f"Edge source '{source}' is not a declared node")
            if destination not in known:
                errors.append(f"Edge {source} --> {destination} references unknown node '{destination}'")

        for join in self.joins:
            for source in join.sources:
                if source not in self.nodes:
                    errors.append(f"Join source '{source}' is not a declared node")
            if join.destination not in known:
                errors.append(f"Join destination '{join.destination}' is not a declared node")

        for source, branches in self.branches.items():
            if source not in known:
                errors.append(f"Conditional edge source '{source}' is not a declared node")
            for branch in branches:
                for destination in (branch.destinations or {}).values():
                    if destination not in known or destination == START:
                        errors.append(
                            f"Conditional edge from '{source}' references unknown node '{destination}'"
                        )

        for name, node in self.nodes.items():
            for destination in node.destinations:
                if destination not in known or destination == START:
                    errors.append(f"Node '{name}' declares unknown destination '{destination}'")

        start_edges = self._start_edges()
        start_branches = self.branches.get(START, [])
        if not start_edges and not start_branches:
            errors.append("No edge originates from START; add one with set_entry_point() or add_edge(START, ...)")
        elif start_branches and (start_edges or len(start_branches) > 1):
            errors.append("Exactly one edge set may originate from START: static edges or one conditional edge")

        reachable: Set[str] = set()
        frontier = [START]
        while frontier:
            current = frontier.pop()
            for successor in self._successors(current):
                if successor in self.nodes and successor not in reachable:
                    reachable.add(successor)
                    frontier.append(successor)
        for name in self.nodes:
            if name not in reachable:
                errors.append(f"Node '{name}' is not reachable from START")

        return errors

    def compile(
        self,
        checkpointer: Optional[BaseCheckpointSaver] = None,
        store: Optional[BaseStore] = None,
        interrupt_before: Sequence[str] = (),
        interrupt_after: Sequence[str] = (),
        name: Optional[str] = None,
    ) -> CompiledGraph:
        """Validate and freeze the graph.

        Raises:
            GraphDefinitionError: With every problem found, if validation fails
        """
        errors = self.validate()
        for node in list(interrupt_before) + list(interrupt_after):
            if node != "*" and node not in self.nodes:
                errors.append(f"Interrupt references unknown node '{node}'")
        if errors:
            message = "Graph validation failed:\n  - " + "\n  - ".join(errors)
            self._logger.error(message)
            raise GraphDefinitionError(message, errors)

        plan = ExecutionPlan.build(
            channels=self._channels,
            nodes=self.nodes,
            edges=self.edges,
            joins=self.joins,
            branches=self.branches,
        )
        self._logger.info(
            f"Compiled graph{' ' + name if name else ''} with {len(self.nodes)} nodes"
        )
        return CompiledGraph(
            plan=plan,
            checkpointer=checkpointer,
            store=store,
            interrupt_before=list(interrupt_before),
            interrupt_after=list(interrupt_after),
            name=name or "graph",
        )
