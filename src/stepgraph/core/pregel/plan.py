"""Execution plan: the frozen adjacency structure produced by compile().

The plan answers two questions for the scheduler:

1. routes(): where does control go after a node finishes, given the new state?
2. advance(): given every route taken in a superstep, which nodes form the
   next active set, and which deferred nodes or joins are still waiting?

Barrier bookkeeping lives in a ``waiting`` mapping that is saved with every
checkpoint, so a resumed run picks up half-completed joins where it left off.
"""

from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Sequence, Set, Tuple

from pydantic import BaseModel

from stepgraph.core.errors import RoutingError
from stepgraph.core.graph.command import END, START, Destination, Send
from stepgraph.core.graph.nodes.base.node import NodeSpec
from stepgraph.core.graph.state import Channel, read_only

# (node, destinations, followed_edges); followed_edges is False when a Command goto replaced routing
Completion = Tuple[str, Sequence[Destination], bool]


class ExecutionPlan(BaseModel):
    """
    Immutable description of a compiled graph.

    Attributes:
        channels: State channels by key
        nodes: Node registry, in registration order
        edges: Static successors per source (START included)
        joins: Multi-source edges
        branches: Conditional edges per source
        predecessors: For each deferred node, the nodes that can deliver to it
        reachable: For each node, every node it can eventually hand control to
    """
    channels: Dict[str, Channel]
    nodes: Dict[str, NodeSpec]
    edges: Dict[str, Tuple[str, ...]]
    joins: Tuple[Any, ...]
    branches: Dict[str, Tuple[Any, ...]]
    predecessors: Dict[str, FrozenSet[str]]
    reachable: Dict[str, FrozenSet[str]]

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    @classmethod
    def build(
        cls,
        channels: Mapping[str, Channel],
        nodes: Mapping[str, NodeSpec],
        edges: Sequence[Tuple[str, str]],
        joins: Sequence[Any],
        branches: Mapping[str, Sequence[Any]],
    ) -> "ExecutionPlan":
        successors: Dict[str, List[str]] = {}
        for source, destination in edges:
            targets = successors.setdefault(source, [])
            if destination not in targets:
                targets.append(destination)

        predecessors: Dict[str, FrozenSet[str]] = {}
        for name, node in nodes.items():
            if not node.defer:
                continue
            found = {source for source, destination in edges if destination == name}
            for join in joins:
                if join.destination == name:
                    found.update(join.sources)
            for source, source_branches in branches.items():
                if source == START:
                    continue
                for branch in source_branches:
                    # a router without declared destinations may return any node
                    if branch.destinations is None or name in branch.destinations.values():
                        found.add(source)
            for other, spec in nodes.items():
                if name in spec.destinations:
                    found.add(other)
            predecessors[name] = frozenset(found)

        return cls(
            channels=dict(channels),
            nodes=dict(nodes),
            edges={source: tuple(targets) for source, targets in successors.items()},
            joins=tuple(joins),
            branches={source: tuple(items) for source, items in branches.items()},
            predecessors=predecessors,
            reachable=_reachability(nodes, edges, joins, branches),
        )

    def order(self, name: str) -> int:
        """Registration index of a node."""
        return list(self.nodes).index(name)

    def can_reach(self, sources: Iterable[str], name: str) -> bool:
        """Whether any of ``sources`` can still hand control to ``name``."""
        return any(name in self.reachable.get(source, ()) for source in sources)

    def initial_state(self) -> Dict[str, Any]:
        return {key: channel.initial() for key, channel in self.channels.items()}

    def check_destination(self, source: str, destination: Destination) -> None:
        """Raise RoutingError unless the destination is a declared node or END."""
        name = destination.node if isinstance(destination, Send) else destination
        if not isinstance(name, str) or (name != END and name not in self.nodes):
            raise RoutingError(source, name)
        if isinstance(destination, Send) and name == END:
            raise RoutingError(source, name, "cannot Send to")

    def routes(
        self,
        node: str,
        state: Mapping[str, Any],
        goto: Sequence[Destination] = (),
    ) -> List[Destination]:
        """Destinations reached when ``node`` finishes.

        A non-empty ``goto`` replaces static and conditional routing entirely.

        Raises:
            RoutingError: A router or goto named an undeclared node
        """
        if goto:
            destinations = list(goto)
        else:
            destinations = list(self.edges.get(node, ()))
            view = read_only(state)
            for branch in self.branches.get(node, ()):
                destinations.extend(branch.resolve(view))

        for destination in destinations:
            self.check_destination(node, destination)
        return destinations

    def advance(
        self,
        completions: Sequence[Completion],
        waiting: Mapping[str, Sequence[str]],
    ) -> Tuple[List[str], List[Send], Dict[str, List[str]]]:
        """Compute the next active set.

        Deferred nodes are held until every predecessor has delivered since
        their last run and no node of the next active set can still reach
        them; if nothing else is left to run, every held deferred node is
        released so a branch that was never taken cannot stall the run.

        Returns:
            ``(next_nodes, sends, waiting)`` with next_nodes in registration order
        """
        pending: Dict[str, List[str]] = {key: list(sources) for key, sources in waiting.items()}
        triggered: Dict[str, None] = {}
        sends: List[Send] = []

        def deliver(source: str, destination: str) -> None:
            if destination == END:
                return
            if self.nodes[destination].defer:
                delivered = pending.setdefault(destination, [])
                if source not in delivered:
                    delivered.append(source)
            else:
                triggered.setdefault(destination, None)

        for node, destinations, followed_edges in completions:
            for destination in destinations:
                if isinstance(destination, Send):
                    sends.append(destination)
                else:
                    deliver(node, destination)
            if not followed_edges:
                continue
            for join in self.joins:
                if node not in join.sources:
                    continue
                arrived = pending.setdefault(join.key, [])
                if node not in arrived:
                    arrived.append(node)
                if set(join.sources) <= set(arrived):
                    del pending[join.key]
                    for source in join.sources:
                        deliver(source, join.destination)

        active = set(triggered) | {send.node for send in sends}
        deferred = [key for key in pending if key in self.nodes]
        ready = [
            name for name in deferred
            if self.predecessors[name] <= set(pending[name]) and not self.can_reach(active, name)
        ]
        if not triggered and not sends and not ready:
            ready = deferred
        for name in ready:
            del pending[name]
            triggered.setdefault(name, None)

        next_nodes = sorted(triggered, key=self.order)
        return next_nodes, sends, pending


def _reachability(
    nodes: Mapping[str, NodeSpec],
    edges: Sequence[Tuple[str, str]],
    joins: Sequence[Any],
    branches: Mapping[str, Sequence[Any]],
) -> Dict[str, FrozenSet[str]]:
    """Transitive successors of every node.

    A router without declared destinations, and a node that declares no
    Command destinations, may hand control to any node.
    """
    direct: Dict[str, Set[str]] = {name: set() for name in nodes}
    for source, destination in edges:
        if source in direct:
            direct[source].add(destination)
    for join in joins:
        for source in join.sources:
            if source in direct:
                direct[source].add(join.destination)
    for source, source_branches in branches.items():
        if source not in direct:
            continue
        for branch in source_branches:
            if branch.destinations is None:
                direct[source].update(nodes)
            else:
                direct[source].update(branch.destinations.values())
    for name, spec in nodes.items():
        direct[name].update(spec.destinations or nodes)

    reachable: Dict[str, FrozenSet[str]] = {}
    for name in nodes:
        seen: Set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for successor in direct.get(current, ()):
                if successor in nodes and successor not in seen:
                    seen.add(successor)
                    frontier.append(successor)
        reachable[name] = frozenset(seen)
    return reachable
