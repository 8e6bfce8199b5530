"""Base node definitions for the graph system.

This module defines NodeSpec, the compiled description of a unit of work, and
RunContext, the per-task object every handler may receive. A handler is any
callable taking the state snapshot and, optionally, the context:

    ```python
    def plain(state):
        return {"count": state["count"] + 1}

    async def with_context(state, context):
        user = context.configurable["user_id"]
        memories = context.store.search(("memories", user))
        return {"memories": [m.value for m in memories]}
    ```

Synchronous handlers run in worker threads so blocking I/O does not stall
sibling nodes of the same superstep. A compiled graph can be used as a
handler, in which case it runs as a subgraph.
"""

import asyncio
import inspect
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)
from pydantic import BaseModel, Field, PrivateAttr, model_validator

from stepgraph.core.graph.command import RESERVED_NAMES
from stepgraph.core.logging import get_logger, LogComponent
from stepgraph.core.store.base import BaseStore

logger = get_logger(LogComponent.NODES)


@runtime_checkable
class SubgraphProtocol(Protocol):
    """Interface a handler implements to run as a nested graph."""

    async def arun_subgraph(self, state: Mapping[str, Any], context: "RunContext") -> Any:
        ...


class RunContext(BaseModel):
    """
    Per-task context handed to node handlers.

    Attributes:
        node: Name of the executing node
        task_id: Unique id of this task invocation
        step: Superstep number the task belongs to
        thread_id: Thread of the run, if any
        configurable: Caller-supplied configuration values
        store: Cross-thread store in effect for the run
        input: The state (or Send argument) passed to the executing node
    """
    node: str
    task_id: str
    step: int
    thread_id: Optional[str] = None
    configurable: Dict[str, Any] = Field(default_factory=dict)
    store: Optional[BaseStore] = None
    input: Any = None

    _counter: Any = PrivateAttr(default=None)

    class Config:
        arbitrary_types_allowed = True

    @property
    def counter(self) -> Any:
        """Superstep counter shared with subgraphs started from this task."""
        return self._counter

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a configurable value."""
        return self.configurable.get(key, default)


def _accepts_context(handler: Callable) -> bool:
    """Whether the handler takes a second positional argument."""
    try:
        signature = inspect.signature(handler)
    except (TypeError, ValueError):
        return False
    positional = 0
    for param in signature.parameters.values():
        if param.kind == param.VAR_POSITIONAL:
            return True
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
            positional += 1
    return positional >= 2


class NodeSpec(BaseModel):
    """
    A named unit of work in a compiled graph.

    Attributes:
        name: Unique node name
        handler: ``(state[, context]) -> dict | Command | None`` or a compiled graph
        defer: Barrier semantics; wait for every incoming branch before running
        timeout: Per-node timeout in seconds
        destinations: Nodes this node may reach through Command.goto (empty: any node)
        metadata: Free-form node metadata
    """
    name: str = Field(..., description="Unique identifier for this node")
    handler: Any = Field(..., description="Callable or compiled subgraph")
    defer: bool = Field(default=False)
    timeout: Optional[float] = Field(default=None, gt=0)
    destinations: Tuple[str, ...] = Field(default_factory=tuple)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    _takes_context: bool = PrivateAttr(default=False)

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    @model_validator(mode='after')
    def validate_node(self) -> 'NodeSpec':
        """Validate node configuration."""
        if not self.name:
            raise ValueError("Node must have a name")
        if self.name in RESERVED_NAMES:
            raise ValueError(f"Node name '{self.name}' is reserved")
        if not (self.is_subgraph or callable(self.handler)):
            raise ValueError(f"Node '{self.name}' handler must be callable or a compiled graph")
        self._takes_context = not self.is_subgraph and _accepts_context(self.handler)
        return self

    @property
    def is_subgraph(self) -> bool:
        return isinstance(self.handler, SubgraphProtocol)

    async def invoke(self, state: Any, context: RunContext) -> Any:
        """Run the handler once.

        Coroutine functions are awaited on the event loop; plain callables run
        in a worker thread. Exceptions propagate unchanged.
        """
        if self.is_subgraph:
            return await self.handler.arun_subgraph(state, context)

        args: List[Any] = [state, context] if self._takes_context else [state]
        if inspect.iscoroutinefunction(self.handler) or inspect.iscoroutinefunction(
            getattr(self.handler, "__call__", None)
        ):
            return await self.handler(*args)

        result = await asyncio.to_thread(self.handler, *args)
        if inspect.isawaitable(result):
            result = await result
        return result
