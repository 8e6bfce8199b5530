"""Compiled graphs: the invocation and persistence API.

A CompiledGraph wraps an immutable ExecutionPlan together with the default
checkpointer, store and interrupt settings chosen at compile time. Every call
builds a fresh SuperstepLoop, so one compiled graph can serve many concurrent
runs and threads.

Example:
    ```python
    app = graph.compile(checkpointer=InMemorySaver(), store=InMemoryStore())
    config = {"configurable": {"thread_id": "t-1"}}

    app.invoke({"question": "hi"}, config)
    for values in app.stream({"question": "again"}, config):
        print(values)

    history = list(app.get_state_history(config))
    ```
"""

import asyncio
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)
from pydantic import BaseModel, Field, PrivateAttr

from stepgraph.core.checkpoint.base import BaseCheckpointSaver, Checkpoint, PendingWrite
from stepgraph.core.config import RunConfig
from stepgraph.core.errors import (
    CheckpointError,
    InvalidUpdateError,
    ParentCommand,
    ThreadNotFoundError,
)
from stepgraph.core.graph.command import Command
from stepgraph.core.graph.nodes.base.node import RunContext
from stepgraph.core.graph.state import apply_writes, as_writes
from stepgraph.core.logging import get_logger, LogComponent
from stepgraph.core.pregel.loop import StepEvent, SuperstepLoop, route_update
from stepgraph.core.pregel.plan import ExecutionPlan
from stepgraph.core.store.base import BaseStore

STREAM_MODES = ("values", "updates", "debug")

ConfigLike = Union[None, RunConfig, Mapping[str, Any]]


class StateSnapshot(BaseModel):
    """
    State of a thread at one checkpoint.

    Attributes:
        values: Channel values
        next: Nodes that would run next (empty when the run finished)
        config: Config addressing this checkpoint
        parent_config: Config addressing the parent checkpoint, if any
        step: Superstep number
        metadata: Checkpoint metadata
        created_at: Checkpoint timestamp
    """
    values: Dict[str, Any]
    next: Tuple[str, ...]
    config: Dict[str, Any]
    parent_config: Optional[Dict[str, Any]] = None
    step: int
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    class Config:
        arbitrary_types_allowed = True


class CompiledGraph(BaseModel):
    """An executable graph.

    Attributes:
        plan: Frozen adjacency structure and node registry
        checkpointer: Default checkpointer for runs
        store: Default store for runs
        interrupt_before: Nodes to suspend before
        interrupt_after: Nodes to suspend after
        name: Name used in logs
    """
    plan: ExecutionPlan
    checkpointer: Optional[BaseCheckpointSaver] = None
    store: Optional[BaseStore] = None
    interrupt_before: List[str] = Field(default_factory=list)
    interrupt_after: List[str] = Field(default_factory=list)
    name: str = "graph"

    _logger: Any = PrivateAttr()

    class Config:
        arbitrary_types_allowed = True

    def __init__(self, **data):
        super().__init__(**data)
        self._logger = get_logger(LogComponent.PREGEL)

    @property
    def channels(self) -> Dict[str, Any]:
        return dict(self.plan.channels)

    @property
    def nodes(self) -> Dict[str, Any]:
        return dict(self.plan.nodes)

    ###################################################################
    # Invocation
    ###################################################################

    def _resolve(self, config: ConfigLike) -> Tuple[RunConfig, Optional[BaseCheckpointSaver], Optional[BaseStore]]:
        run_config = RunConfig.coerce(config)
        checkpointer = run_config.checkpointer or self.checkpointer
        store = run_config.store or self.store
        return run_config, checkpointer, store

    def _make_loop(self, config: ConfigLike) -> SuperstepLoop:
        run_config, checkpointer, store = self._resolve(config)
        return SuperstepLoop(
            self.plan,
            run_config,
            checkpointer=checkpointer,
            store=store,
            interrupt_before=run_config.interrupt_before or self.interrupt_before,
            interrupt_after=run_config.interrupt_after or self.interrupt_after,
            name=self.name,
        )

    async def astream(
        self,
        input: Any,
        config: ConfigLike = None,
        stream_mode: str = "values",
    ) -> AsyncIterator[Any]:
        """Run the graph, yielding one item per superstep.

        Args:
            input: Partial state to apply, or None to resume the thread
            config: RunConfig or dict
            stream_mode: "values" (full state), "updates" ({node: update}) or
                "debug" (StepEvent)

        Raises:
            ValueError: Unknown stream mode
        """
        if stream_mode not in STREAM_MODES:
            raise ValueError(f"Unknown stream mode {stream_mode!r}; expected one of {STREAM_MODES}")
        loop = self._make_loop(config)
        loop.bootstrap(input)
        async for event in loop.run():
            yield self._format(event, stream_mode)

    @staticmethod
    def _format(event: StepEvent, stream_mode: str) -> Any:
        if stream_mode == "values":
            return dict(event.values)
        if stream_mode == "updates":
            updates: Dict[str, Any] = {}
            for node, update in event.updates:
                if node in updates:
                    previous = updates[node]
                    updates[node] = (previous if isinstance(previous, list) else [previous]) + [update]
                else:
                    updates[node] = update
            return updates
        return event

    async def ainvoke(self, input: Any, config: ConfigLike = None) -> Dict[str, Any]:
        """Run the graph to completion (or suspension) and return the final state."""
        loop = self._make_loop(config)
        loop.bootstrap(input)
        async for _ in loop.run():
            pass
        self._logger.info(f"{self.name}: finished with status {loop.status.value}")
        return dict(loop.state)

    def invoke(self, input: Any, config: ConfigLike = None) -> Dict[str, Any]:
        """Synchronous ainvoke(); must not be called from a running event loop."""
        return asyncio.run(self.ainvoke(input, config))

    def stream(
        self,
        input: Any,
        config: ConfigLike = None,
        stream_mode: str = "values",
    ) -> Iterator[Any]:
        """Synchronous astream(); supersteps run lazily as the iterator is consumed."""
        event_loop = asyncio.new_event_loop()
        agen = self.astream(input, config, stream_mode)
        try:
            while True:
                try:
                    yield event_loop.run_until_complete(agen.__anext__())
                except StopAsyncIteration:
                    break
        finally:
            event_loop.run_until_complete(agen.aclose())
            event_loop.run_until_complete(event_loop.shutdown_asyncgens())
            event_loop.close()

    async def arun_subgraph(self, state: Mapping[str, Any], context: RunContext) -> Any:
        """Run as a node of a parent graph.

        Shares the parent's step counter, configurable values and store. Returns
        the channel writes committed inside the subgraph, so the parent reduces
        them with its own reducers; a Command.PARENT raised inside becomes a
        Command in the parent.
        """
        run_config = RunConfig(
            thread_id=context.thread_id,
            configurable=dict(context.configurable),
            recursion_limit=context.counter.limit if context.counter else RunConfig().recursion_limit,
        )
        loop = SuperstepLoop(
            self.plan,
            run_config,
            store=context.store or self.store,
            counter=context.counter,
            is_subgraph=True,
            name=f"{context.node}:{self.name}",
        )
        loop.bootstrap({key: value for key, value in state.items() if key in self.plan.channels})
        try:
            async for _ in loop.run():
                pass
        except ParentCommand as handoff:
            command = handoff.command
            return Command(
                update=list(loop.writes) + command.update_items(context.node),
                goto=command.goto,
            )
        return list(loop.writes)

    ###################################################################
    # Persistence helpers
    ###################################################################

    def _require_checkpointer(self, config: ConfigLike) -> Tuple[RunConfig, BaseCheckpointSaver]:
        run_config, checkpointer, _ = self._resolve(config)
        if checkpointer is None:
            raise CheckpointError("No checkpointer configured for this graph")
        if run_config.thread_id is None:
            raise CheckpointError("Config has no thread_id")
        return run_config, checkpointer

    def _snapshot(self, checkpoint: Checkpoint) -> StateSnapshot:
        config = RunConfig(thread_id=checkpoint.thread_id, checkpoint_id=checkpoint.checkpoint_id)
        parent = None
        if checkpoint.parent_checkpoint_id:
            parent = config.with_checkpoint(checkpoint.parent_checkpoint_id).to_dict()
        return StateSnapshot(
            values={**self.plan.initial_state(), **checkpoint.state},
            next=tuple(checkpoint.next_nodes) + tuple(send.node for send in checkpoint.pending_sends),
            config=config.to_dict(),
            parent_config=parent,
            step=checkpoint.step,
            metadata=dict(checkpoint.metadata),
            created_at=checkpoint.timestamp,
        )

    def get_state(self, config: ConfigLike) -> StateSnapshot:
        """Snapshot of the configured (or latest) checkpoint of a thread.

        Raises:
            ThreadNotFoundError: Thread or checkpoint does not exist
        """
        run_config, checkpointer = self._require_checkpointer(config)
        checkpoint = checkpointer.load(run_config.thread_id, run_config.checkpoint_id)
        if checkpoint is None:
            raise ThreadNotFoundError(run_config.thread_id, run_config.checkpoint_id)
        return self._snapshot(checkpoint)

    def get_state_history(self, config: ConfigLike) -> Iterator[StateSnapshot]:
        """Snapshots of a thread, newest first."""
        run_config, checkpointer = self._require_checkpointer(config)
        for metadata in checkpointer.list_history(run_config.thread_id):
            checkpoint = checkpointer.load(run_config.thread_id, metadata.checkpoint_id)
            if checkpoint is not None:
                yield self._snapshot(checkpoint)

    def update_state(
        self,
        config: ConfigLike,
        values: Any,
        as_node: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write to a thread's state outside of a run.

        The values are reduced like a node's return value. With ``as_node``
        the next active set is recomputed as if that node had just finished;
        otherwise the pending active set is kept. A new checkpoint is created
        on top of the configured one, so updating an old checkpoint forks the thread.

        Returns:
            Config addressing the new checkpoint
        """
        run_config, checkpointer = self._require_checkpointer(config)
        checkpoint = checkpointer.load(run_config.thread_id, run_config.checkpoint_id)
        if checkpoint is None and run_config.checkpoint_id:
            raise ThreadNotFoundError(run_config.thread_id, run_config.checkpoint_id)
        if as_node is not None and as_node not in self.plan.nodes:
            raise InvalidUpdateError(f"Unknown node '{as_node}' in update_state()")

        writer = as_node or "__update__"
        base_state = {**self.plan.initial_state(), **(checkpoint.state if checkpoint else {})}
        writes = [
            PendingWrite(task_id=writer, node=writer, channel=channel, value=value)
            for channel, value in as_writes(values, writer)
        ]
        state = apply_writes(self.plan.channels, base_state, [(w.node, w.channel, w.value) for w in writes])

        waiting = checkpoint.waiting if checkpoint else {}
        if as_node is not None:
            next_nodes, sends, waiting = route_update(self.plan, as_node, state, waiting)
        else:
            next_nodes = list(checkpoint.next_nodes) if checkpoint else []
            sends = list(checkpoint.pending_sends) if checkpoint else []

        updated = Checkpoint(
            thread_id=run_config.thread_id,
            parent_checkpoint_id=checkpoint.checkpoint_id if checkpoint else None,
            step=checkpoint.step + 1 if checkpoint else -1,
            state=state,
            pending_writes=writes,
            next_nodes=next_nodes,
            pending_sends=sends,
            waiting=dict(waiting),
            metadata={"source": "update", "writes": {writer: dict(as_writes(values, writer))}},
        )
        checkpointer.save(run_config.thread_id, updated)
        self._logger.info(
            f"Updated thread {run_config.thread_id} as {writer}; new checkpoint {updated.checkpoint_id}"
        )
        return run_config.with_checkpoint(updated.checkpoint_id).to_dict()
