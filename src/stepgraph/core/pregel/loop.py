"""Superstep scheduler.

Runs a compiled plan as a sequence of bulk-synchronous rounds:

1. Resolve the active set (previous routing decisions plus Send packets)
2. Run every active task concurrently against the last committed state
3. Normalize each result into channel writes and an optional goto
4. Reduce all writes into a new state (all-or-nothing)
5. Route from every finished task and compute the next active set
6. Save a checkpoint, then commit

Nothing a task returns becomes visible until the whole round has succeeded and
its checkpoint is durable. Any failure leaves the previous commit in place.
"""

import asyncio
import uuid
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)
from pydantic import BaseModel, Field

from stepgraph.core.checkpoint.base import BaseCheckpointSaver, Checkpoint, PendingWrite
from stepgraph.core.config import RunConfig
from stepgraph.core.errors import (
    CheckpointError,
    EmptyInputError,
    InvalidUpdateError,
    NodeTimeoutError,
    ParentCommand,
    RecursionLimitError,
    RunTimeoutError,
    ThreadNotFoundError,
)
from stepgraph.core.graph.command import START, Command, Destination, Send
from stepgraph.core.graph.nodes.base.node import RunContext
from stepgraph.core.graph.state import apply_writes, as_writes, read_only
from stepgraph.core.logging import get_logger, LogComponent, log_state, log_verbose
from stepgraph.core.pregel.plan import Completion, ExecutionPlan
from stepgraph.core.store.base import BaseStore

logger = get_logger(LogComponent.PREGEL)


class RunStatus(str, Enum):
    """Lifecycle of a run."""
    IDLE = "idle"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"


class StepCounter:
    """Superstep budget shared by a run and every subgraph it starts."""

    def __init__(self, limit: int):
        self.limit = limit
        self.value = 0

    def tick(self) -> int:
        if self.value >= self.limit:
            raise RecursionLimitError(self.limit)
        self.value += 1
        return self.value


class Task(BaseModel):
    """One node invocation within a superstep."""
    id: str
    node: str
    input: Any = None
    is_send: bool = False

    class Config:
        arbitrary_types_allowed = True
        frozen = True


class StepEvent(BaseModel):
    """
    Outcome of one committed superstep.

    Attributes:
        step: Superstep number
        tasks: Node names that ran, in reduction order
        updates: ``(node, update)`` per task
        values: Committed state
        next_nodes: Active set of the following superstep
        checkpoint_id: Checkpoint saved for this step
    """
    step: int
    tasks: List[str]
    updates: List[Tuple[str, Dict[str, Any]]] = Field(default_factory=list)
    values: Dict[str, Any] = Field(default_factory=dict)
    next_nodes: List[str] = Field(default_factory=list)
    checkpoint_id: Optional[str] = None

    class Config:
        arbitrary_types_allowed = True


def _matches(names: Sequence[str], node: str) -> bool:
    return "*" in names or node in names


class SuperstepLoop:
    """
    Drives one invocation of a compiled plan.

    Attributes:
        status: Current RunStatus
        state: Last committed state
        checkpoint: Last committed checkpoint
        writes: Every ``(channel, value)`` committed by this loop's supersteps
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        config: RunConfig,
        *,
        checkpointer: Optional[BaseCheckpointSaver] = None,
        store: Optional[BaseStore] = None,
        interrupt_before: Sequence[str] = (),
        interrupt_after: Sequence[str] = (),
        counter: Optional[StepCounter] = None,
        is_subgraph: bool = False,
        name: str = "graph",
    ):
        self.plan = plan
        self.config = config
        self.checkpointer = checkpointer
        self.store = store
        self.interrupt_before = list(interrupt_before)
        self.interrupt_after = list(interrupt_after)
        self.counter = counter or StepCounter(config.recursion_limit)
        self.is_subgraph = is_subgraph
        self.name = name

        self.status = RunStatus.IDLE
        self.state: Dict[str, Any] = plan.initial_state()
        self.checkpoint: Optional[Checkpoint] = None
        self.step = -2
        self.next_nodes: List[str] = []
        self.pending_sends: List[Send] = []
        self.waiting: Dict[str, List[str]] = {}
        self.writes: List[Tuple[str, Any]] = []

        self._resuming = False
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._deadline: Optional[float] = None

    ###################################################################
    # Bootstrap
    ###################################################################

    def bootstrap(self, input: Any) -> None:
        """Load the thread and apply the input.

        ``input=None`` resumes from the configured (or latest) checkpoint.
        Any other input starts a new pass from START on top of the loaded
        state; with an older ``checkpoint_id`` this forks the thread.

        Raises:
            ThreadNotFoundError: Resume requested but nothing to resume from
            EmptyInputError: No input and no checkpointer
            CheckpointError: Checkpointer configured without a thread_id
        """
        thread_id = self.config.thread_id
        if self.checkpointer is not None and thread_id is None:
            raise CheckpointError("A checkpointer is configured but the run config has no thread_id")

        checkpoint = None
        if self.checkpointer is not None:
            checkpoint = self.checkpointer.load(thread_id, self.config.checkpoint_id)
            if checkpoint is None and (input is None or self.config.checkpoint_id):
                raise ThreadNotFoundError(thread_id, self.config.checkpoint_id)

        if input is None:
            if checkpoint is None:
                raise EmptyInputError("Input is required when there is no checkpoint to resume from")
            self._restore(checkpoint)
            self._resuming = True
            logger.info(
                f"Resuming thread {thread_id} from checkpoint {checkpoint.checkpoint_id} "
                f"(step {checkpoint.step}), next: {self._pending_names()}"
            )
            return

        if checkpoint is not None:
            self._restore(checkpoint)
        writes = [
            PendingWrite(task_id=START, node=START, channel=channel, value=value)
            for channel, value in as_writes(input, START)
        ]
        state = apply_writes(self.plan.channels, self.state, [(w.node, w.channel, w.value) for w in writes])
        destinations = self.plan.routes(START, state)
        next_nodes, sends, waiting = self.plan.advance([(START, destinations, True)], {})
        self._commit(
            state, next_nodes, sends, waiting, writes, source="input", updates=[(START, dict(as_writes(input, START)))]
        )

    def _restore(self, checkpoint: Checkpoint) -> None:
        self.checkpoint = checkpoint
        self.state = {**self.plan.initial_state(), **checkpoint.state}
        self.step = checkpoint.step
        self.next_nodes = list(checkpoint.next_nodes)
        self.pending_sends = list(checkpoint.pending_sends)
        self.waiting = {key: list(value) for key, value in checkpoint.waiting.items()}

    def _pending_names(self) -> List[str]:
        return self.next_nodes + [send.node for send in self.pending_sends]

    ###################################################################
    # Main loop
    ###################################################################

    async def run(self) -> AsyncIterator[StepEvent]:
        """Run supersteps until completion, suspension or failure.

        Yields one StepEvent per committed superstep.
        """
        self.status = RunStatus.RUNNING
        if self.config.max_concurrency:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        if self.config.timeout:
            self._deadline = asyncio.get_running_loop().time() + self.config.timeout

        try:
            while True:
                tasks = self._prepare_tasks()
                if not tasks:
                    self.status = RunStatus.COMPLETED
                    logger.info(f"{self.name}: completed at step {self.step}")
                    return

                if not self._resuming and any(_matches(self.interrupt_before, t.node) for t in tasks):
                    self.status = RunStatus.SUSPENDED
                    logger.info(f"{self.name}: suspended before {[t.node for t in tasks]}")
                    return
                self._resuming = False

                self.counter.tick()
                logger.step(f"{self.name}: step {self.step + 1} running {[t.node for t in tasks]}")
                results = await self._execute(tasks)
                event = self._finish_step(tasks, results)
                yield event

                pending = self.next_nodes or self.pending_sends
                if pending and any(_matches(self.interrupt_after, t.node) for t in tasks):
                    self.status = RunStatus.SUSPENDED
                    logger.info(f"{self.name}: suspended after {event.tasks}")
                    return
        except ParentCommand:
            self.status = RunStatus.COMPLETED
            raise
        except (Exception, asyncio.CancelledError) as e:
            self.status = RunStatus.FAILED
            logger.error(f"{self.name}: run failed at step {self.step + 1}: {type(e).__name__}: {e}")
            raise

    def _prepare_tasks(self) -> List[Task]:
        tasks: List[Task] = []
        for name in self.next_nodes:
            tasks.append(Task(id=str(uuid.uuid4()), node=name, input=read_only(self.state)))
        for send in self.pending_sends:
            tasks.append(Task(id=str(uuid.uuid4()), node=send.node, input=send.arg, is_send=True))
        return tasks

    ###################################################################
    # Execution
    ###################################################################

    async def _execute(self, tasks: List[Task]) -> List[Any]:
        if self._deadline is None:
            return await self._run_tasks(tasks)
        remaining = max(self._deadline - asyncio.get_running_loop().time(), 0)
        runner = asyncio.ensure_future(self._run_tasks(tasks))
        try:
            done, _ = await asyncio.wait({runner}, timeout=remaining)
        except asyncio.CancelledError:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
            raise
        if runner not in done:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
            raise RunTimeoutError(self.config.timeout)
        return runner.result()

    async def _run_tasks(self, tasks: List[Task]) -> List[Any]:
        """Run tasks concurrently; the first failure cancels the rest."""
        futures = [asyncio.ensure_future(self._run_task(task)) for task in tasks]
        try:
            await asyncio.wait(futures, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for future in futures:
                future.cancel()
            await asyncio.gather(*futures, return_exceptions=True)
            raise

        pending = [future for future in futures if not future.done()]
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for task, future in zip(tasks, futures):
            if future.cancelled():
                continue
            error = future.exception()
            if error is not None:
                if not isinstance(error, ParentCommand):
                    logger.error(f"Error in node {task.node}: {type(error).__name__}: {error}")
                raise error
        return [future.result() for future in futures]

    async def _run_task(self, task: Task) -> Any:
        node = self.plan.nodes[task.node]
        context = RunContext(
            node=task.node,
            task_id=task.id,
            step=self.step + 1,
            thread_id=self.config.thread_id,
            configurable=dict(self.config.configurable),
            store=self.store,
            input=task.input,
        )
        context._counter = self.counter

        if self._semaphore is not None:
            async with self._semaphore:
                return await self._invoke(node, task, context)
        return await self._invoke(node, task, context)

    async def _invoke(self, node: Any, task: Task, context: RunContext) -> Any:
        log_verbose(logger, f"Running node {task.node} (task {task.id})")
        if node.timeout is None:
            return await node.invoke(task.input, context)
        call = asyncio.ensure_future(node.invoke(task.input, context))
        try:
            done, _ = await asyncio.wait({call}, timeout=node.timeout)
        except asyncio.CancelledError:
            call.cancel()
            await asyncio.gather(call, return_exceptions=True)
            raise
        if call not in done:
            call.cancel()
            await asyncio.gather(call, return_exceptions=True)
            raise NodeTimeoutError(node.name, node.timeout)
        return call.result()

    ###################################################################
    # Collection, reduction, routing and commit
    ###################################################################

    def _normalize(self, task: Task, result: Any) -> Tuple[List[Tuple[str, Any]], List[Destination]]:
        """Split a task result into channel writes and goto targets."""
        if isinstance(result, Command):
            commands = [result]
        elif isinstance(result, (list, tuple)) and result and all(isinstance(r, Command) for r in result):
            commands = list(result)
        else:
            writes = as_writes(result, task.node)
            return self._filter_subgraph_writes(task, writes), []

        writes: List[Tuple[str, Any]] = []
        goto: List[Destination] = []
        for command in commands:
            if command.graph == Command.PARENT:
                if not self.is_subgraph:
                    raise InvalidUpdateError(
                        f"Node '{task.node}' returned Command.PARENT outside of a subgraph"
                    )
                raise ParentCommand(command.model_copy(update={"graph": None}))
            writes.extend(command.update_items(task.node))
            goto.extend(command.goto_targets())
        return self._filter_subgraph_writes(task, writes), goto

    def _filter_subgraph_writes(self, task: Task, writes: List[Tuple[str, Any]]) -> List[Tuple[str, Any]]:
        """Drop writes from a subgraph node to channels this graph does not declare."""
        if not self.plan.nodes[task.node].is_subgraph:
            return writes
        return [(channel, value) for channel, value in writes if channel in self.plan.channels]

    def _finish_step(self, tasks: List[Task], results: List[Any]) -> StepEvent:
        pending_writes: List[PendingWrite] = []
        gotos: List[List[Destination]] = []
        updates: List[Tuple[str, Dict[str, Any]]] = []
        for task, result in zip(tasks, results):
            writes, goto = self._normalize(task, result)
            gotos.append(goto)
            updates.append((task.node, dict(writes)))
            pending_writes.extend(
                PendingWrite(task_id=task.id, node=task.node, channel=channel, value=value)
                for channel, value in writes
            )

        state = apply_writes(
            self.plan.channels, self.state, [(w.node, w.channel, w.value) for w in pending_writes]
        )

        completions: List[Completion] = []
        for task, goto in zip(tasks, gotos):
            destinations = self.plan.routes(task.node, state, goto)
            completions.append((task.node, destinations, not goto))
            log_verbose(logger, f"Transition {task.node} --> {destinations}")

        next_nodes, sends, waiting = self.plan.advance(completions, self.waiting)
        checkpoint = self._commit(state, next_nodes, sends, waiting, pending_writes, source="loop", updates=updates)
        self.writes.extend((w.channel, w.value) for w in pending_writes)
        log_state(logger, self.state)

        return StepEvent(
            step=self.step,
            tasks=[task.node for task in tasks],
            updates=updates,
            values=dict(self.state),
            next_nodes=self._pending_names(),
            checkpoint_id=checkpoint.checkpoint_id,
        )

    def _commit(
        self,
        state: Dict[str, Any],
        next_nodes: List[str],
        sends: List[Send],
        waiting: Dict[str, List[str]],
        writes: List[PendingWrite],
        source: str,
        updates: List[Tuple[str, Dict[str, Any]]],
    ) -> Checkpoint:
        """Save a checkpoint for the new state, then make it current.

        Raises:
            CheckpointError: The checkpointer failed; nothing is committed
        """
        checkpoint = Checkpoint(
            thread_id=self.config.thread_id,
            parent_checkpoint_id=self.checkpoint.checkpoint_id if self.checkpoint else None,
            step=self.step + 1,
            state=state,
            pending_writes=writes,
            next_nodes=next_nodes,
            pending_sends=sends,
            waiting=waiting,
            metadata={"source": source, "writes": {node: update for node, update in updates}},
        )
        if self.checkpointer is not None:
            try:
                self.checkpointer.save(self.config.thread_id, checkpoint)
            except CheckpointError:
                raise
            except Exception as e:
                raise CheckpointError(f"Failed to save checkpoint for step {checkpoint.step}: {e}") from e

        self.checkpoint = checkpoint
        self.state = state
        self.step = checkpoint.step
        self.next_nodes = next_nodes
        self.pending_sends = sends
        self.waiting = waiting
        return checkpoint


def route_update(
    plan: ExecutionPlan,
    node: str,
    state: Mapping[str, Any],
    waiting: Mapping[str, Sequence[str]],
) -> Tuple[List[str], List[Send], Dict[str, List[str]]]:
    """Next active set after an external update attributed to ``node``."""
    destinations = plan.routes(node, state)
    return plan.advance([(node, destinations, True)], waiting)
