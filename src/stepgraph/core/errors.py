"""Exception hierarchy for stepgraph.

Every error raised by the engine derives from StepGraphError so callers can
catch the whole family at once:

1. GraphDefinitionError: invalid builder input or a graph that fails compile()
2. StateReductionError / InvalidUpdateError: a superstep's writes could not be merged
3. RoutingError: a router or Command sent control to an unknown node
4. RecursionLimitError / RunTimeoutError / NodeTimeoutError: run bounds exceeded
5. ThreadNotFoundError / CheckpointError: persistence failures
6. InvalidNamespaceError: malformed store namespace

Exceptions raised by user node handlers are not wrapped; they reach the caller
unchanged as the failure cause of the round.
"""

from typing import Any, Optional, Sequence


class StepGraphError(Exception):
    """Base class for all stepgraph errors."""


class GraphDefinitionError(StepGraphError, ValueError):
    """Raised when a graph definition is invalid.

    Attributes:
        problems: Individual validation messages collected during compile()
    """

    def __init__(self, message: str, problems: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.problems = list(problems or [message])


class StateReductionError(StepGraphError):
    """A channel reducer raised while merging a superstep's writes."""

    def __init__(self, channel: str, node: str, cause: BaseException):
        super().__init__(
            f"Reducer for channel '{channel}' failed on write from node '{node}': {cause}"
        )
        self.channel = channel
        self.node = node
        self.cause = cause


class InvalidUpdateError(StepGraphError):
    """A node returned an update the engine cannot apply."""


class RoutingError(StepGraphError):
    """A router or Command.goto resolved to an undeclared destination."""

    def __init__(self, source: str, destination: Any, reason: str = "unknown destination"):
        super().__init__(f"Routing from '{source}' failed: {reason} {destination!r}")
        self.source = source
        self.destination = destination


class RecursionLimitError(StepGraphError):
    """The run exceeded its superstep budget.

    The last committed checkpoint is left intact; re-invoke with a higher
    recursion_limit and ``input=None`` to resume from it.
    """

    def __init__(self, limit: int):
        super().__init__(
            f"Recursion limit of {limit} supersteps reached without hitting a stop condition"
        )
        self.limit = limit


class ThreadNotFoundError(StepGraphError, LookupError):
    """Resume was requested for a thread or checkpoint that does not exist."""

    def __init__(self, thread_id: Optional[str], checkpoint_id: Optional[str] = None):
        if checkpoint_id:
            message = f"Checkpoint '{checkpoint_id}' not found in thread '{thread_id}'"
        else:
            message = f"Thread '{thread_id}' has no checkpoints to resume from"
        super().__init__(message)
        self.thread_id = thread_id
        self.checkpoint_id = checkpoint_id


class EmptyInputError(StepGraphError, ValueError):
    """A run was started with no input and nothing to resume."""


class CheckpointError(StepGraphError):
    """A checkpoint could not be persisted or is inconsistent."""


class NodeTimeoutError(StepGraphError):
    """A node exceeded its per-node timeout."""

    def __init__(self, node: str, timeout: float):
        super().__init__(f"Node '{node}' timed out after {timeout}s")
        self.node = node
        self.timeout = timeout


class RunTimeoutError(StepGraphError):
    """The run exceeded its overall timeout."""

    def __init__(self, timeout: float):
        super().__init__(f"Run timed out after {timeout}s")
        self.timeout = timeout


class InvalidNamespaceError(StepGraphError, ValueError):
    """A store namespace or key is malformed."""


class ParentCommand(StepGraphError):
    """Carries a Command out of a subgraph to the graph that called it."""

    def __init__(self, command: Any):
        super().__init__(f"Command for parent graph: {command!r}")
        self.command = command
