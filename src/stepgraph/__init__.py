"""Stepgraph - stateful graph execution with supersteps, checkpoints and a shared store."""

from stepgraph.core.graph import (
    StateGraph,
    Channel,
    define_channel,
    concat,
    merge_dicts,
    add,
    last_value,
    START,
    END,
    Command,
    Send,
    RunContext,
)
from stepgraph.core.pregel import CompiledGraph, StateSnapshot
from stepgraph.core.checkpoint import BaseCheckpointSaver, Checkpoint, InMemorySaver
from stepgraph.core.store import BaseStore, InMemoryStore, Item
from stepgraph.core.config import RunConfig
from stepgraph.core.logging import configure_logging, LogLevel, LogComponent
from stepgraph.core.errors import (
    StepGraphError,
    GraphDefinitionError,
    StateReductionError,
    InvalidUpdateError,
    RoutingError,
    RecursionLimitError,
    ThreadNotFoundError,
    EmptyInputError,
    CheckpointError,
    NodeTimeoutError,
    RunTimeoutError,
    InvalidNamespaceError,
)

__all__ = [
    'StateGraph',
    'CompiledGraph',
    'StateSnapshot',
    'Channel',
    'define_channel',
    'concat',
    'merge_dicts',
    'add',
    'last_value',
    'START',
    'END',
    'Command',
    'Send',
    'RunContext',
    'RunConfig',
    'BaseCheckpointSaver',
    'Checkpoint',
    'InMemorySaver',
    'BaseStore',
    'InMemoryStore',
    'Item',
    'configure_logging',
    'LogLevel',
    'LogComponent',
    'StepGraphError',
    'GraphDefinitionError',
    'StateReductionError',
    'InvalidUpdateError',
    'RoutingError',
    'RecursionLimitError',
    'ThreadNotFoundError',
    'EmptyInputError',
    'CheckpointError',
    'NodeTimeoutError',
    'RunTimeoutError',
    'InvalidNamespaceError',
]
