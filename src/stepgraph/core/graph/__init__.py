"""Graph definition for stepgraph workflows.

This package provides:
- State channels and reducers
- The StateGraph builder and its validation
- Command and Send for node-driven routing
- Node specifications and run context
"""

from stepgraph.core.graph.state import (
    Channel,
    define_channel,
    concat,
    merge_dicts,
    add,
    last_value,
)
from stepgraph.core.graph.command import START, END, Command, Send
from stepgraph.core.graph.nodes import NodeSpec, RunContext, SubgraphProtocol
from stepgraph.core.graph.base import Branch, Join, StateGraph

__all__ = [
    # Builder
    'StateGraph',
    'Branch',
    'Join',

    # State
    'Channel',
    'define_channel',
    'concat',
    'merge_dicts',
    'add',
    'last_value',

    # Control flow
    'START',
    'END',
    'Command',
    'Send',

    # Nodes
    'NodeSpec',
    'RunContext',
    'SubgraphProtocol',
]
