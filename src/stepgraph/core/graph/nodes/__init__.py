"""Node package initialization.

Exposes node types and helpers for building workflows.
"""

from stepgraph.core.graph.nodes.base.node import (
    NodeSpec,
    RunContext,
    SubgraphProtocol,
)

__all__ = [
    "NodeSpec",
    "RunContext",
    "SubgraphProtocol",
]
