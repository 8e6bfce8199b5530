"""Shared fixtures for scheduler tests."""

from typing import Annotated, Any, Dict, List, TypedDict

import pytest

from stepgraph.core.checkpoint import InMemorySaver
from stepgraph.core.graph import StateGraph, add, concat
from stepgraph.core.store import InMemoryStore


class VisitState(TypedDict):
    visited: Annotated[List[str], concat]
    count: Annotated[int, add]
    status: str
    results: Annotated[List[Any], concat]
    items: List[Any]


def visit(name: str, **extra: Any):
    """Create a handler that records its node name and writes ``extra``."""
    def handler(state):
        update: Dict[str, Any] = {"visited": [name]}
        update.update(extra)
        return update
    handler.__name__ = name
    return handler


@pytest.fixture
def builder() -> StateGraph:
    """Fixture providing an empty builder over VisitState."""
    return StateGraph(VisitState)


@pytest.fixture
def saver() -> InMemorySaver:
    """Fixture providing an in-memory checkpointer."""
    return InMemorySaver()


@pytest.fixture
def store() -> InMemoryStore:
    """Fixture providing an in-memory store."""
    return InMemoryStore()


@pytest.fixture
def thread() -> Dict[str, Any]:
    """Fixture providing a run config for a single thread."""
    return {"configurable": {"thread_id": "thread-1"}}
