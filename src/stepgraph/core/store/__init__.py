"""
Cross-thread store: interfaces and the in-memory implementation.
"""
from stepgraph.core.store.base import BaseStore, Item, NamespacePath, validate_namespace
from stepgraph.core.store.memory import InMemoryStore

__all__ = [
    # Interfaces
    "BaseStore",
    "Item",
    "NamespacePath",
    "validate_namespace",
    # Implementations
    "InMemoryStore",
]
