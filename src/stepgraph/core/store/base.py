"""
Cross-thread store interfaces.

The store is a namespaced key-value service that outlives threads and
checkpoints. Namespaces are tuples of strings and behave like directories:
``("memories", user_id)`` groups every memory of one user and can be listed
without touching other users.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from pydantic import BaseModel

from stepgraph.core.errors import InvalidNamespaceError

NamespacePath = Tuple[str, ...]


class Item(BaseModel):
    """
    A stored value.

    Attributes:
        namespace: Hierarchical namespace path
        key: Unique key within the namespace
        value: Structured payload (any deep-copyable value)
        created_at: Time of the first put
        updated_at: Time of the most recent put
    """
    namespace: NamespacePath
    key: str
    value: Any
    created_at: datetime
    updated_at: datetime

    class Config:
        frozen = True


def validate_namespace(namespace: Sequence[str]) -> NamespacePath:
    """Validate and normalize a namespace to a tuple.

    Raises:
        InvalidNamespaceError: Empty namespace, non-string or empty labels, or labels containing '.'
    """
    if isinstance(namespace, str):
        raise InvalidNamespaceError(f"Namespace must be a tuple of strings, got string {namespace!r}")
    path = tuple(namespace)
    if not path:
        raise InvalidNamespaceError("Namespace must not be empty")
    for label in path:
        if not isinstance(label, str) or not label:
            raise InvalidNamespaceError(f"Invalid namespace label {label!r} in {path}")
        if "." in label:
            raise InvalidNamespaceError(f"Namespace label {label!r} must not contain '.'")
    return path


def validate_key(key: str) -> str:
    if not isinstance(key, str) or not key:
        raise InvalidNamespaceError(f"Store key must be a non-empty string, got {key!r}")
    return key


def matches_filter(value: Any, filter: Optional[Dict[str, Any]]) -> bool:
    """Equality match on top-level value keys; only mapping values can match a filter."""
    if not filter:
        return True
    if not isinstance(value, Mapping):
        return False
    return all(key in value and value[key] == expected for key, expected in filter.items())


class BaseStore(ABC):
    """Interface for cross-thread key-value storage."""

    @abstractmethod
    def put(self, namespace: Sequence[str], key: str, value: Any) -> None:
        """Create or overwrite an item."""
        pass

    @abstractmethod
    def get(self, namespace: Sequence[str], key: str) -> Optional[Item]:
        """Get an item, or None."""
        pass

    @abstractmethod
    def search(
        self,
        namespace_prefix: Sequence[str],
        filter: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Item]:
        """List items whose namespace starts with ``namespace_prefix``.

        Every match is returned unless ``limit`` is given.
        """
        pass

    @abstractmethod
    def delete(self, namespace: Sequence[str], key: str) -> bool:
        """Delete an item; returns whether it existed."""
        pass

    @abstractmethod
    def list_namespaces(
        self,
        prefix: Optional[Sequence[str]] = None,
        max_depth: Optional[int] = None,
    ) -> List[NamespacePath]:
        """List distinct namespaces, optionally under a prefix and truncated to a depth."""
        pass
