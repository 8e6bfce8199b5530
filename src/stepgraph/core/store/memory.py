"""
In-memory store implementation.

Items are kept in insertion order; overwriting an existing key keeps its
position, and search results follow that order.
"""
from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from stepgraph.core.logging import get_logger, LogComponent
from stepgraph.core.store.base import (
    BaseStore,
    Item,
    NamespacePath,
    matches_filter,
    validate_key,
    validate_namespace,
)

logger = get_logger(LogComponent.STORE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore(BaseStore):
    """
    Process-local store.

    Thread-safe; concurrent puts to the same key resolve last-write-wins in
    lock acquisition order. Values are deep-copied on the way in and out so
    callers never share mutable payloads with the store.
    """

    def __init__(self):
        self._items: Dict[Tuple[NamespacePath, str], Item] = {}
        self._lock = threading.Lock()

    def put(self, namespace: Sequence[str], key: str, value: Any) -> None:
        """Create or overwrite an item."""
        path = validate_namespace(namespace)
        validate_key(key)
        now = _utcnow()
        with self._lock:
            existing = self._items.get((path, key))
            self._items[(path, key)] = Item(
                namespace=path,
                key=key,
                value=copy.deepcopy(value),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
        logger.debug(f"Put {path}/{key}")

    def get(self, namespace: Sequence[str], key: str) -> Optional[Item]:
        """Get an item, or None."""
        path = validate_namespace(namespace)
        with self._lock:
            item = self._items.get((path, key))
        return item.model_copy(deep=True) if item is not None else None

    def search(
        self,
        namespace_prefix: Sequence[str],
        filter: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Item]:
        """List items under a namespace prefix, in insertion order."""
        prefix = tuple(namespace_prefix)
        with self._lock:
            candidates = [
                item for (path, _), item in self._items.items()
                if path[:len(prefix)] == prefix and matches_filter(item.value, filter)
            ]
        end = None if limit is None else offset + limit
        return [item.model_copy(deep=True) for item in candidates[offset:end]]

    def delete(self, namespace: Sequence[str], key: str) -> bool:
        """Delete an item; returns whether it existed."""
        path = validate_namespace(namespace)
        with self._lock:
            removed = self._items.pop((path, key), None)
        if removed is not None:
            logger.debug(f"Deleted {path}/{key}")
        return removed is not None

    def list_namespaces(
        self,
        prefix: Optional[Sequence[str]] = None,
        max_depth: Optional[int] = None,
    ) -> List[NamespacePath]:
        """List distinct namespaces in first-seen order."""
        wanted = tuple(prefix or ())
        seen: Dict[NamespacePath, None] = {}
        with self._lock:
            paths = [path for path, _ in self._items]
        for path in paths:
            if path[:len(wanted)] != wanted:
                continue
            if max_depth is not None:
                path = path[:max_depth]
            seen.setdefault(path, None)
        return list(seen)
