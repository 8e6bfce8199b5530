"""
In-memory checkpointer.

Intended for tests and single-process use; history is lost with the process.
"""
from __future__ import annotations

import threading
from typing import Dict, List, Optional

from stepgraph.core.checkpoint.base import BaseCheckpointSaver, Checkpoint, CheckpointMetadata
from stepgraph.core.errors import CheckpointError
from stepgraph.core.logging import get_logger, LogComponent

logger = get_logger(LogComponent.CHECKPOINT)


class InMemorySaver(BaseCheckpointSaver):
    """
    Dictionary-backed checkpoint storage.

    Stores checkpoints per thread in save order. Saved checkpoints are
    deep-copied so later mutation of a caller's state objects cannot alter
    history.
    """

    def __init__(self):
        self._threads: Dict[str, Dict[str, Checkpoint]] = {}
        self._lock = threading.Lock()

    def save(self, thread_id: str, checkpoint: Checkpoint) -> None:
        """Persist a checkpoint."""
        if checkpoint.thread_id != thread_id:
            raise CheckpointError(
                f"Checkpoint belongs to thread '{checkpoint.thread_id}', not '{thread_id}'"
            )
        try:
            snapshot = checkpoint.model_copy(deep=True)
        except Exception as e:
            raise CheckpointError(f"State of checkpoint {checkpoint.checkpoint_id} cannot be copied: {e}") from e

        with self._lock:
            history = self._threads.setdefault(thread_id, {})
            if checkpoint.checkpoint_id in history:
                raise CheckpointError(
                    f"Checkpoint '{checkpoint.checkpoint_id}' already exists in thread '{thread_id}'"
                )
            history[checkpoint.checkpoint_id] = snapshot
        logger.debug(
            f"Saved checkpoint {checkpoint.checkpoint_id} (step {checkpoint.step}) for thread {thread_id}"
        )

    def load(self, thread_id: str, checkpoint_id: Optional[str] = None) -> Optional[Checkpoint]:
        """Load a checkpoint by id, or the latest saved one."""
        with self._lock:
            history = self._threads.get(thread_id)
            if not history:
                return None
            if checkpoint_id is None:
                checkpoint = next(reversed(history.values()))
            else:
                checkpoint = history.get(checkpoint_id)
        return checkpoint.model_copy(deep=True) if checkpoint is not None else None

    def list_history(self, thread_id: str) -> List[CheckpointMetadata]:
        """List checkpoint metadata, newest first."""
        with self._lock:
            history = list(self._threads.get(thread_id, {}).values())
        return [checkpoint.to_metadata() for checkpoint in reversed(history)]

    def list_threads(self) -> List[str]:
        with self._lock:
            return list(self._threads)

    def delete_thread(self, thread_id: str) -> bool:
        with self._lock:
            removed = self._threads.pop(thread_id, None)
        return removed is not None
