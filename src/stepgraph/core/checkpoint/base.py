"""
Checkpoint models and the checkpointer interface.

A checkpoint is an immutable snapshot taken after every superstep (and for
every input). Checkpoints of one thread form a parent-linked chain; resuming
from an ancestor starts a new branch without touching existing history.
"""
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from stepgraph.core.graph.command import Send


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_checkpoint_id() -> str:
    return str(uuid.uuid4())


class PendingWrite(BaseModel):
    """A single channel write produced by a task."""
    task_id: str
    node: str
    channel: str
    value: Any = None

    class Config:
        arbitrary_types_allowed = True
        frozen = True


class CheckpointMetadata(BaseModel):
    """Lightweight description of a checkpoint, used for history listings."""
    thread_id: Optional[str]
    checkpoint_id: str
    parent_checkpoint_id: Optional[str] = None
    step: int
    source: str
    next_nodes: List[str] = Field(default_factory=list)
    timestamp: datetime

    class Config:
        frozen = True


class Checkpoint(BaseModel):
    """
    Snapshot of a run after a superstep.

    Attributes:
        thread_id: Owning thread
        checkpoint_id: Unique id
        parent_checkpoint_id: Checkpoint this one was derived from
        step: Superstep number (-1 for the first input of a thread)
        state: Committed channel values
        pending_writes: Writes that produced this checkpoint, in reduction order
        next_nodes: Nodes scheduled for the next superstep
        pending_sends: Send packets scheduled for the next superstep
        waiting: Barrier bookkeeping; deferred node or join key -> sources delivered so far
        metadata: ``source`` ("input", "loop" or "update") and per-node ``writes``
        timestamp: Creation time
    """
    thread_id: Optional[str] = None
    checkpoint_id: str = Field(default_factory=new_checkpoint_id)
    parent_checkpoint_id: Optional[str] = None
    step: int = -1
    state: Dict[str, Any] = Field(default_factory=dict)
    pending_writes: List[PendingWrite] = Field(default_factory=list)
    next_nodes: List[str] = Field(default_factory=list)
    pending_sends: List[Send] = Field(default_factory=list)
    waiting: Dict[str, List[str]] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    @property
    def source(self) -> str:
        return self.metadata.get("source", "loop")

    def to_metadata(self) -> CheckpointMetadata:
        return CheckpointMetadata(
            thread_id=self.thread_id,
            checkpoint_id=self.checkpoint_id,
            parent_checkpoint_id=self.parent_checkpoint_id,
            step=self.step,
            source=self.source,
            next_nodes=list(self.next_nodes) + [send.node for send in self.pending_sends],
            timestamp=self.timestamp,
        )


class BaseCheckpointSaver(ABC):
    """Interface for checkpoint storage."""

    @abstractmethod
    def save(self, thread_id: str, checkpoint: Checkpoint) -> None:
        """Persist a checkpoint. Existing checkpoints are never overwritten."""
        pass

    @abstractmethod
    def load(self, thread_id: str, checkpoint_id: Optional[str] = None) -> Optional[Checkpoint]:
        """Load a checkpoint by id, or the latest one when ``checkpoint_id`` is None."""
        pass

    @abstractmethod
    def list_history(self, thread_id: str) -> List[CheckpointMetadata]:
        """List checkpoint metadata for a thread, newest first."""
        pass

    @abstractmethod
    def list_threads(self) -> List[str]:
        """List thread ids with at least one checkpoint."""
        pass

    @abstractmethod
    def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread's history; returns whether it existed."""
        pass
