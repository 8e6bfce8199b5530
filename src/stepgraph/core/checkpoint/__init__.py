"""
Checkpointing: snapshot models, the saver interface and the in-memory saver.
"""
from stepgraph.core.checkpoint.base import (
    BaseCheckpointSaver,
    Checkpoint,
    CheckpointMetadata,
    PendingWrite,
)
from stepgraph.core.checkpoint.memory import InMemorySaver

__all__ = [
    # Models
    "Checkpoint",
    "CheckpointMetadata",
    "PendingWrite",
    # Interfaces
    "BaseCheckpointSaver",
    # Implementations
    "InMemorySaver",
]
