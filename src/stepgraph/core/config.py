"""Run configuration.

RunConfig carries everything a single invocation needs: the thread to persist
into, an optional checkpoint to resume or fork from, the opaque
``configurable`` bag handed to every node, execution bounds, and the
checkpointer and store in effect for the run.

Plain dictionaries are accepted anywhere a RunConfig is:

    ```python
    graph.invoke(inputs, {"configurable": {"thread_id": "t-1", "user_id": "u-7"}})
    ```
"""

import os
from typing import Any, Dict, List, Mapping, Optional, Union
from pydantic import BaseModel, Field, field_validator

from stepgraph.core.checkpoint.base import BaseCheckpointSaver
from stepgraph.core.store.base import BaseStore

RECURSION_LIMIT_ENV = "STEPGRAPH_RECURSION_LIMIT"
DEFAULT_RECURSION_LIMIT = 25

_TOP_LEVEL_KEYS = ("thread_id", "checkpoint_id")


def default_recursion_limit() -> int:
    """Recursion limit from the environment, falling back to 25."""
    raw = os.environ.get(RECURSION_LIMIT_ENV)
    if raw is None:
        return DEFAULT_RECURSION_LIMIT
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{RECURSION_LIMIT_ENV} must be an integer, got {raw!r}") from None


class RunConfig(BaseModel):
    """
    Configuration for one graph invocation.

    Attributes:
        thread_id: Thread to persist checkpoints into
        checkpoint_id: Checkpoint to resume or fork from (latest when None)
        configurable: Opaque values passed to every node
        recursion_limit: Maximum supersteps per invocation, subgraphs included
        timeout: Overall run timeout in seconds
        max_concurrency: Maximum tasks running at once within a superstep
        checkpointer: Overrides the checkpointer given to compile()
        store: Overrides the store given to compile()
        interrupt_before: Suspend before running any of these nodes ("*" for all)
        interrupt_after: Suspend after running any of these nodes ("*" for all)
    """
    thread_id: Optional[str] = None
    checkpoint_id: Optional[str] = None
    configurable: Dict[str, Any] = Field(default_factory=dict)
    recursion_limit: int = Field(default_factory=default_recursion_limit)
    timeout: Optional[float] = None
    max_concurrency: Optional[int] = None
    checkpointer: Optional[BaseCheckpointSaver] = None
    store: Optional[BaseStore] = None
    interrupt_before: List[str] = Field(default_factory=list)
    interrupt_after: List[str] = Field(default_factory=list)

    class Config:
        arbitrary_types_allowed = True

    @field_validator("recursion_limit")
    @classmethod
    def validate_recursion_limit(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("recursion_limit must be positive")
        return value

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("max_concurrency")
    @classmethod
    def validate_max_concurrency(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("max_concurrency must be positive")
        return value

    @classmethod
    def coerce(cls, config: Union[None, "RunConfig", Mapping[str, Any]]) -> "RunConfig":
        """Build a RunConfig from None, a RunConfig or a mapping.

        ``thread_id`` and ``checkpoint_id`` may appear at the top level or
        inside ``configurable``; everything else in ``configurable`` stays in
        the bag.
        """
        if config is None:
            return cls()
        if isinstance(config, RunConfig):
            return config
        data = dict(config)
        configurable = dict(data.pop("configurable", None) or {})
        for key in _TOP_LEVEL_KEYS:
            if key in configurable:
                data.setdefault(key, configurable.pop(key))
        return cls(configurable=configurable, **data)

    def with_checkpoint(self, checkpoint_id: Optional[str]) -> "RunConfig":
        """Copy of this config pointing at another checkpoint."""
        return self.model_copy(update={"checkpoint_id": checkpoint_id})

    def to_dict(self) -> Dict[str, Any]:
        """The ``{"configurable": {...}}`` form of the thread/checkpoint coordinates."""
        configurable = dict(self.configurable)
        if self.thread_id is not None:
            configurable["thread_id"] = self.thread_id
        if self.checkpoint_id is not None:
            configurable["checkpoint_id"] = self.checkpoint_id
        return {"configurable": configurable}
