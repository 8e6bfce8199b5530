"""Command protocol: control-and-data envelopes returned by nodes.

A node may return a plain partial state (a dict) or a Command that combines a
state update with an explicit routing decision:

    ```python
    def review(state):
        if state["approved"]:
            return Command(update={"status": "done"}, goto=END)
        return Command(update={"status": "retry"}, goto="draft")
    ```

Send packets schedule a node with a private input, which is how map-style
fan-out is expressed:

    ```python
    def fan_out(state):
        return [Send("summarize", {"doc": doc}) for doc in state["docs"]]
    ```
"""

from typing import Any, ClassVar, List, Optional, Sequence, Tuple, Union
from pydantic import BaseModel, Field, field_validator

from stepgraph.core.graph.state import as_writes

START = "__start__"
END = "__end__"
RESERVED_NAMES = frozenset({START, END})


class Send(BaseModel):
    """Schedule ``node`` for the next superstep with ``arg`` as its input.

    Attributes:
        node: Name of the node to run
        arg: Input handed to the node instead of the shared state
    """
    node: str
    arg: Any = None

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    def __init__(self, node: str, arg: Any = None, **data):
        super().__init__(node=node, arg=arg, **data)


Destination = Union[str, Send]


class Command(BaseModel):
    """State update plus control transfer returned from a node.

    Attributes:
        update: Partial state merged exactly like a plain return value
        goto: Next node name(s) or Send packet(s); overrides edge routing
        graph: None for the current graph, Command.PARENT for the calling graph
    """
    PARENT: ClassVar[str] = "__parent__"

    update: Optional[Any] = None
    goto: Union[str, Send, Sequence[Union[str, Send]]] = Field(default_factory=list)
    graph: Optional[str] = None

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    @field_validator("graph")
    @classmethod
    def validate_graph(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value != cls.PARENT:
            raise ValueError(f"Command.graph must be None or Command.PARENT, got {value!r}")
        return value

    def goto_targets(self) -> List[Destination]:
        """Normalize ``goto`` to a list."""
        if isinstance(self.goto, (str, Send)):
            return [self.goto]
        return list(self.goto)

    def update_items(self, node: str = "command") -> List[Tuple[str, Any]]:
        """Normalize ``update`` to ``(channel, value)`` pairs."""
        return as_writes(self.update, node)
