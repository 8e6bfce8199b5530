"""State management for the graph system.

This module provides:
1. Channel: a named, reducer-governed slot in the shared state
2. define_channel / channels_from_schema: build channels explicitly or from a schema class
3. Built-in reducers (concat, merge_dicts, add, last_value)
4. apply_writes: fold one superstep's writes into a new state
5. read_only: the immutable view handed to node handlers

Schemas may be a TypedDict, a pydantic model or a mapping of Channels.
``Annotated`` metadata attaches a reducer:

    ```python
    class State(TypedDict):
        aggregate: Annotated[list, concat]
        status: str
    ```
"""

import copy
import typing
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)
from pydantic import BaseModel, Field
from pydantic_core import PydanticUndefined

from stepgraph.core.errors import InvalidUpdateError, StateReductionError
from stepgraph.core.logging import get_logger, LogComponent

logger = get_logger(LogComponent.GRAPH)

Reducer = Callable[[Any, Any], Any]
ChannelWrite = Tuple[str, str, Any]  # (node, channel, value)

_CONTAINER_DEFAULTS = {list: list, dict: dict, set: set, tuple: tuple}


###################################################################
# Reducers
###################################################################

def concat(current: Any, incoming: Any) -> List[Any]:
    """Append ``incoming`` to the list; sequences are extended, scalars appended."""
    merged = list(current) if current else []
    if isinstance(incoming, (list, tuple)):
        merged.extend(incoming)
    else:
        merged.append(incoming)
    return merged


def merge_dicts(current: Optional[Mapping], incoming: Mapping) -> Dict[Any, Any]:
    """Shallow-merge ``incoming`` over ``current``."""
    merged = dict(current or {})
    merged.update(incoming)
    return merged


def add(current: Any, incoming: Any) -> Any:
    """Numeric sum; a missing current value counts as zero."""
    return (current or 0) + incoming


def last_value(current: Any, incoming: Any) -> Any:
    """Explicit last-write-wins."""
    return incoming


###################################################################
# Channels
###################################################################

class Channel(BaseModel):
    """A named slot in the shared state.

    Attributes:
        key: Channel name
        reducer: ``(current, incoming) -> merged``; None means last write wins
        default: Factory for the initial value
        value_type: Declared value type, informational only
    """
    key: str
    reducer: Optional[Callable[[Any, Any], Any]] = None
    default: Optional[Callable[[], Any]] = None
    value_type: Optional[Any] = None

    class Config:
        arbitrary_types_allowed = True
        frozen = True

    def initial(self) -> Any:
        """Initial value from the default factory, or None."""
        return self.default() if self.default is not None else None

    def reduce(self, current: Any, writes: Sequence[Tuple[str, Any]]) -> Any:
        """Fold same-superstep ``(node, value)`` writes into ``current``.

        Writes are applied left to right in the order given. When the channel
        has no default and holds None, the first write seeds the value
        without calling the reducer.
        """
        if self.reducer is None:
            if len(writes) > 1:
                writers = [node for node, _ in writes]
                logger.warning(
                    f"Channel '{self.key}' has no reducer and received {len(writes)} writes "
                    f"in one superstep from {writers}; keeping the write from '{writers[-1]}'"
                )
            return writes[-1][1]

        value = current
        for index, (node, incoming) in enumerate(writes):
            if index == 0 and value is None and self.default is None:
                value = incoming
                continue
            try:
                value = self.reducer(value, incoming)
            except Exception as e:
                raise StateReductionError(self.key, node, e) from e
        return value


def define_channel(
    key: str,
    reducer: Optional[Reducer] = None,
    default: Optional[Callable[[], Any]] = None,
    value_type: Optional[Any] = None,
) -> Channel:
    """Create a channel definition."""
    return Channel(key=key, reducer=reducer, default=default, value_type=value_type)


def _split_annotation(hint: Any) -> Tuple[Any, Optional[Reducer]]:
    """Return ``(base_type, reducer)`` for a possibly Annotated type hint."""
    if typing.get_origin(hint) is typing.Annotated:
        base, *metadata = typing.get_args(hint)
        reducer = next((m for m in metadata if callable(m)), None)
        return base, reducer
    return hint, None


def _container_default(base: Any) -> Optional[Callable[[], Any]]:
    origin = typing.get_origin(base) or base
    return _CONTAINER_DEFAULTS.get(origin)


def channels_from_schema(schema: Any) -> Dict[str, Channel]:
    """Derive channels from a schema.

    Args:
        schema: A mapping of Channels, a pydantic model class, or any class with
            annotations (TypedDict, dataclass, plain class)

    Returns:
        Channels keyed by name, in declaration order

    Raises:
        TypeError: If the schema type is not supported
    """
    if isinstance(schema, Mapping):
        channels = {}
        for key, channel in schema.items():
            if not isinstance(channel, Channel):
                raise TypeError(f"Schema entry '{key}' must be a Channel, got {type(channel).__name__}")
            channels[key] = channel
        return channels

    if isinstance(schema, type) and issubclass(schema, BaseModel):
        channels = {}
        for key, field in schema.model_fields.items():
            reducer = next((m for m in field.metadata if callable(m)), None)
            if field.default_factory is not None:
                default = field.default_factory
            elif field.default is not PydanticUndefined:
                default = (lambda value=field.default: value)
            else:
                default = _container_default(field.annotation)
            channels[key] = Channel(
                key=key, reducer=reducer, default=default, value_type=field.annotation
            )
        return channels

    if isinstance(schema, type):
        hints = typing.get_type_hints(schema, include_extras=True)
        channels = {}
        for key, hint in hints.items():
            base, reducer = _split_annotation(hint)
            channels[key] = Channel(
                key=key, reducer=reducer, default=_container_default(base), value_type=base
            )
        return channels

    raise TypeError(f"Unsupported state schema: {schema!r}")


###################################################################
# Applying writes
###################################################################

def as_writes(update: Any, node: str) -> List[Tuple[str, Any]]:
    """Normalize a node's return value to ``(channel, value)`` pairs.

    Accepts None, a mapping, a pydantic model (only fields that were set) or a
    sequence of ``(channel, value)`` pairs.
    """
    if update is None:
        return []
    if isinstance(update, Mapping):
        return list(update.items())
    if isinstance(update, BaseModel):
        return list(update.model_dump(exclude_unset=True).items())
    if isinstance(update, (list, tuple)) and all(
        isinstance(item, tuple) and len(item) == 2 and isinstance(item[0], str)
        for item in update
    ):
        return list(update)
    raise InvalidUpdateError(
        f"Node '{node}' returned {type(update).__name__}; expected a dict, a Command, "
        f"a pydantic model or a list of (channel, value) pairs"
    )


def apply_writes(
    channels: Mapping[str, Channel],
    state: Mapping[str, Any],
    writes: Sequence[ChannelWrite],
) -> Dict[str, Any]:
    """Reduce a batch of writes into a new state without touching ``state``.

    Writes are grouped per channel and folded in the order given, so callers
    control the tie-break by ordering ``writes``.

    Raises:
        InvalidUpdateError: A write targets an undeclared channel
        StateReductionError: A reducer raised
    """
    grouped: Dict[str, List[Tuple[str, Any]]] = {}
    for node, channel, value in writes:
        if channel not in channels:
            raise InvalidUpdateError(
                f"Node '{node}' wrote to unknown channel '{channel}'; "
                f"declared channels are {sorted(channels)}"
            )
        grouped.setdefault(channel, []).append((node, value))

    new_state = dict(state)
    for channel, channel_writes in grouped.items():
        new_state[channel] = channels[channel].reduce(state.get(channel), channel_writes)
    return new_state


def read_only(state: Mapping[str, Any]) -> Mapping[str, Any]:
    """Immutable view of a state snapshot.

    Values are deep-copied, so mutating a nested list or dict through the
    view never reaches the committed state or another view.
    """
    return MappingProxyType(copy.deepcopy(dict(state)))
