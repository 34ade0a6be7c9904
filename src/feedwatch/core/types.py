"""Protocols and type definitions for feedwatch."""

from __future__ import annotations

import json
import re
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OperationType(str, Enum):
    """Change feed operation types."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"
    INVALIDATE = "invalidate"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | None) -> OperationType:
        """Map a raw operation name, folding unknown ones into OTHER."""
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class WatcherState(str, Enum):
    """Lifecycle of a watcher controller."""

    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class SupervisorState(str, Enum):
    """Reconnect supervisor states."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    BACKING_OFF = "backing_off"
    GIVING_UP = "giving_up"


class HandlerErrorPolicy(str, Enum):
    """What the dispatcher does after a handler raises."""

    CONTINUE = "continue"
    ABORT = "abort"


# Opaque to everything except the feed itself.
ResumeToken = Any
Namespace = str


class ChangeEvent(BaseModel):
    """A decoded change feed event. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    operation: OperationType
    resource_path: tuple[str, ...]
    payload: dict[str, Any] = Field(default_factory=dict)
    position: ResumeToken
    update_description: dict[str, Any] | None = None
    cluster_time: Any = None
    wall_time: datetime | None = None

    @property
    def database(self) -> str:
        return self.resource_path[0] if self.resource_path else ""

    @property
    def collection(self) -> str:
        return self.resource_path[1] if len(self.resource_path) > 1 else ""

    @property
    def document_id(self) -> str:
        """Get the document key as string."""
        return self.resource_path[2] if len(self.resource_path) > 2 else ""

    @property
    def namespace(self) -> Namespace:
        """Get the full namespace (database.collection)."""
        return ".".join(self.resource_path[:2])

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display or serialization."""
        return {
            "operation": self.operation.value,
            "resource_path": list(self.resource_path),
            "payload": self.payload,
            "position": self.position,
            "update_description": self.update_description,
            "cluster_time": str(self.cluster_time) if self.cluster_time else None,
            "wall_time": self.wall_time.isoformat() if self.wall_time else None,
        }


class FilterSpec(BaseModel):
    """
    Conjunctive predicate over change documents, applied server-side.

    ``match`` maps dotted field paths of the change document (for example
    ``fullDocument.address.country``) to expected values. Values may also be
    simple comparison operator documents such as ``{"$in": [...]}``.
    """

    model_config = ConfigDict(frozen=True)

    match: dict[str, Any] = Field(default_factory=dict)
    operations: tuple[OperationType, ...] = ()

    @field_validator("match")
    @classmethod
    def validate_paths(cls, v: dict[str, Any]) -> dict[str, Any]:
        """Field paths must be non-empty and not operators."""
        for path in v:
            if not path or path.startswith("$") or ".." in path:
                raise ValueError(f"Invalid field path: {path!r}")
        return v

    @field_validator("operations", mode="before")
    @classmethod
    def parse_operations(cls, v: Any) -> Any:
        """Parse operations from strings."""
        if isinstance(v, (list, tuple)):
            return tuple(OperationType(op) if isinstance(op, str) else op for op in v)
        return v

    @classmethod
    def from_pairs(
        cls,
        pairs: list[str] | tuple[str, ...],
        operations: list[str] | tuple[str, ...] = (),
    ) -> FilterSpec:
        """Build a filter from ``path=value`` strings; values are parsed as JSON when possible."""
        match: dict[str, Any] = {}
        for pair in pairs:
            path, sep, raw = pair.partition("=")
            if not sep:
                raise ValueError(f"Expected PATH=VALUE, got {pair!r}")
            try:
                value = json.loads(raw)
            except ValueError:
                value = raw
            match[path.strip()] = value
        return cls(match=match, operations=tuple(operations))

    @property
    def is_empty(self) -> bool:
        return not self.match and not self.operations

    def to_pipeline(self) -> list[dict[str, Any]]:
        """Render as a change stream aggregation pipeline."""
        if self.is_empty:
            return []

        stage: dict[str, Any] = {}
        if self.operations:
            ops = [op.value for op in self.operations]
            stage["operationType"] = ops[0] if len(ops) == 1 else {"$in": ops}
        stage.update(self.match)
        return [{"$match": stage}]

    def matches(self, change: Mapping[str, Any]) -> bool:
        """Evaluate the filter against a raw change document."""
        if self.operations:
            if OperationType.parse(change.get("operationType")) not in self.operations:
                return False

        for path, expected in self.match.items():
            actual = _get_field_value(change, path)
            if isinstance(expected, dict) and expected and all(
                k.startswith("$") for k in expected
            ):
                if not all(
                    _compare(op, actual, value) for op, value in expected.items()
                ):
                    return False
            elif actual != expected:
                return False

        return True


def _get_field_value(document: Mapping[str, Any], path: str) -> Any:
    current: Any = document
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            idx = int(part)
            current = current[idx] if 0 <= idx < len(current) else None
        else:
            return None
    return current


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "$eq":
        return actual == expected
    if op == "$ne":
        return actual != expected
    if op == "$gt":
        return actual is not None and actual > expected
    if op == "$gte":
        return actual is not None and actual >= expected
    if op == "$lt":
        return actual is not None and actual < expected
    if op == "$lte":
        return actual is not None and actual <= expected
    if op == "$in":
        return actual in expected
    if op == "$nin":
        return actual not in expected
    if op == "$exists":
        return (actual is not None) == bool(expected)
    if op == "$regex":
        return actual is not None and re.search(expected, str(actual)) is not None
    raise ValueError(f"Unsupported filter operator: {op}")


EventHandler = Callable[[ChangeEvent], Union[Awaitable[None], None]]
GapHandler = Callable[[ResumeToken], Union[Awaitable[None], None]]
FatalHandler = Callable[[BaseException], Union[Awaitable[None], None]]


@runtime_checkable
class EventSource(Protocol):
    """An open subscription yielding change events in feed order."""

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        ...

    async def close(self) -> None:
        """Release the subscription. Must be idempotent."""
        ...


@runtime_checkable
class FeedSource(Protocol):
    """Remote change feed, treated as a black box."""

    @property
    def namespace(self) -> Namespace:
        """Namespace this feed watches."""
        ...

    async def subscribe(
        self,
        filter_spec: FilterSpec,
        resume_after: ResumeToken | None = None,
    ) -> EventSource:
        """
        Open a subscription.

        Args:
            filter_spec: Server-side filter for this subscription.
            resume_after: Resume from just after this position, or from now if None.

        Raises:
            ConnectError: If the subscription cannot be opened.
        """
        ...


@runtime_checkable
class EventSink(Protocol):
    """Destination for piped events."""

    async def write(self, event: ChangeEvent) -> None:
        ...
