"""Core module for feedwatch."""

from feedwatch.core.config import Settings
from feedwatch.core.exceptions import FeedWatchError
from feedwatch.core.types import (
    ChangeEvent,
    FilterSpec,
    HandlerErrorPolicy,
    OperationType,
    SupervisorState,
    WatcherState,
)

__all__ = [
    "Settings",
    "FeedWatchError",
    "ChangeEvent",
    "FilterSpec",
    "HandlerErrorPolicy",
    "OperationType",
    "SupervisorState",
    "WatcherState",
]
