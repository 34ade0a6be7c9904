"""Change feed watcher module."""

from feedwatch.watcher.controller import WatcherController
from feedwatch.watcher.dispatcher import EventDispatcher
from feedwatch.watcher.resume_token import (
    BatchingResumeTokenStore,
    MemoryResumeTokenStore,
    MongoResumeTokenStore,
    ResumeTokenStore,
)
from feedwatch.watcher.supervisor import ReconnectSupervisor

__all__ = [
    "WatcherController",
    "EventDispatcher",
    "ReconnectSupervisor",
    "ResumeTokenStore",
    "MemoryResumeTokenStore",
    "MongoResumeTokenStore",
    "BatchingResumeTokenStore",
]
