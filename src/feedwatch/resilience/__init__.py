"""Resilience module for fault tolerance."""

from feedwatch.resilience.retry import BackoffPolicy, create_tenacity_retry
from feedwatch.resilience.shutdown import GracefulShutdown

__all__ = [
    "BackoffPolicy",
    "create_tenacity_retry",
    "GracefulShutdown",
]
