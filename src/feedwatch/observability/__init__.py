"""Observability module for feedwatch."""

from feedwatch.observability.logging import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
