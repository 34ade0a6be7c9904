"""Exception hierarchy for feedwatch."""

from __future__ import annotations

from typing import Any


class FeedWatchError(Exception):
    """Base exception for all feedwatch errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


# Configuration Errors
class ConfigurationError(FeedWatchError):
    """Error in configuration."""

    pass


# Feed Errors
class FeedError(FeedWatchError):
    """Base error for change feed failures."""

    def __init__(
        self,
        message: str,
        namespace: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        all_details = details or {}
        if namespace:
            all_details["namespace"] = namespace
        super().__init__(message, all_details)
        self.namespace = namespace


class ConnectError(FeedError):
    """Subscription to the change feed could not be opened."""

    retryable = True


class UnreachableError(ConnectError):
    """The feed source could not be reached."""

    pass


class AuthFailedError(ConnectError):
    """The feed source rejected our credentials."""

    retryable = False


class InvalidFilterError(ConnectError):
    """The feed source rejected the filter."""

    retryable = False


class TokenExpiredError(ConnectError):
    """The requested resume point fell off the feed's retention window."""

    def __init__(
        self,
        namespace: str | None = None,
        resume_token: Any = None,
        reason: str | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if reason:
            details["reason"] = reason
        super().__init__("Resume token is no longer available", namespace, details)
        self.resume_token = resume_token


class StreamInterruptedError(FeedError):
    """An open subscription failed while streaming."""

    pass


# Dispatch Errors
class HandlerError(FeedWatchError):
    """The consumer's event handler raised."""

    def __init__(self, event: Any, cause: BaseException) -> None:
        super().__init__(
            f"Event handler failed: {cause}",
            {
                "operation": getattr(getattr(event, "operation", None), "value", None),
                "document_id": getattr(event, "document_id", None),
                "error_type": type(cause).__name__,
            },
        )
        self.event = event
        self.cause = cause


# Persistence Errors
class StoreError(FeedWatchError):
    """Resume token persistence failed."""

    def __init__(
        self,
        message: str,
        namespace: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if namespace:
            details["namespace"] = namespace
        if cause is not None:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.cause = cause


# Supervisor Errors
class SupervisorExhaustedError(FeedWatchError):
    """Reconnection was abandoned. Always fatal."""

    def __init__(
        self,
        attempts: int,
        last_error: BaseException | None = None,
        namespace: str | None = None,
    ) -> None:
        details: dict[str, Any] = {"attempts": attempts}
        if namespace:
            details["namespace"] = namespace
        if last_error:
            details["last_error"] = str(last_error)
        super().__init__(
            f"Gave up reconnecting after {attempts} failed attempt(s)",
            details,
        )
        self.attempts = attempts
        self.last_error = last_error


class WatcherStateError(FeedWatchError):
    """Operation not valid in the watcher's current state."""

    def __init__(self, operation: str, state: str) -> None:
        super().__init__(
            f"Cannot {operation} while watcher is {state}",
            {"operation": operation, "state": state},
        )
