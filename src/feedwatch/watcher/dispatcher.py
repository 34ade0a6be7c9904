"""Ordered delivery of change events to the consumer's handler."""

from __future__ import annotations

import inspect
from typing import Any, Callable

from feedwatch.core.exceptions import HandlerError, StoreError
from feedwatch.core.types import ChangeEvent, EventHandler, HandlerErrorPolicy
from feedwatch.observability.logging import get_logger
from feedwatch.observability.metrics import (
    EVENTS_DISPATCHED_TOTAL,
    HANDLER_ERRORS_TOTAL,
    STORE_ERRORS_TOTAL,
)
from feedwatch.watcher.resume_token import ResumeTokenStore

logger = get_logger(__name__)


async def invoke(func: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callable and return its result."""
    result = func(*args)
    if inspect.isawaitable(result):
        return await result
    return result


class EventDispatcher:
    """
    Delivers events one at a time, in arrival order, to a handler.

    Responsibilities:
    - Isolates handler failures from feed consumption
    - Applies the handler error policy (continue or abort)
    - Checkpoints each delivered event's position in the token store
    - Degrades token store failures to a logged, skipped checkpoint
    """

    def __init__(
        self,
        token_store: ResumeTokenStore,
        error_policy: HandlerErrorPolicy = HandlerErrorPolicy.CONTINUE,
    ) -> None:
        self._store = token_store
        self._policy = error_policy

        self._delivered_count = 0
        self._handler_error_count = 0
        self._store_error_count = 0
        self._last_error: HandlerError | None = None

    @property
    def error_policy(self) -> HandlerErrorPolicy:
        return self._policy

    @property
    def last_error(self) -> HandlerError | None:
        return self._last_error

    async def dispatch(
        self,
        event: ChangeEvent,
        handler: EventHandler,
    ) -> HandlerError | None:
        """
        Deliver one event and checkpoint its position.

        Args:
            event: The event to deliver.
            handler: Sync or async callable receiving the event.

        Returns:
            None on success, or the HandlerError under the continue policy.

        Raises:
            HandlerError: If the handler fails under the abort policy.
        """
        try:
            await invoke(handler, event)
        except Exception as e:
            error = HandlerError(event, e)
            self._handler_error_count += 1
            self._last_error = error
            HANDLER_ERRORS_TOTAL.labels(namespace=event.namespace).inc()

            if self._policy is HandlerErrorPolicy.ABORT:
                logger.error(
                    "Event handler failed, aborting",
                    namespace=event.namespace,
                    document_id=event.document_id,
                    error=str(e),
                )
                raise error from e

            logger.warning(
                "Event handler failed, skipping event",
                namespace=event.namespace,
                document_id=event.document_id,
                error=str(e),
            )
            await self.checkpoint(event)
            return error

        await self.commit(event)
        return None

    async def commit(self, event: ChangeEvent) -> bool:
        """Count ``event`` as delivered and checkpoint its position."""
        self._delivered_count += 1
        EVENTS_DISPATCHED_TOTAL.labels(
            namespace=event.namespace,
            operation=event.operation.value,
        ).inc()
        return await self.checkpoint(event)

    async def checkpoint(self, event: ChangeEvent) -> bool:
        """
        Record ``event.position`` as processed.

        Returns:
            False if the token store failed; the failure is logged, not raised.
        """
        try:
            await self._store.save(event.position)
        except StoreError as e:
            self._store_error_count += 1
            STORE_ERRORS_TOTAL.labels(namespace=event.namespace).inc()
            logger.warning(
                "Failed to checkpoint resume token",
                namespace=event.namespace,
                document_id=event.document_id,
                error=str(e),
            )
            return False
        return True

    def get_stats(self) -> dict[str, Any]:
        """Get dispatcher statistics."""
        return {
            "delivered": self._delivered_count,
            "handler_errors": self._handler_error_count,
            "store_errors": self._store_error_count,
            "error_policy": self._policy.value,
        }
