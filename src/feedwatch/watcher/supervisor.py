"""Reconnection state machine for the change feed."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable

from feedwatch.core.exceptions import (
    ConnectError,
    FeedError,
    StoreError,
    StreamInterruptedError,
    SupervisorExhaustedError,
    TokenExpiredError,
    WatcherStateError,
)
from feedwatch.core.types import ChangeEvent, FilterSpec, GapHandler, ResumeToken, SupervisorState
from feedwatch.feed.connection import FeedConnection
from feedwatch.observability.logging import get_logger
from feedwatch.observability.metrics import (
    GAPS_TOTAL,
    RECONNECT_ATTEMPTS_TOTAL,
    SUPERVISOR_GIVE_UPS_TOTAL,
)
from feedwatch.resilience.retry import BackoffPolicy
from feedwatch.watcher.dispatcher import invoke
from feedwatch.watcher.resume_token import ResumeTokenStore

logger = get_logger(__name__)


class ReconnectSupervisor:
    """
    Keeps a feed connection alive across failures.

    States:
    - CONNECTED: a subscription is open and streaming
    - DISCONNECTED: the subscription failed or ended unexpectedly
    - BACKING_OFF: waiting before the next reopen
    - GIVING_UP: retries exhausted or the error is not retryable (terminal)

    Reopens always resume from the last checkpointed token. If the feed no
    longer has that position, the supervisor resubscribes from now and
    reports the gap once.
    """

    def __init__(
        self,
        connection: FeedConnection,
        token_store: ResumeTokenStore,
        backoff: BackoffPolicy,
        on_gap: GapHandler | None = None,
        on_state_change: Callable[[SupervisorState], None] | None = None,
    ) -> None:
        self._connection = connection
        self._store = token_store
        self._backoff = backoff
        self._on_gap = on_gap
        self._on_state_change = on_state_change

        self._state = SupervisorState.DISCONNECTED
        self._attempt = 0
        self._last_position: ResumeToken | None = None
        self._expired_token: ResumeToken | None = None

        self._connect_count = 0
        self._gap_count = 0
        self._last_delay: float | None = None
        self._last_error: BaseException | None = None

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def attempt(self) -> int:
        """Consecutive failures since the last successful connect."""
        return self._attempt

    @property
    def namespace(self) -> str:
        return self._connection.namespace

    def _set_state(self, state: SupervisorState) -> None:
        if state is self._state:
            return
        logger.debug(
            "Supervisor state change",
            namespace=self.namespace,
            previous=self._state.value,
            state=state.value,
        )
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    async def events(
        self,
        filter_spec: FilterSpec,
        stop_event: asyncio.Event,
    ) -> AsyncIterator[ChangeEvent]:
        """
        Yield events across reconnects until stopped.

        Raises:
            SupervisorExhaustedError: When reconnection is abandoned.
        """
        if self._state is SupervisorState.GIVING_UP:
            raise WatcherStateError("reconnect", self._state.value)

        while not stop_event.is_set():
            resume_after = await self._resume_position()

            try:
                await self._open(filter_spec, resume_after)
            except ConnectError as e:
                if not await self._back_off(e, stop_event):
                    return
                continue

            error: FeedError | None = None
            try:
                async for event in self._connection.events():
                    self._last_position = event.position
                    yield event
            except FeedError as e:
                error = e
            finally:
                await self._connection.close()

            if stop_event.is_set():
                return

            if error is None:
                error = StreamInterruptedError("Change feed ended unexpectedly", self.namespace)

            if not await self._back_off(error, stop_event):
                return

    async def _resume_position(self) -> ResumeToken | None:
        try:
            token = await self._store.load()
        except StoreError as e:
            logger.warning(
                "Failed to load resume token, using last seen position",
                namespace=self.namespace,
                error=str(e),
            )
            token = self._last_position

        if token is not None and token == self._expired_token:
            return None
        return token

    async def _open(self, filter_spec: FilterSpec, resume_after: ResumeToken | None) -> None:
        try:
            await self._connection.open(filter_spec, resume_after)
        except TokenExpiredError as e:
            if resume_after is None:
                raise
            await self._report_gap(resume_after, e)
            await self._connection.open(filter_spec, None)

        self._attempt = 0
        self._connect_count += 1
        self._set_state(SupervisorState.CONNECTED)

    async def _report_gap(self, position: ResumeToken, error: TokenExpiredError) -> None:
        self._expired_token = position
        self._gap_count += 1
        GAPS_TOTAL.labels(namespace=self.namespace).inc()
        logger.warning(
            "Resume token expired, resubscribing from now; events were missed",
            namespace=self.namespace,
            resume_token=position,
            reason=error.details.get("reason"),
        )

        try:
            await self._store.clear()
        except StoreError as e:
            logger.warning("Failed to clear expired resume token", namespace=self.namespace, error=str(e))

        if self._on_gap is not None:
            try:
                await invoke(self._on_gap, position)
            except Exception as e:
                logger.error("Gap callback failed", namespace=self.namespace, error=str(e))

    async def _back_off(self, error: BaseException, stop_event: asyncio.Event) -> bool:
        """
        Wait before the next reopen.

        Returns:
            False if stopped while waiting.

        Raises:
            SupervisorExhaustedError: If no further attempt is allowed.
        """
        self._set_state(SupervisorState.DISCONNECTED)
        self._attempt += 1
        self._last_error = error

        retryable = getattr(error, "retryable", True)
        if not retryable or self._backoff.exhausted(self._attempt):
            self._set_state(SupervisorState.GIVING_UP)
            SUPERVISOR_GIVE_UPS_TOTAL.labels(namespace=self.namespace).inc()
            logger.error(
                "Giving up on change feed",
                namespace=self.namespace,
                attempts=self._attempt,
                retryable=retryable,
                error=str(error),
            )
            raise SupervisorExhaustedError(self._attempt, error, self.namespace) from error

        delay = self._backoff.calculate_delay(self._attempt)
        self._last_delay = delay
        self._set_state(SupervisorState.BACKING_OFF)
        RECONNECT_ATTEMPTS_TOTAL.labels(
            namespace=self.namespace,
            reason=type(error).__name__,
        ).inc()
        logger.warning(
            "Change feed error, retrying",
            namespace=self.namespace,
            error=str(error),
            attempt=self._attempt,
            max_attempts=self._backoff.max_attempts,
            delay=round(delay, 3),
        )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    def get_stats(self) -> dict[str, Any]:
        """Get supervisor statistics."""
        return {
            "state": self._state.value,
            "attempt": self._attempt,
            "connects": self._connect_count,
            "gaps": self._gap_count,
            "last_delay": self._last_delay,
            "last_error": str(self._last_error) if self._last_error else None,
        }
