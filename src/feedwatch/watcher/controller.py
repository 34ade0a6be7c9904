"""Top-level watcher orchestration."""

from __future__ import annotations

import asyncio
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator

from feedwatch.core.config import Settings
from feedwatch.core.exceptions import StoreError, WatcherStateError
from feedwatch.core.types import (
    ChangeEvent,
    EventHandler,
    EventSink,
    FatalHandler,
    FeedSource,
    FilterSpec,
    GapHandler,
    HandlerErrorPolicy,
    SupervisorState,
    WatcherState,
)
from feedwatch.feed.connection import FeedConnection
from feedwatch.observability.logging import get_watcher_logger, watch_context
from feedwatch.observability.metrics import record_state
from feedwatch.resilience.retry import BackoffPolicy
from feedwatch.watcher.dispatcher import EventDispatcher, invoke
from feedwatch.watcher.resume_token import MemoryResumeTokenStore, ResumeTokenStore
from feedwatch.watcher.supervisor import ReconnectSupervisor

_SUPERVISOR_TO_WATCHER = {
    SupervisorState.CONNECTED: WatcherState.STREAMING,
    SupervisorState.DISCONNECTED: WatcherState.RECONNECTING,
    SupervisorState.BACKING_OFF: WatcherState.RECONNECTING,
}


class WatcherController:
    """
    Runs one resumable watch over a feed source.

    Lifecycle: IDLE -> CONNECTING -> STREAMING (<-> RECONNECTING) ->
    CLOSING -> CLOSED, or FAILED when the supervisor gives up or the
    handler aborts. A controller runs once.

    Three ways to consume, all over the same pull-based core:
    - ``run(handler)``: push each event to a callback
    - ``iter_events()``: ``async for`` over the events
    - ``pipe(sink)``: write each event to a sink
    """

    def __init__(
        self,
        source: FeedSource,
        token_store: ResumeTokenStore | None = None,
        backoff: BackoffPolicy | None = None,
        error_policy: HandlerErrorPolicy = HandlerErrorPolicy.CONTINUE,
        on_gap: GapHandler | None = None,
        on_fatal: FatalHandler | None = None,
    ) -> None:
        self._connection = FeedConnection(source)
        self._store = token_store or MemoryResumeTokenStore(source.namespace)
        self._dispatcher = EventDispatcher(self._store, error_policy)
        self._supervisor = ReconnectSupervisor(
            self._connection,
            self._store,
            backoff or BackoffPolicy(),
            on_gap=on_gap,
            on_state_change=self._on_supervisor_state,
        )
        self._on_fatal = on_fatal

        self._state = WatcherState.IDLE
        self._stop_event = asyncio.Event()
        self._failure: BaseException | None = None
        self._logger = get_watcher_logger(source.namespace)

    @classmethod
    def from_settings(
        cls,
        source: FeedSource,
        settings: Settings,
        token_store: ResumeTokenStore | None = None,
        on_gap: GapHandler | None = None,
        on_fatal: FatalHandler | None = None,
    ) -> WatcherController:
        return cls(
            source,
            token_store=token_store,
            backoff=BackoffPolicy.from_settings(settings.backoff),
            error_policy=settings.watcher.handler_error_policy,
            on_gap=on_gap,
            on_fatal=on_fatal,
        )

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def namespace(self) -> str:
        return self._connection.namespace

    @property
    def connection(self) -> FeedConnection:
        return self._connection

    @property
    def supervisor(self) -> ReconnectSupervisor:
        return self._supervisor

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    @property
    def failure(self) -> BaseException | None:
        """Cause of the FAILED state, if any."""
        return self._failure

    def stop(self) -> None:
        """Ask the watcher to shut down at its next suspension point. Idempotent."""
        if not self._stop_event.is_set():
            self._logger.info("Stop requested", state=self._state.value)
        self._stop_event.set()

    async def run(
        self,
        handler: EventHandler,
        filter_spec: FilterSpec | None = None,
        duration: float | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """
        Deliver events to ``handler`` until stopped, timed out, or failed.

        Args:
            handler: Sync or async callable receiving each event.
            filter_spec: Server-side filter; everything when omitted.
            duration: Seconds to run before closing; None runs until stopped.
            stop_event: External cancellation signal.

        Raises:
            SupervisorExhaustedError: If reconnection was abandoned.
            HandlerError: If the handler failed under the abort policy.
        """
        async with self._session(filter_spec, duration, stop_event) as events:
            async for event in events:
                await self._dispatcher.dispatch(event, handler)

    async def iter_events(
        self,
        filter_spec: FilterSpec | None = None,
        duration: float | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> AsyncIterator[ChangeEvent]:
        """
        Iterate events until stopped, timed out, or failed.

        An event's position is checkpointed when the consumer asks for the
        next one, so an event the consumer broke out on is redelivered after
        a restart.
        """
        async with self._session(filter_spec, duration, stop_event) as events:
            async for event in events:
                yield event
                await self._dispatcher.commit(event)

    async def pipe(
        self,
        sink: EventSink,
        filter_spec: FilterSpec | None = None,
        duration: float | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Write events to ``sink``; the sink's ``close()`` is called on exit if it has one."""
        try:
            await self.run(sink.write, filter_spec, duration, stop_event)
        finally:
            close = getattr(sink, "close", None)
            if close is not None:
                await invoke(close)

    @asynccontextmanager
    async def _session(
        self,
        filter_spec: FilterSpec | None,
        duration: float | None,
        stop_event: asyncio.Event | None,
    ) -> AsyncIterator[AsyncIterator[ChangeEvent]]:
        if self._state is not WatcherState.IDLE:
            raise WatcherStateError("start", self._state.value)

        if stop_event is not None:
            if self._stop_event.is_set():
                stop_event.set()
            self._stop_event = stop_event

        filter_spec = filter_spec or FilterSpec()
        timer: asyncio.Task[None] | None = None

        with watch_context(self.namespace):
            self._set_state(WatcherState.CONNECTING)
            try:
                if duration is not None:
                    timer = asyncio.create_task(
                        self._stop_after(duration),
                        name=f"watch_timer_{self.namespace}",
                    )

                async with aclosing(self._events(filter_spec)) as events:
                    yield events

            except Exception as e:
                await self._fail(e)
                raise

            finally:
                if timer is not None:
                    timer.cancel()
                    await asyncio.gather(timer, return_exceptions=True)
                await self._shutdown()

    async def _events(self, filter_spec: FilterSpec) -> AsyncIterator[ChangeEvent]:
        """
        Pull events from the supervisor, racing each wait against the stop signal.

        Stopping only interrupts the wait for the next event; an event already
        handed to the consumer is never cut short.
        """
        stream = self._supervisor.events(filter_spec, self._stop_event)
        stop_wait = asyncio.create_task(self._stop_event.wait())
        try:
            while True:
                next_event = asyncio.create_task(self._next(stream))
                done, _ = await asyncio.wait(
                    {next_event, stop_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if next_event not in done:
                    next_event.cancel()
                    await asyncio.gather(next_event, return_exceptions=True)
                    return

                try:
                    event = next_event.result()
                except StopAsyncIteration:
                    return

                yield event

                if self._stop_event.is_set():
                    return
        finally:
            stop_wait.cancel()
            await asyncio.gather(stop_wait, return_exceptions=True)
            await stream.aclose()

    @staticmethod
    async def _next(stream: AsyncIterator[ChangeEvent]) -> ChangeEvent:
        return await stream.__anext__()

    async def _stop_after(self, duration: float) -> None:
        await asyncio.sleep(duration)
        self._logger.info("Watch duration elapsed, closing the change stream", duration=duration)
        self._stop_event.set()

    async def _shutdown(self) -> None:
        if self._state is not WatcherState.FAILED:
            self._set_state(WatcherState.CLOSING)

        await self._connection.close()
        try:
            await self._store.close()
        except StoreError as e:
            self._logger.warning("Failed to flush resume token on shutdown", error=str(e))

        if self._state is not WatcherState.FAILED:
            self._set_state(WatcherState.CLOSED)

    async def _fail(self, cause: BaseException) -> None:
        self._failure = cause
        self._set_state(WatcherState.FAILED)
        self._logger.error(
            "Watcher failed",
            error=str(cause),
            error_type=type(cause).__name__,
        )

        if self._on_fatal is not None:
            try:
                await invoke(self._on_fatal, cause)
            except Exception as e:
                self._logger.error("Fatal callback failed", error=str(e))

    def _on_supervisor_state(self, state: SupervisorState) -> None:
        target = _SUPERVISOR_TO_WATCHER.get(state)
        if target is None:
            return
        if self._state in (
            WatcherState.CONNECTING,
            WatcherState.STREAMING,
            WatcherState.RECONNECTING,
        ):
            self._set_state(target)

    def _set_state(self, state: WatcherState) -> None:
        if state is self._state:
            return
        self._logger.info(
            "Watcher state change",
            previous=self._state.value,
            state=state.value,
        )
        self._state = state
        record_state(self.namespace, state)

    def get_stats(self) -> dict[str, Any]:
        """Get watcher statistics."""
        return {
            "namespace": self.namespace,
            "state": self._state.value,
            "failure": str(self._failure) if self._failure else None,
            "supervisor": self._supervisor.get_stats(),
            "dispatcher": self._dispatcher.get_stats(),
        }
