"""Unit tests for WatcherController."""

from __future__ import annotations

import asyncio
from contextlib import aclosing

import pytest

from feedwatch.core.config import Settings
from feedwatch.core.exceptions import (
    HandlerError,
    StoreError,
    SupervisorExhaustedError,
    UnreachableError,
    WatcherStateError,
)
from feedwatch.core.types import FilterSpec, HandlerErrorPolicy, WatcherState
from feedwatch.watcher.controller import WatcherController
from feedwatch.watcher.resume_token import MemoryResumeTokenStore


class StubbornStore(MemoryResumeTokenStore):
    async def close(self):
        raise StoreError("flush failed", self.namespace)


class ListSink:
    def __init__(self, controller=None, limit=None):
        self.controller = controller
        self.limit = limit
        self.items = []
        self.closed = False

    async def write(self, event):
        self.items.append(event.position)
        if self.limit and len(self.items) == self.limit:
            self.controller.stop()

    def close(self):
        self.closed = True


def stop_after(controller, count, received):
    def handler(event):
        received.append(event.position)
        if len(received) == count:
            controller.stop()

    return handler


@pytest.mark.asyncio
class TestWatcherController:
    """Tests for WatcherController."""

    async def test_delivers_in_order(self, feed, fast_backoff):
        """Test every event is delivered once, in feed order."""
        store = MemoryResumeTokenStore(feed.namespace)
        controller = WatcherController(feed, token_store=store, backoff=fast_backoff)
        received = []
        states = []

        def handler(event):
            states.append(controller.state)
            stop_after(controller, 10, received)(event)

        await asyncio.wait_for(controller.run(handler), timeout=5)

        assert received == list(range(1, 11))
        assert set(states) == {WatcherState.STREAMING}
        assert controller.state is WatcherState.CLOSED
        assert await store.load() == 10
        assert feed.sources[0].close_count == 1
        assert not controller.connection.is_open

    async def test_resumes_after_stream_failure(self, feed, fast_backoff):
        """Test a failure after five of ten events loses and repeats nothing."""
        feed.disconnects = [5]
        controller = WatcherController(feed, backoff=fast_backoff)
        received = []

        await asyncio.wait_for(controller.run(stop_after(controller, 10, received)), timeout=5)

        assert received == list(range(1, 11))
        assert feed.subscriptions == [None, 5]
        assert controller.state is WatcherState.CLOSED

    async def test_resumes_from_stored_token(self, feed, fast_backoff):
        """Test a restart picks up after the persisted position."""
        store = MemoryResumeTokenStore(feed.namespace, token=6)
        controller = WatcherController(feed, token_store=store, backoff=fast_backoff)
        received = []

        await asyncio.wait_for(controller.run(stop_after(controller, 4, received)), timeout=5)

        assert received == [7, 8, 9, 10]
        assert feed.subscriptions == [6]

    async def test_expired_token_signals_gap_once(self, feed, fast_backoff):
        """Test an expired resume point resubscribes from now and reports it."""
        feed.retention_floor = 5
        feed.now = 7
        gaps = []
        store = MemoryResumeTokenStore(feed.namespace, token=2)
        controller = WatcherController(
            feed, token_store=store, backoff=fast_backoff, on_gap=gaps.append
        )
        received = []

        await asyncio.wait_for(controller.run(stop_after(controller, 3, received)), timeout=5)

        assert received == [8, 9, 10]
        assert gaps == [2]
        assert feed.subscriptions == [2, None]

    async def test_exhaustion_fails_once(self, feed, fast_backoff):
        """Test giving up moves to FAILED and notifies exactly once."""
        feed.open_errors = [UnreachableError("refused", feed.namespace)] * 10
        fatal = []
        controller = WatcherController(feed, backoff=fast_backoff, on_fatal=fatal.append)

        with pytest.raises(SupervisorExhaustedError):
            await asyncio.wait_for(controller.run(lambda event: None), timeout=5)

        assert controller.state is WatcherState.FAILED
        assert len(fatal) == 1
        assert isinstance(fatal[0], SupervisorExhaustedError)
        assert controller.failure is fatal[0]
        assert len(feed.subscriptions) == fast_backoff.max_attempts + 1

    async def test_stop_does_not_interrupt_handler(self, feed, fast_backoff):
        """Test an in-flight event completes before shutdown."""
        controller = WatcherController(feed, backoff=fast_backoff)
        started = []
        completed = []

        async def handler(event):
            started.append(event.position)
            if event.position == 3:
                controller.stop()
                await asyncio.sleep(0.01)
            completed.append(event.position)

        await asyncio.wait_for(controller.run(handler), timeout=5)

        assert started == [1, 2, 3]
        assert completed == [1, 2, 3]
        assert controller.state is WatcherState.CLOSED

    async def test_duration_closes_stream(self, feed_factory, fast_backoff):
        """Test the watch ends on its own after the duration."""
        feed = feed_factory(3)
        controller = WatcherController(feed, backoff=fast_backoff)
        received = []

        await asyncio.wait_for(controller.run(received.append, duration=0.05), timeout=5)

        assert [e.position for e in received] == [1, 2, 3]
        assert controller.state is WatcherState.CLOSED
        assert feed.sources[0].closed

    async def test_external_stop_event(self, feed, fast_backoff):
        """Test cancellation through a caller-owned event."""
        stop = asyncio.Event()
        controller = WatcherController(feed, backoff=fast_backoff)
        received = []

        def handler(event):
            received.append(event.position)
            if len(received) == 2:
                stop.set()

        await asyncio.wait_for(controller.run(handler, stop_event=stop), timeout=5)

        assert received == [1, 2]

    async def test_stop_before_run(self, feed, fast_backoff):
        """Test a stopped controller subscribes to nothing."""
        controller = WatcherController(feed, backoff=fast_backoff)
        controller.stop()
        received = []

        await asyncio.wait_for(controller.run(received.append), timeout=5)

        assert received == []
        assert controller.state is WatcherState.CLOSED

    async def test_runs_once(self, feed, fast_backoff):
        """Test a finished controller cannot be restarted."""
        controller = WatcherController(feed, backoff=fast_backoff)
        await asyncio.wait_for(controller.run(lambda event: None, duration=0.01), timeout=5)

        with pytest.raises(WatcherStateError):
            await controller.run(lambda event: None)

    async def test_filter_is_forwarded(self, feed_factory, change_factory, fast_backoff):
        """Test the filter reaches the feed and shapes delivery."""
        feed = feed_factory(
            [change_factory(i, "insert" if i % 2 else "update") for i in range(1, 7)]
        )
        spec = FilterSpec(operations=["insert"])
        controller = WatcherController(feed, backoff=fast_backoff)
        received = []

        await asyncio.wait_for(
            controller.run(stop_after(controller, 3, received), spec),
            timeout=5,
        )

        assert received == [1, 3, 5]
        assert feed.filters == [spec]

    async def test_continue_policy(self, feed, fast_backoff):
        """Test a failing handler does not stop the watch."""
        controller = WatcherController(feed, backoff=fast_backoff)
        received = []

        def handler(event):
            received.append(event.position)
            if len(received) == 4:
                controller.stop()
            if event.position == 2:
                raise ValueError("bad document")

        await asyncio.wait_for(controller.run(handler), timeout=5)

        assert received == [1, 2, 3, 4]
        assert controller.dispatcher.get_stats()["handler_errors"] == 1
        assert controller.state is WatcherState.CLOSED

    async def test_abort_policy(self, feed, fast_backoff):
        """Test aborting fails the watcher without committing the bad event."""
        store = MemoryResumeTokenStore(feed.namespace)
        fatal = []
        controller = WatcherController(
            feed,
            token_store=store,
            backoff=fast_backoff,
            error_policy=HandlerErrorPolicy.ABORT,
            on_fatal=fatal.append,
        )

        def handler(event):
            if event.position == 3:
                raise ValueError("bad document")

        with pytest.raises(HandlerError):
            await asyncio.wait_for(controller.run(handler), timeout=5)

        assert controller.state is WatcherState.FAILED
        assert await store.load() == 2
        assert isinstance(fatal[0], HandlerError)
        assert not controller.connection.is_open

    async def test_store_close_failure_is_logged(self, feed, fast_backoff):
        """Test a failing final flush does not fail the shutdown."""
        controller = WatcherController(
            feed, token_store=StubbornStore(feed.namespace), backoff=fast_backoff
        )
        received = []

        await asyncio.wait_for(controller.run(stop_after(controller, 1, received)), timeout=5)

        assert controller.state is WatcherState.CLOSED

    async def test_iter_events_commits_on_next(self, feed, fast_backoff):
        """Test pull iteration checkpoints only events the consumer moved past."""
        store = MemoryResumeTokenStore(feed.namespace)
        controller = WatcherController(feed, token_store=store, backoff=fast_backoff)
        seen = []

        async with aclosing(controller.iter_events(duration=5)) as events:
            async for event in events:
                seen.append(event.position)
                if len(seen) == 4:
                    break

        assert seen == [1, 2, 3, 4]
        assert await store.load() == 3
        assert controller.state is WatcherState.CLOSED
        assert feed.sources[0].closed

    async def test_pipe(self, feed, fast_backoff):
        """Test piping into a sink closes it afterwards."""
        controller = WatcherController(feed, backoff=fast_backoff)
        sink = ListSink(controller, limit=5)

        await asyncio.wait_for(controller.pipe(sink), timeout=5)

        assert sink.items == [1, 2, 3, 4, 5]
        assert sink.closed

    async def test_from_settings(self, feed):
        """Test construction from settings."""
        settings = Settings(
            backoff={"base_delay": 0.5, "max_attempts": 2},
            watcher={"handler_error_policy": "abort"},
        )
        controller = WatcherController.from_settings(feed, settings)

        assert controller.dispatcher.error_policy is HandlerErrorPolicy.ABORT
        stats = controller.get_stats()
        assert stats["namespace"] == "shop.orders"
        assert stats["state"] == "idle"
        assert stats["supervisor"]["attempt"] == 0
