"""Unit tests for the event dispatcher."""

from __future__ import annotations

import pytest

from feedwatch.core.exceptions import HandlerError, StoreError
from feedwatch.core.types import HandlerErrorPolicy
from feedwatch.feed.codec import decode_change
from feedwatch.watcher.dispatcher import EventDispatcher, invoke
from feedwatch.watcher.resume_token import MemoryResumeTokenStore


class BrokenStore(MemoryResumeTokenStore):
    async def save(self, token):
        raise StoreError("unavailable", self.namespace)


@pytest.mark.asyncio
class TestInvoke:
    """Tests for invoke."""

    async def test_sync_and_async(self):
        """Test both plain and coroutine functions."""

        async def double(x):
            return x * 2

        assert await invoke(lambda x: x + 1, 1) == 2
        assert await invoke(double, 2) == 4


@pytest.mark.asyncio
class TestEventDispatcher:
    """Tests for EventDispatcher."""

    @pytest.fixture
    def events(self, change_factory):
        return [decode_change(change_factory(i)) for i in range(1, 4)]

    async def test_delivers_and_checkpoints(self, events):
        """Test each delivered event advances the token."""
        store = MemoryResumeTokenStore("shop.orders")
        dispatcher = EventDispatcher(store)
        received = []

        for event in events:
            assert await dispatcher.dispatch(event, received.append) is None

        assert [e.position for e in received] == [1, 2, 3]
        assert await store.load() == 3
        assert dispatcher.get_stats()["delivered"] == 3

    async def test_async_handler(self, events):
        """Test coroutine handlers are awaited."""
        store = MemoryResumeTokenStore("shop.orders")
        dispatcher = EventDispatcher(store)
        received = []

        async def handler(event):
            received.append(event.position)

        await dispatcher.dispatch(events[0], handler)
        assert received == [1]

    async def test_continue_policy_skips_failed_event(self, events):
        """Test a failing handler is reported and the feed moves on."""
        store = MemoryResumeTokenStore("shop.orders")
        dispatcher = EventDispatcher(store, HandlerErrorPolicy.CONTINUE)

        def handler(event):
            if event.position == 2:
                raise RuntimeError("boom")

        results = [await dispatcher.dispatch(e, handler) for e in events]

        assert results[0] is None
        assert isinstance(results[1], HandlerError)
        assert isinstance(results[1].cause, RuntimeError)
        assert results[2] is None
        assert await store.load() == 3
        assert dispatcher.last_error is results[1]
        assert dispatcher.get_stats()["handler_errors"] == 1

    async def test_abort_policy_raises_without_checkpoint(self, events):
        """Test aborting leaves the failed event uncommitted."""
        store = MemoryResumeTokenStore("shop.orders")
        dispatcher = EventDispatcher(store, HandlerErrorPolicy.ABORT)

        def handler(event):
            if event.position == 2:
                raise RuntimeError("boom")

        await dispatcher.dispatch(events[0], handler)
        with pytest.raises(HandlerError) as exc_info:
            await dispatcher.dispatch(events[1], handler)

        assert exc_info.value.event is events[1]
        assert await store.load() == 1

    async def test_store_failure_does_not_block_delivery(self, events):
        """Test checkpoint failures are logged and delivery continues."""
        dispatcher = EventDispatcher(BrokenStore("shop.orders"))
        received = []

        for event in events:
            await dispatcher.dispatch(event, received.append)

        assert len(received) == 3
        assert dispatcher.get_stats()["store_errors"] == 3
        assert await dispatcher.checkpoint(events[0]) is False
