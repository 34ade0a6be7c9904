"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio


# Set test environment
os.environ.setdefault("FEEDWATCH_ENVIRONMENT", "test")
os.environ.setdefault("FEEDWATCH_MONGODB__URI", "mongodb://localhost:27017/feedwatch_test")
os.environ.setdefault("FEEDWATCH_MONGODB__SERVER_SELECTION_TIMEOUT_MS", "500")


def make_change(
    seq: int,
    operation: str = "insert",
    database: str = "shop",
    collection: str = "orders",
    document: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Raw change document whose resume token is the integer ``seq``."""
    if document is None:
        document = {
            "_id": f"doc{seq}",
            "seq": seq,
            "status": "new" if seq % 2 else "paid",
            "address": {"country": "PT" if seq % 3 else "ES"},
        }
    change: dict[str, Any] = {
        "_id": seq,
        "operationType": operation,
        "ns": {"db": database, "coll": collection},
        "documentKey": {"_id": document.get("_id", f"doc{seq}")},
    }
    if operation != "delete":
        change["fullDocument"] = document
    return change


class FakeEventSource:
    """Subscription over a slice of a FakeFeed's history."""

    def __init__(
        self,
        feed: FakeFeed,
        changes: list[dict[str, Any]],
        fail_after: int | None,
    ) -> None:
        self._feed = feed
        self._changes = changes
        self._fail_after = fail_after
        self._index = 0
        self.closed = False
        self.close_count = 0

    def __aiter__(self) -> FakeEventSource:
        return self

    async def __anext__(self):
        from feedwatch.core.exceptions import StreamInterruptedError
        from feedwatch.feed.codec import decode_change

        if self.closed:
            raise StopAsyncIteration

        await asyncio.sleep(0)

        if self._fail_after is not None and self._index >= self._fail_after:
            raise StreamInterruptedError("connection reset by peer", self._feed.namespace)

        if self._index >= len(self._changes):
            if self._feed.hold_open:
                await asyncio.Event().wait()
            raise StopAsyncIteration

        change = self._changes[self._index]
        self._index += 1
        self._feed.delivered.append(change["_id"])
        return decode_change(change)

    async def close(self) -> None:
        self.closed = True
        self.close_count += 1


class FakeFeed:
    """
    Scripted in-memory change feed with integer resume tokens.

    - ``open_errors``: consumed one per subscribe; None means succeed
    - ``disconnects``: consumed one per successful subscribe; deliver that
      many events then fail mid-stream (None means never fail)
    - ``retention_floor``: resuming after a token below this raises TokenExpiredError
    - ``now``: subscriptions without a token start after this position
    - ``hold_open``: block at the end of history instead of ending the stream
    """

    def __init__(
        self,
        changes: int | list[dict[str, Any]] = 10,
        namespace: str = "shop.orders",
        hold_open: bool = True,
    ) -> None:
        if isinstance(changes, int):
            changes = [make_change(i) for i in range(1, changes + 1)]
        self.changes = changes
        self._namespace = namespace
        self.hold_open = hold_open

        self.open_errors: list[BaseException | None] = []
        self.disconnects: list[int | None] = []
        self.retention_floor = 0
        self.now = 0

        self.subscriptions: list[Any] = []
        self.filters: list[Any] = []
        self.sources: list[FakeEventSource] = []
        self.delivered: list[Any] = []

    @property
    def namespace(self) -> str:
        return self._namespace

    async def subscribe(self, filter_spec, resume_after=None) -> FakeEventSource:
        from feedwatch.core.exceptions import TokenExpiredError

        self.subscriptions.append(resume_after)
        self.filters.append(filter_spec)
        await asyncio.sleep(0)

        if self.open_errors:
            error = self.open_errors.pop(0)
            if error is not None:
                raise error

        if resume_after is not None and resume_after < self.retention_floor:
            raise TokenExpiredError(self.namespace, resume_after, "resume point is outside the oplog")

        start = resume_after if resume_after is not None else self.now
        changes = [
            c for c in self.changes
            if c["_id"] > start and filter_spec.matches(c)
        ]
        fail_after = self.disconnects.pop(0) if self.disconnects else None

        source = FakeEventSource(self, changes, fail_after)
        self.sources.append(source)
        return source


@pytest.fixture
def feed_factory():
    """Factory for scripted change feeds."""
    return FakeFeed


@pytest.fixture
def feed() -> FakeFeed:
    """Ten-event feed that stays open after its history."""
    return FakeFeed(10)


@pytest.fixture
def change_factory():
    """Factory for raw change documents."""
    return make_change


@pytest.fixture
def sample_change() -> dict[str, Any]:
    """Sample raw MongoDB update change document."""
    return {
        "_id": {"_data": "8263A1B2C3000000012B022C0100296E5A1004"},
        "operationType": "update",
        "clusterTime": 1700000000,
        "ns": {"db": "sample_airbnb", "coll": "listingsAndReviews"},
        "documentKey": {"_id": "10006546"},
        "updateDescription": {
            "updatedFields": {"price": 80},
            "removedFields": [],
        },
        "fullDocument": {
            "_id": "10006546",
            "name": "Ribeira Charming Duplex",
            "price": 80,
            "address": {"country": "Portugal", "market": "Porto"},
        },
    }


@pytest.fixture
def fast_backoff():
    """Backoff policy with millisecond delays and no jitter."""
    from feedwatch.resilience.retry import BackoffPolicy

    return BackoffPolicy(base_delay=0.001, max_delay=0.01, max_attempts=3, jitter=0.0)


@pytest_asyncio.fixture
async def mongo_client() -> AsyncGenerator:
    """Create a MongoDB client for testing, skipping when no server answers."""
    from motor.motor_asyncio import AsyncIOMotorClient
    from pymongo.errors import PyMongoError

    from feedwatch.core.config import get_settings

    settings = get_settings()
    client = AsyncIOMotorClient(
        settings.mongodb.uri.get_secret_value(),
        serverSelectionTimeoutMS=settings.mongodb.server_selection_timeout_ms,
    )
    try:
        await client.admin.command("ping")
    except PyMongoError:
        client.close()
        pytest.skip("MongoDB is not reachable")

    yield client

    client.close()


@pytest_asyncio.fixture
async def mongo_token_store(mongo_client) -> AsyncGenerator:
    """Create a resume token store on a throwaway collection."""
    from feedwatch.watcher.resume_token import MongoResumeTokenStore

    store = MongoResumeTokenStore(
        mongo_client,
        database="shop",
        collection="orders",
        tokens_database="feedwatch_test",
        tokens_collection="resume_tokens_test",
    )
    await store.initialize()

    yield store

    # Cleanup
    await mongo_client["feedwatch_test"]["resume_tokens_test"].drop()
