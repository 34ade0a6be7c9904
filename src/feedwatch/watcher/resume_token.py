"""Resume token persistence for change stream crash recovery."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import ASCENDING, IndexModel
from pymongo.errors import ConnectionFailure, PyMongoError

from feedwatch.core.config import CheckpointBackend, Settings
from feedwatch.core.exceptions import ConfigurationError, StoreError
from feedwatch.core.types import ResumeToken
from feedwatch.observability.logging import get_logger
from feedwatch.resilience.retry import create_tenacity_retry

logger = get_logger(__name__)


class ResumeTokenStore(ABC):
    """
    Records the last successfully processed position of one feed.

    Only the single dispatch loop writes, so implementations need no locking.
    """

    def __init__(self, namespace: str) -> None:
        self.namespace = namespace

    @abstractmethod
    async def load(self) -> ResumeToken | None:
        """Return the last saved token, or None if nothing was saved."""

    @abstractmethod
    async def save(self, token: ResumeToken) -> None:
        """
        Persist a token.

        Raises:
            StoreError: If the token could not be persisted.
        """

    @abstractmethod
    async def clear(self) -> None:
        """Forget the saved token."""

    async def flush(self) -> None:
        """Persist anything buffered. No-op for unbuffered stores."""

    async def close(self) -> None:
        await self.flush()


class MemoryResumeTokenStore(ResumeTokenStore):
    """Process-local token store; lost on restart."""

    def __init__(self, namespace: str = "", token: ResumeToken | None = None) -> None:
        super().__init__(namespace)
        self._token = token
        self.save_count = 0

    async def load(self) -> ResumeToken | None:
        return self._token

    async def save(self, token: ResumeToken) -> None:
        self._token = token
        self.save_count += 1

    async def clear(self) -> None:
        self._token = None


class MongoResumeTokenStore(ResumeTokenStore):
    """
    Persists resume tokens in a MongoDB collection.

    One document per watched namespace (database.collection). Transient
    connection failures are retried before a save is reported as failed.
    """

    def __init__(
        self,
        client: AsyncIOMotorClient[dict[str, Any]],
        database: str,
        collection: str,
        tokens_database: str = "feedwatch",
        tokens_collection: str = "resume_tokens",
        save_attempts: int = 3,
    ) -> None:
        super().__init__(f"{database}.{collection}")
        self._client = client
        self._watched_database = database
        self._watched_collection = collection
        self._database_name = tokens_database
        self._collection_name = tokens_collection
        self._save_attempts = save_attempts
        self._collection: AsyncIOMotorCollection[dict[str, Any]] | None = None

    @property
    def collection(self) -> AsyncIOMotorCollection[dict[str, Any]]:
        """Get collection instance."""
        if self._collection is None:
            self._collection = self._client[self._database_name][self._collection_name]
        return self._collection

    @property
    def _key(self) -> dict[str, str]:
        return {
            "database": self._watched_database,
            "collection": self._watched_collection,
        }

    async def initialize(self) -> None:
        """Initialize indexes for the collection."""
        indexes = [
            IndexModel(
                [("database", ASCENDING), ("collection", ASCENDING)],
                unique=True,
            ),
            IndexModel([("updated_at", ASCENDING)]),
        ]
        try:
            await self.collection.create_indexes(indexes)
        except PyMongoError as e:
            raise StoreError("Failed to initialize resume token store", self.namespace, e) from e
        logger.debug("Resume token store initialized", namespace=self.namespace)

    async def save(self, token: ResumeToken) -> None:
        now = datetime.now(timezone.utc)
        try:
            async for attempt in create_tenacity_retry(
                max_attempts=self._save_attempts,
                retryable_exceptions=(ConnectionFailure,),
            ):
                with attempt:
                    await self.collection.update_one(
                        self._key,
                        {
                            "$set": {"token": token, "updated_at": now},
                            "$setOnInsert": {**self._key, "created_at": now},
                        },
                        upsert=True,
                    )
        except PyMongoError as e:
            raise StoreError("Failed to save resume token", self.namespace, e) from e

    async def load(self) -> ResumeToken | None:
        try:
            doc = await self.collection.find_one(self._key)
        except PyMongoError as e:
            raise StoreError("Failed to load resume token", self.namespace, e) from e

        if doc:
            return doc.get("token")
        return None

    async def clear(self) -> None:
        try:
            result = await self.collection.delete_one(self._key)
        except PyMongoError as e:
            raise StoreError("Failed to clear resume token", self.namespace, e) from e
        logger.info(
            "Resume token cleared",
            namespace=self.namespace,
            deleted=result.deleted_count > 0,
        )

    async def describe(self) -> dict[str, Any] | None:
        """
        Get the stored token with its metadata.

        Returns:
            Token document or None if nothing is stored.
        """
        try:
            doc = await self.collection.find_one(self._key)
        except PyMongoError as e:
            raise StoreError("Failed to load resume token", self.namespace, e) from e

        if not doc:
            return None

        updated_at = doc.get("updated_at")
        age_seconds = None
        if updated_at is not None:
            if updated_at.tzinfo is None:
                updated_at = updated_at.replace(tzinfo=timezone.utc)
            age_seconds = (datetime.now(timezone.utc) - updated_at).total_seconds()

        return {
            "namespace": self.namespace,
            "token": doc.get("token"),
            "updated_at": updated_at,
            "age_seconds": age_seconds,
        }


class BatchingResumeTokenStore(ResumeTokenStore):
    """
    Coalesces saves in front of another store.

    Only the latest pending token is written, once ``flush_every`` saves
    have accumulated or ``flush_interval`` seconds have passed since the
    last write. ``load`` prefers the pending token so a reconnect never
    resumes from an older position than the one already delivered.
    """

    def __init__(
        self,
        inner: ResumeTokenStore,
        flush_every: int = 1,
        flush_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if flush_every < 1:
            raise ConfigurationError("flush_every must be at least 1", {"flush_every": flush_every})
        super().__init__(inner.namespace)
        self._inner = inner
        self._flush_every = flush_every
        self._flush_interval = flush_interval
        self._clock = clock
        self._pending: ResumeToken | None = None
        self._pending_count = 0
        self._last_flush = clock()

    @property
    def pending(self) -> ResumeToken | None:
        return self._pending

    async def load(self) -> ResumeToken | None:
        if self._pending is not None:
            return self._pending
        return await self._inner.load()

    async def save(self, token: ResumeToken) -> None:
        self._pending = token
        self._pending_count += 1
        if self._should_flush():
            await self.flush()

    def _should_flush(self) -> bool:
        if self._pending_count >= self._flush_every:
            return True
        if self._flush_interval > 0:
            return self._clock() - self._last_flush >= self._flush_interval
        return False

    async def flush(self) -> None:
        if self._pending is None:
            return

        # On StoreError the token stays pending and the next flush retries it
        await self._inner.save(self._pending)
        self._pending = None
        self._pending_count = 0
        self._last_flush = self._clock()

    async def clear(self) -> None:
        self._pending = None
        self._pending_count = 0
        await self._inner.clear()

    async def close(self) -> None:
        try:
            await self.flush()
        finally:
            await self._inner.close()


async def create_token_store(
    settings: Settings,
    client: AsyncIOMotorClient[dict[str, Any]] | None = None,
) -> ResumeTokenStore:
    """
    Build the configured token store for the watched namespace.

    Raises:
        ConfigurationError: If the MongoDB backend is selected without a client.
    """
    mongodb = settings.mongodb
    checkpoint = settings.checkpoint
    namespace = f"{mongodb.database}.{mongodb.collection}"

    store: ResumeTokenStore
    if checkpoint.backend is CheckpointBackend.MONGODB:
        if client is None:
            raise ConfigurationError("The mongodb checkpoint backend needs a client")
        mongo_store = MongoResumeTokenStore(
            client,
            database=mongodb.database,
            collection=mongodb.collection,
            tokens_database=mongodb.resume_tokens_database,
            tokens_collection=mongodb.resume_tokens_collection,
        )
        await mongo_store.initialize()
        store = mongo_store
    else:
        store = MemoryResumeTokenStore(namespace)

    if checkpoint.flush_every > 1 or checkpoint.flush_interval > 0:
        store = BatchingResumeTokenStore(
            store,
            flush_every=checkpoint.flush_every,
            flush_interval=checkpoint.flush_interval,
        )

    logger.debug(
        "Resume token store ready",
        namespace=namespace,
        backend=checkpoint.backend.value,
        batched=isinstance(store, BatchingResumeTokenStore),
    )
    return store
