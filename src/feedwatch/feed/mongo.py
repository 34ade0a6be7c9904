"""MongoDB change stream source backed by motor."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from motor.motor_asyncio import AsyncIOMotorChangeStream, AsyncIOMotorClient
from pymongo.errors import OperationFailure, PyMongoError

from feedwatch.core.config import MongoDBSettings
from feedwatch.core.exceptions import (
    AuthFailedError,
    FeedError,
    InvalidFilterError,
    StreamInterruptedError,
    TokenExpiredError,
    UnreachableError,
)
from feedwatch.core.types import ChangeEvent, FilterSpec, ResumeToken
from feedwatch.feed.codec import decode_change
from feedwatch.observability.logging import get_logger

logger = get_logger(__name__)

# Server error codes, see src/mongo/base/error_codes.yml
AUTH_ERROR_CODES = frozenset({13, 18})
HISTORY_LOST_CODES = frozenset({286})
RESUME_FAILED_CODES = frozenset({260, 280})
INVALID_FILTER_CODES = frozenset({2, 9, 14, 15, 40324, 40415})


def classify_error(
    exc: PyMongoError,
    namespace: str,
    resume_token: ResumeToken | None = None,
    opening: bool = True,
) -> FeedError:
    """
    Translate a driver error into the feed error taxonomy.

    Args:
        exc: The driver error.
        namespace: Namespace being watched.
        resume_token: Token the subscription was resumed from, if any.
        opening: Whether the error happened while opening the subscription.

    Returns:
        The matching feed error (not raised).
    """
    reason = str(exc)

    if isinstance(exc, OperationFailure):
        code = exc.code
        if code in AUTH_ERROR_CODES:
            return AuthFailedError(reason, namespace, {"code": code})
        if code in HISTORY_LOST_CODES:
            return TokenExpiredError(namespace, resume_token, reason)
        if code in RESUME_FAILED_CODES and resume_token is not None:
            return TokenExpiredError(namespace, resume_token, reason)
        if code in INVALID_FILTER_CODES and opening:
            return InvalidFilterError(reason, namespace, {"code": code})

    if opening:
        return UnreachableError(reason, namespace, {"error_type": type(exc).__name__})

    return StreamInterruptedError(reason, namespace, {"error_type": type(exc).__name__})


@asynccontextmanager
async def open_mongo_client(
    settings: MongoDBSettings,
) -> AsyncIterator[AsyncIOMotorClient[dict[str, Any]]]:
    """
    Scoped MongoDB client: pinged on entry, closed on every exit path.

    Raises:
        ConnectError: If the server cannot be reached or rejects credentials.
    """
    client: AsyncIOMotorClient[dict[str, Any]] = AsyncIOMotorClient(
        settings.uri.get_secret_value(),
        serverSelectionTimeoutMS=settings.server_selection_timeout_ms,
    )
    try:
        try:
            await client.admin.command("ping")
        except PyMongoError as e:
            raise classify_error(e, f"{settings.database}.{settings.collection}") from e

        logger.info("Connected to MongoDB")
        yield client
    finally:
        client.close()
        logger.debug("MongoDB client closed")


class MongoEventSource:
    """An open change stream, decoded into ChangeEvents."""

    def __init__(
        self,
        stream: AsyncIOMotorChangeStream[dict[str, Any]],
        database: str,
        collection: str,
        resume_token: ResumeToken | None = None,
        first_change: dict[str, Any] | None = None,
    ) -> None:
        self._stream = stream
        self._database = database
        self._collection = collection
        self._resume_token = resume_token
        self._pending = first_change
        self._closed = False

    @property
    def namespace(self) -> str:
        return f"{self._database}.{self._collection}"

    def __aiter__(self) -> MongoEventSource:
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._closed:
            raise StopAsyncIteration

        if self._pending is not None:
            change, self._pending = self._pending, None
        else:
            try:
                change = await self._stream.next()
            except PyMongoError as e:
                raise classify_error(
                    e,
                    self.namespace,
                    self._resume_token,
                    opening=False,
                ) from e

        return decode_change(change, self._database, self._collection)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stream.close()


class MongoFeedSource:
    """
    Change feed over one MongoDB collection.

    The client is owned by the caller (see ``open_mongo_client``).
    """

    def __init__(
        self,
        client: AsyncIOMotorClient[dict[str, Any]],
        database: str,
        collection: str,
        full_document: str | None = "updateLookup",
    ) -> None:
        self._client = client
        self._database = database
        self._collection = collection
        self._full_document = full_document

    @classmethod
    def from_settings(
        cls,
        client: AsyncIOMotorClient[dict[str, Any]],
        settings: MongoDBSettings,
    ) -> MongoFeedSource:
        return cls(
            client,
            database=settings.database,
            collection=settings.collection,
            full_document=settings.full_document,
        )

    @property
    def namespace(self) -> str:
        return f"{self._database}.{self._collection}"

    async def subscribe(
        self,
        filter_spec: FilterSpec,
        resume_after: ResumeToken | None = None,
    ) -> MongoEventSource:
        """Open a change stream, surfacing open errors immediately."""
        coll = self._client[self._database][self._collection]

        options: dict[str, Any] = {}
        if self._full_document:
            options["full_document"] = self._full_document
        if resume_after is not None:
            options["resume_after"] = resume_after

        stream = coll.watch(filter_spec.to_pipeline(), **options)
        try:
            # Motor opens the cursor lazily; force it so open errors surface here
            first_change = await stream.try_next()
        except PyMongoError as e:
            await stream.close()
            raise classify_error(e, self.namespace, resume_after, opening=True) from e
        except BaseException:
            # Stopped while opening; nobody else holds the cursor yet
            await stream.close()
            raise

        return MongoEventSource(
            stream,
            self._database,
            self._collection,
            resume_token=resume_after,
            first_change=first_change,
        )
