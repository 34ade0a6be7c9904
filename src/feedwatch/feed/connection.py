"""Lifecycle of a single change feed subscription."""

from __future__ import annotations

from typing import Any, AsyncIterator

from feedwatch.core.exceptions import WatcherStateError
from feedwatch.core.types import ChangeEvent, EventSource, FeedSource, FilterSpec, ResumeToken
from feedwatch.observability.logging import get_logger

logger = get_logger(__name__)


class FeedConnection:
    """
    Owns at most one open subscription to a feed source.

    Opening while a subscription is live tears the old one down first, so
    two subscriptions never deliver concurrently. The filter is fixed per
    subscription; a new filter needs a new ``open``.
    """

    def __init__(self, source: FeedSource) -> None:
        self._feed = source
        self._source: EventSource | None = None
        self._filter: FilterSpec | None = None
        self._open_count = 0

    @property
    def namespace(self) -> str:
        return self._feed.namespace

    @property
    def is_open(self) -> bool:
        return self._source is not None

    @property
    def filter_spec(self) -> FilterSpec | None:
        """Filter of the current subscription."""
        return self._filter

    @property
    def open_count(self) -> int:
        """Number of successful opens over the connection's lifetime."""
        return self._open_count

    async def open(
        self,
        filter_spec: FilterSpec,
        resume_after: ResumeToken | None = None,
    ) -> EventSource:
        """
        Subscribe to the feed.

        Args:
            filter_spec: Server-side filter for this subscription.
            resume_after: Position to resume after, or None to start from now.

        Returns:
            The open event source.

        Raises:
            ConnectError: If the subscription cannot be opened.
        """
        await self.close()

        logger.debug(
            "Opening change feed",
            namespace=self.namespace,
            resuming=resume_after is not None,
        )

        self._source = await self._feed.subscribe(filter_spec, resume_after)
        self._filter = filter_spec
        self._open_count += 1

        logger.info(
            "Change feed opened",
            namespace=self.namespace,
            resume_after=resume_after,
        )
        return self._source

    async def events(self) -> AsyncIterator[ChangeEvent]:
        """Iterate the open subscription until it ends or fails."""
        source = self._source
        if source is None:
            raise WatcherStateError("stream events", "closed")

        async for event in source:
            yield event

    async def close(self) -> None:
        """Close the subscription. Safe to call repeatedly and from any state."""
        source, self._source = self._source, None
        if source is None:
            return

        try:
            await source.close()
        except Exception as e:
            logger.warning(
                "Error closing change feed",
                namespace=self.namespace,
                error=str(e),
            )
        else:
            logger.debug("Change feed closed", namespace=self.namespace)

    async def __aenter__(self) -> FeedConnection:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
