"""Change feed subscriptions."""

from feedwatch.feed.codec import decode_change
from feedwatch.feed.connection import FeedConnection
from feedwatch.feed.mongo import MongoFeedSource, open_mongo_client

__all__ = ["FeedConnection", "MongoFeedSource", "decode_change", "open_mongo_client"]
