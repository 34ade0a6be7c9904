"""feedwatch - Resumable change-feed watcher for MongoDB."""

from feedwatch.core.config import Settings
from feedwatch.core.exceptions import FeedWatchError

__version__ = "0.1.0"
__all__ = ["Settings", "FeedWatchError", "__version__"]
