"""Database and queue clients for the Content Sync engine."""

from .clusters import TopicClusterStore
from .cursors import SOURCE_CURSOR_KEY, SyncCursorStore
from .hierarchy import PageHierarchyStore
from .postgres import PostgresClient
from .redis import RedisClient
from .repository import ContentRepository

__all__ = [
    "ContentRepository",
    "PageHierarchyStore",
    "PostgresClient",
    "RedisClient",
    "SOURCE_CURSOR_KEY",
    "SyncCursorStore",
    "TopicClusterStore",
]
