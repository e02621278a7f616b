"""Core utilities for the Content Sync engine."""

from .errors import (
    AppError,
    ContentAdapterNotFoundError,
    ContentItemNotFoundError,
    ContentProcessingError,
    ContentSourceAuthError,
    ContentSourceNotFoundError,
    ContentSourceSyncError,
    DatabaseError,
    ErrorCode,
    TopicClusterNotFoundError,
)

__all__ = [
    "AppError",
    "ContentAdapterNotFoundError",
    "ContentItemNotFoundError",
    "ContentProcessingError",
    "ContentSourceAuthError",
    "ContentSourceNotFoundError",
    "ContentSourceSyncError",
    "DatabaseError",
    "ErrorCode",
    "TopicClusterNotFoundError",
]
