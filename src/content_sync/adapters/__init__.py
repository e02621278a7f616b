"""Source adapters that normalize external systems into raw content items."""

from .attachments import AttachmentProcessor
from .base import ContentSourceAdapter, HttpSourceAdapter
from .github import GitHubAdapter
from .notion import NotionAdapter
from .registry import AdapterRegistry, create_adapter_registry
from .slack import SlackAdapter
from .video import VideoAdapter

__all__ = [
    "AdapterRegistry",
    "AttachmentProcessor",
    "ContentSourceAdapter",
    "GitHubAdapter",
    "HttpSourceAdapter",
    "NotionAdapter",
    "SlackAdapter",
    "VideoAdapter",
    "create_adapter_registry",
]
