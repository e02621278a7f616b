"""Explicit adapter registry keyed by source type."""

from typing import TYPE_CHECKING, Optional

import structlog

from content_sync.core.errors import ContentAdapterNotFoundError
from content_sync.credentials import CredentialCipher
from content_sync.models import ContentSourceType

from .base import ContentSourceAdapter
from .github import GitHubAdapter
from .notion import NotionAdapter
from .slack import SlackAdapter
from .video import VideoAdapter

if TYPE_CHECKING:
    from content_sync.config import Settings
    from content_sync.db.cursors import SyncCursorStore
    from content_sync.db.hierarchy import PageHierarchyStore
    from content_sync.db.postgres import PostgresClient
    from content_sync.storage import ObjectStorage

logger = structlog.get_logger(__name__)


class AdapterRegistry:
    """Map from source type to adapter instance.

    Built once at startup and handed to the orchestrator.

    Example:
        registry = AdapterRegistry()
        registry.register(SlackAdapter(cipher))
        adapter = registry.get(ContentSourceType.SLACK)
    """

    def __init__(self) -> None:
        self._adapters: dict[ContentSourceType, ContentSourceAdapter] = {}

    def register(self, adapter: ContentSourceAdapter) -> None:
        """Register an adapter under its source type, replacing any previous one."""
        self._adapters[adapter.source_type] = adapter
        logger.info("adapter_registered", source_type=adapter.source_type.value)

    def get(
        self, source_type: ContentSourceType, source_id: Optional[str] = None
    ) -> ContentSourceAdapter:
        """Resolve the adapter for a source type.

        Raises:
            ContentAdapterNotFoundError: If none is registered
        """
        adapter = self._adapters.get(source_type)
        if adapter is None:
            raise ContentAdapterNotFoundError(source_type.value, source_id)
        return adapter

    def has(self, source_type: ContentSourceType) -> bool:
        return source_type in self._adapters

    @property
    def source_types(self) -> list[ContentSourceType]:
        return list(self._adapters)

    async def close_all(self) -> None:
        """Close every registered adapter."""
        for adapter in self._adapters.values():
            await adapter.close()


def create_adapter_registry(
    settings: "Settings",
    postgres: "PostgresClient",
    cursor_store: "SyncCursorStore",
    hierarchy_store: Optional["PageHierarchyStore"] = None,
    storage: Optional["ObjectStorage"] = None,
) -> AdapterRegistry:
    """Factory wiring the built-in adapters from settings.

    Args:
        settings: Engine settings
        postgres: Client for the internal videos table
        cursor_store: Per-channel / per-repo sync state
        hierarchy_store: Notion page hierarchy records
        storage: Object storage for Slack attachments (None disables restore)

    Returns:
        Registry with Slack, GitHub, Notion and Video adapters
    """
    cipher = CredentialCipher(settings.credential_encryption_key)
    timeout = settings.adapter_timeout_seconds
    fanout = settings.sync_fanout_concurrency

    registry = AdapterRegistry()
    registry.register(
        SlackAdapter(
            credential_cipher=cipher,
            fanout_concurrency=fanout,
            timeout_seconds=timeout,
            storage=storage,
            cursor_store=cursor_store,
        )
    )
    registry.register(
        GitHubAdapter(
            credential_cipher=cipher,
            fanout_concurrency=fanout,
            timeout_seconds=timeout,
            cursor_store=cursor_store,
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
        )
    )
    registry.register(
        NotionAdapter(
            credential_cipher=cipher,
            fanout_concurrency=fanout,
            timeout_seconds=timeout,
            hierarchy_store=hierarchy_store,
        )
    )
    registry.register(VideoAdapter(postgres))
    return registry
