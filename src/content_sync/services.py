"""Explicit wiring of clients, stores and services for entrypoints.

Workers and the webhook app each build one ``Services`` at startup and
close it on shutdown; nothing here is cached at module level.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from openai import AsyncOpenAI

from content_sync.adapters.registry import AdapterRegistry, create_adapter_registry
from content_sync.config import Settings
from content_sync.credentials import CredentialCipher
from content_sync.db import (
    ContentRepository,
    PageHierarchyStore,
    PostgresClient,
    RedisClient,
    SyncCursorStore,
    TopicClusterStore,
)
from content_sync.enrichment import ContentEnricher, EmbeddingGenerator, SummaryGenerator
from content_sync.knowledge import RelationshipDetector, TopicClusterService
from content_sync.processor import SyncOrchestrator
from content_sync.storage import ObjectStorage

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything a worker or request handler needs."""

    settings: Settings
    postgres: PostgresClient
    redis: RedisClient
    repository: ContentRepository
    cursor_store: SyncCursorStore
    cluster_store: TopicClusterStore
    registry: AdapterRegistry
    orchestrator: SyncOrchestrator
    enricher: ContentEnricher
    detector: RelationshipDetector
    clusters: TopicClusterService
    openai_client: Optional[AsyncOpenAI] = None

    async def close(self) -> None:
        await self.registry.close_all()
        if self.openai_client is not None:
            await self.openai_client.close()
        await self.redis.disconnect()
        await self.postgres.disconnect()
        logger.info("services_closed")


def create_storage(settings: Settings) -> Optional[ObjectStorage]:
    """Object storage for attachments, or None when no bucket is configured."""
    if not settings.storage_configured:
        return None
    return ObjectStorage(
        bucket=settings.storage_bucket,
        region_name=settings.storage_region,
        endpoint_url=settings.storage_endpoint_url,
        aws_access_key_id=settings.storage_access_key_id,
        aws_secret_access_key=settings.storage_secret_access_key,
    )


def create_enricher(
    settings: Settings, repository: ContentRepository
) -> tuple[ContentEnricher, Optional[AsyncOpenAI]]:
    """Enricher with OpenAI generators when an API key is configured."""
    if not settings.openai_api_key:
        logger.warning("openai_not_configured", hint="Items get search text only")
        return ContentEnricher(repository), None
    client = AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
    enricher = ContentEnricher(
        repository,
        embeddings=EmbeddingGenerator(client, settings.embedding_model),
        summarizer=SummaryGenerator(client, settings.summary_model),
    )
    return enricher, client


async def build_services(settings: Settings, create_tables: bool = False) -> Services:
    """
    Connect to Postgres and Redis and wire every component.

    Args:
        settings: Engine settings
        create_tables: Run the idempotent DDL after connecting

    Returns:
        Connected Services; call ``close()`` when done
    """
    postgres = PostgresClient(
        settings.database_url,
        min_size=settings.db_pool_min,
        max_size=settings.db_pool_max,
    )
    await postgres.connect()
    if create_tables:
        await postgres.create_tables()

    redis = RedisClient(settings.redis_url)
    await redis.connect()

    repository = ContentRepository(postgres)
    cursor_store = SyncCursorStore(postgres)
    cluster_store = TopicClusterStore(postgres)
    registry = create_adapter_registry(
        settings,
        postgres,
        cursor_store,
        hierarchy_store=PageHierarchyStore(postgres),
        storage=create_storage(settings),
    )
    orchestrator = SyncOrchestrator(
        registry,
        repository,
        cursor_store,
        redis=redis,
        credential_cipher=CredentialCipher(settings.credential_encryption_key),
        max_pages=settings.sync_max_pages,
        max_seconds=settings.sync_max_seconds,
        call_timeout_seconds=settings.adapter_timeout_seconds,
        max_concurrent_sources=settings.sync_max_concurrent_sources,
    )
    enricher, openai_client = create_enricher(settings, repository)

    logger.info(
        "services_initialized",
        adapters=[t.value for t in registry.source_types],
        ai_enrichment=openai_client is not None,
        storage=settings.storage_configured,
    )
    return Services(
        settings=settings,
        postgres=postgres,
        redis=redis,
        repository=repository,
        cursor_store=cursor_store,
        cluster_store=cluster_store,
        registry=registry,
        orchestrator=orchestrator,
        enricher=enricher,
        detector=RelationshipDetector(
            repository, similarity_threshold=settings.similarity_threshold
        ),
        clusters=TopicClusterService(
            cluster_store, repository, threshold=settings.cluster_threshold
        ),
        openai_client=openai_client,
    )
