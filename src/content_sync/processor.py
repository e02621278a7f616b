"""Sync orchestrator: drives adapters, upserts items and advances cursors.

One run per source walks the adapter's pages from the stored cursor:

    idle -> syncing -> idle      (completed or budget exhausted)
                    -> error     (auth failure, database failure, retries spent)

The cursor is only advanced after every item of a page has been written,
so a crash mid-page replays that page on the next run and the
(source_id, external_id) upsert absorbs the duplicates.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from uuid import UUID

import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from content_sync.adapters.base import ContentSourceAdapter
from content_sync.adapters.registry import AdapterRegistry
from content_sync.core.errors import (
    AppError,
    ContentSourceAuthError,
    ContentSourceSyncError,
    DatabaseError,
)
from content_sync.credentials import CredentialCipher
from content_sync.db.cursors import SOURCE_CURSOR_KEY, SyncCursorStore
from content_sync.db.redis import ENRICH_JOBS_STREAM, SYNC_JOBS_STREAM, RedisClient
from content_sync.db.repository import ContentRepository
from content_sync.models import (
    ContentItem,
    ContentSource,
    ContentSourceFilters,
    FetchOptions,
    FetchResult,
    RawContentItem,
    SourceSyncStatus,
    SyncProgress,
    SyncRunStatus,
)

logger = structlog.get_logger(__name__)

DEFAULT_MAX_PAGES = 20
DEFAULT_MAX_SECONDS = 300.0
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_CONCURRENT_SOURCES = 3
FETCH_MAX_ATTEMPTS = 3


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ContentSourceSyncError) and error.retryable


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _progress_snapshot(progress: SyncProgress) -> dict[str, Any]:
    return {
        "status": progress.status.value,
        "items_processed": progress.items_processed,
        "items_failed": progress.items_failed,
        "items_total": progress.items_total,
        "pages": progress.pages,
        "errors": progress.errors[-20:],
        "started_at": progress.started_at.isoformat() if progress.started_at else None,
        "completed_at": progress.completed_at.isoformat() if progress.completed_at else None,
    }


def _progress_from_snapshot(source_id: str, snapshot: dict[str, Any]) -> SyncProgress:
    return SyncProgress(
        source_id=source_id,
        status=SyncRunStatus(snapshot.get("status", SyncRunStatus.IDLE.value)),
        items_processed=snapshot.get("items_processed", 0),
        items_failed=snapshot.get("items_failed", 0),
        items_total=snapshot.get("items_total", 0),
        pages=snapshot.get("pages", 0),
        errors=list(snapshot.get("errors") or []),
        started_at=_parse_time(snapshot.get("started_at")),
        completed_at=_parse_time(snapshot.get("completed_at")),
    )


class SyncOrchestrator:
    """Runs incremental syncs of content sources.

    All collaborators are injected. Progress of runs started by this
    instance is kept in memory; the last run of any source is also
    written to its ``_source`` cursor record so other processes can read
    it.

    Example:
        orchestrator = SyncOrchestrator(registry, repository, cursor_store, redis)
        progress = await orchestrator.sync_source(source_id)
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        repository: ContentRepository,
        cursor_store: SyncCursorStore,
        redis: Optional[RedisClient] = None,
        credential_cipher: Optional[CredentialCipher] = None,
        max_pages: int = DEFAULT_MAX_PAGES,
        max_seconds: float = DEFAULT_MAX_SECONDS,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        max_concurrent_sources: int = DEFAULT_MAX_CONCURRENT_SOURCES,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            registry: Adapters keyed by source type
            repository: Content repository
            cursor_store: Durable sync positions
            redis: Job queue for enrichment and continuations (None disables)
            credential_cipher: Re-encrypts refreshed credentials
            max_pages: Page budget per run
            max_seconds: Wall-clock budget per run
            call_timeout_seconds: Timeout of a single ``fetch_content`` call
            max_concurrent_sources: Sources synced at once by ``sync_all``
        """
        self._registry = registry
        self._repository = repository
        self._cursors = cursor_store
        self._redis = redis
        self._cipher = credential_cipher
        self._max_pages = max_pages
        self._max_seconds = max_seconds
        self._call_timeout = call_timeout_seconds
        self._semaphore = asyncio.Semaphore(max_concurrent_sources)
        self._progress: dict[str, SyncProgress] = {}

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def sync_source(
        self,
        source_id: UUID,
        full: bool = False,
        until: Optional[datetime] = None,
    ) -> SyncProgress:
        """
        Run one bounded sync of a source.

        Args:
            source_id: Source to sync
            full: Ignore the stored cursor and the last sync time
            until: Upper bound passed through to the adapter

        Returns:
            SyncProgress of the run

        Raises:
            ContentSourceNotFoundError: If the source does not exist
            ContentAdapterNotFoundError: If no adapter handles the source type
        """
        source = await self._repository.get_source(source_id)
        progress = SyncProgress(source_id=str(source.id))
        if source.sync_status == SourceSyncStatus.DISABLED:
            logger.info("sync_skipped_disabled", source_id=str(source.id))
            return progress

        adapter = self._registry.get(source.type, str(source.id))
        log = logger.bind(source_id=str(source.id), source_type=source.type.value)

        progress.mark_started()
        self._progress[progress.source_id] = progress
        await self._repository.update_source(
            source.id,
            {"sync_status": SourceSyncStatus.SYNCING, "error_message": None},
        )
        log.info("sync_started", full=full)

        try:
            source = await self._authenticate(adapter, source)
            budget_exhausted = await self._run_pages(adapter, source, progress, full, until)
        except AppError as e:
            await self._fail(source, progress, e.message)
            log.error(
                "sync_failed",
                error=e.message,
                error_code=e.code.value,
                items_processed=progress.items_processed,
            )
            return progress
        except Exception as e:
            await self._fail(source, progress, f"Unexpected error: {e}")
            log.error("sync_failed_unexpected", error=str(e))
            raise

        progress.mark_completed(budget_exhausted=budget_exhausted)
        updates: dict[str, Any] = {
            "sync_status": SourceSyncStatus.IDLE,
            "error_message": None,
        }
        if not budget_exhausted:
            updates["last_sync_at"] = progress.started_at
        await self._repository.update_source(source.id, updates)
        await self._save_run(source, progress)

        if budget_exhausted:
            await self._publish(
                SYNC_JOBS_STREAM,
                {
                    "source_id": source.id,
                    "reason": SyncRunStatus.BUDGET_EXHAUSTED,
                },
            )

        log.info(
            "sync_completed",
            status=progress.status.value,
            pages=progress.pages,
            items_processed=progress.items_processed,
            items_failed=progress.items_failed,
            duration_seconds=round(progress.duration_seconds, 2),
        )
        return progress

    async def sync_all(
        self, sources: Optional[Sequence[ContentSource]] = None
    ) -> dict[str, SyncProgress]:
        """
        Sync several sources concurrently.

        Args:
            sources: Sources to sync; defaults to every non-disabled source

        Returns:
            Dict mapping source ids to their run progress
        """
        if sources is None:
            sources = [
                s for s in await self._repository.list_sources(ContentSourceFilters())
                if s.sync_status != SourceSyncStatus.DISABLED
            ]
        if not sources:
            logger.info("sync_all_no_sources")
            return {}

        logger.info("sync_all_started", source_count=len(sources))

        async def run(source: ContentSource) -> SyncProgress:
            async with self._semaphore:
                return await self.sync_source(source.id)

        outcomes = await asyncio.gather(*(run(s) for s in sources), return_exceptions=True)

        results: dict[str, SyncProgress] = {}
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                failed = SyncProgress(source_id=str(source.id))
                failed.mark_failed(str(outcome))
                results[str(source.id)] = failed
            else:
                results[str(source.id)] = outcome

        logger.info(
            "sync_all_completed",
            completed=sum(
                1 for p in results.values()
                if p.status in (SyncRunStatus.COMPLETED, SyncRunStatus.BUDGET_EXHAUSTED)
            ),
            failed=sum(1 for p in results.values() if p.status == SyncRunStatus.FAILED),
        )
        return results

    async def get_sync_progress(self, source_id: UUID) -> Optional[SyncProgress]:
        """Progress of the current or last run of a source, if any."""
        progress = self._progress.get(str(source_id))
        if progress is not None:
            return progress
        record = await self._cursors.get(source_id, SOURCE_CURSOR_KEY)
        if record is None or not record.state.get("last_run"):
            return None
        return _progress_from_snapshot(str(source_id), record.state["last_run"])

    # ------------------------------------------------------------------
    # Single-item ingestion
    # ------------------------------------------------------------------

    async def ingest_item(self, source: ContentSource, raw: RawContentItem) -> ContentItem:
        """Upsert one item outside a sync run and queue it for enrichment.

        Raises:
            DatabaseError: If the upsert fails
        """
        item = await self._repository.upsert_raw_item(source.organization_id, source.id, raw)
        await self._record_links(source, item, raw)
        await self._enqueue_enrichment(source, [item.id])
        return item

    async def ingest_event(
        self, source: ContentSource, event: dict[str, Any]
    ) -> list[ContentItem]:
        """Translate a verified webhook event through the source's adapter and ingest it."""
        adapter = self._registry.get(source.type, str(source.id))
        raw_items = await adapter.handle_event(source, event)
        items = []
        for raw in raw_items:
            items.append(await self.ingest_item(source, raw))
        logger.info(
            "webhook_event_ingested",
            source_id=str(source.id),
            item_count=len(items),
        )
        return items

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _current_credentials(self, source: ContentSource) -> dict[str, Any]:
        if self._cipher is None:
            return dict(source.credentials or {})
        return self._cipher.decrypt(source.credentials)

    async def _authenticate(
        self, adapter: ContentSourceAdapter, source: ContentSource
    ) -> ContentSource:
        """Refresh credentials if the scheme supports it, then validate them.

        Raises:
            ContentSourceAuthError: If refresh is rejected or validation fails
        """
        try:
            refreshed = await adapter.refresh_auth(source)
        except ContentSourceSyncError as e:
            logger.warning(
                "auth_refresh_failed",
                source_id=str(source.id),
                error=e.message,
            )
        else:
            if refreshed != self._current_credentials(source):
                stored = self._cipher.encrypt(refreshed) if self._cipher else refreshed
                source = await self._repository.update_source(
                    source.id, {"credentials": stored}
                )
                logger.info("credentials_refreshed", source_id=str(source.id))

        if not await adapter.validate_credentials(source):
            raise ContentSourceAuthError(
                str(source.id), "validate_credentials", "Invalid credentials"
            )
        return source

    async def _run_pages(
        self,
        adapter: ContentSourceAdapter,
        source: ContentSource,
        progress: SyncProgress,
        full: bool,
        until: Optional[datetime],
    ) -> bool:
        """Walk pages until the adapter is drained or a budget runs out.

        Returns:
            True if the run stopped on a budget with pages left
        """
        record = None if full else await self._cursors.get(source.id, SOURCE_CURSOR_KEY)
        cursor = record.cursor if record else None
        if cursor:
            # Continuing a walk keeps the window it started with.
            since = _parse_time(record.state.get("since"))
        else:
            since = None if full else source.last_sync_at

        filters = dict((source.config or {}).get("filters") or {})
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._max_seconds

        while True:
            options = FetchOptions(cursor=cursor, since=since, until=until, filters=filters)
            result = await self._fetch_page(adapter, source, options)
            progress.items_total += len(result.items)

            item_ids = await self._upsert_page(source, result.items, progress)
            next_cursor = result.next_cursor if result.has_more else None
            await self._cursors.upsert(
                source.id,
                SOURCE_CURSOR_KEY,
                {
                    "cursor": next_cursor,
                    "since": since.isoformat() if since else None,
                    "last_page_at": datetime.now(timezone.utc).isoformat(),
                },
            )
            progress.pages += 1
            await self._enqueue_enrichment(source, item_ids)

            if not next_cursor:
                if result.has_more:
                    logger.warning("sync_missing_next_cursor", source_id=str(source.id))
                return False
            cursor = next_cursor
            progress.next_cursor = cursor
            if progress.pages >= self._max_pages or loop.time() >= deadline:
                logger.info(
                    "sync_budget_exhausted",
                    source_id=str(source.id),
                    pages=progress.pages,
                )
                return True

    @retry(
        stop=stop_after_attempt(FETCH_MAX_ATTEMPTS),
        wait=wait_exponential_jitter(initial=1, max=30),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "fetch_retry",
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
    )
    async def _fetch_page(
        self,
        adapter: ContentSourceAdapter,
        source: ContentSource,
        options: FetchOptions,
    ) -> FetchResult:
        """Fetch one page under the per-call timeout, retrying transient failures."""
        try:
            return await asyncio.wait_for(
                adapter.fetch_content(source, options), timeout=self._call_timeout
            )
        except asyncio.TimeoutError as e:
            raise ContentSourceSyncError(
                str(source.id),
                "fetch_content",
                f"timed out after {self._call_timeout}s",
            ) from e

    async def _upsert_page(
        self,
        source: ContentSource,
        items: Sequence[RawContentItem],
        progress: SyncProgress,
    ) -> list[UUID]:
        """Upsert a page of items, skipping items that fail on their own.

        Raises:
            DatabaseError: On a store failure, which aborts the run
        """
        item_ids: list[UUID] = []
        for raw in items:
            try:
                item = await self._repository.upsert_raw_item(
                    source.organization_id, source.id, raw
                )
            except DatabaseError:
                raise
            except (AppError, TypeError, ValueError) as e:
                progress.add_error(raw.external_id, str(e))
                logger.warning(
                    "sync_item_failed",
                    source_id=str(source.id),
                    external_id=raw.external_id,
                    error=str(e),
                )
                continue
            progress.items_processed += 1
            progress.item_ids.append(str(item.id))
            item_ids.append(item.id)
            await self._record_links(source, item, raw)
        return item_ids

    async def _record_links(
        self, source: ContentSource, item: ContentItem, raw: RawContentItem
    ) -> None:
        """Store participants and explicit references of an item.

        Best-effort: failures are logged and never fail the sync.
        """
        try:
            if raw.participants:
                await self._repository.create_participants_batch(
                    item.id, raw.participants, replace=True
                )
            if not raw.related_external_ids:
                return
            resolved = await self._repository.resolve_external_ids(
                source.id, [ref.external_id for ref in raw.related_external_ids]
            )
            for ref in raw.related_external_ids:
                target_id = resolved.get(ref.external_id)
                if target_id is None or target_id == item.id:
                    continue
                await self._repository.create_relationship(
                    item.id,
                    target_id,
                    ref.relationship_type,
                    confidence=1.0,
                    metadata={"strategy": "explicit", "detected_by": "adapter"},
                )
        except AppError as e:
            logger.warning(
                "sync_links_failed",
                source_id=str(source.id),
                item_id=str(item.id),
                error=e.message,
            )

    async def _enqueue_enrichment(self, source: ContentSource, item_ids: Sequence[UUID]) -> None:
        if not item_ids:
            return
        await self._publish(
            ENRICH_JOBS_STREAM,
            {
                "source_id": source.id,
                "organization_id": source.organization_id,
                "item_ids": [str(i) for i in item_ids],
            },
        )

    async def _publish(self, stream: str, job_data: dict[str, Any]) -> None:
        """Publish a follow-up job; queue outages never fail a sync."""
        if self._redis is None:
            return
        try:
            await self._redis.publish_job(stream, job_data)
        except AppError as e:
            logger.warning("job_publish_failed", stream=stream, error=e.message)

    async def _save_run(self, source: ContentSource, progress: SyncProgress) -> None:
        update: dict[str, Any] = {"last_run": _progress_snapshot(progress)}
        if progress.status == SyncRunStatus.COMPLETED:
            update["last_completed_at"] = progress.completed_at.isoformat()
        try:
            await self._cursors.upsert(source.id, SOURCE_CURSOR_KEY, update)
        except DatabaseError as e:
            logger.warning("sync_run_save_failed", source_id=str(source.id), error=e.message)

    async def _fail(self, source: ContentSource, progress: SyncProgress, message: str) -> None:
        """Record a systemic failure; the stored cursor is left untouched."""
        progress.mark_failed(message)
        try:
            await self._repository.update_source(
                source.id,
                {"sync_status": SourceSyncStatus.ERROR, "error_message": message},
            )
        except DatabaseError as e:
            logger.error("sync_status_update_failed", source_id=str(source.id), error=e.message)
        await self._save_run(source, progress)
