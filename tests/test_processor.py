"""Tests for the sync orchestrator."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from tenacity import wait_none

from content_sync.core.errors import (
    ContentSourceSyncError,
    DatabaseError,
    RedisError,
)
from content_sync.db.cursors import SOURCE_CURSOR_KEY
from content_sync.db.redis import ENRICH_JOBS_STREAM, SYNC_JOBS_STREAM
from content_sync.models import (
    ContentItemType,
    FetchResult,
    ParticipantRole,
    RawContentItem,
    RawParticipant,
    RawReference,
    RelationshipType,
    SourceSyncStatus,
    SyncCursor,
    SyncRunStatus,
)
from content_sync.processor import SyncOrchestrator

from factories import make_item, make_source

SINCE = datetime(2024, 3, 1, tzinfo=timezone.utc)


def raw(external_id: str, **fields) -> RawContentItem:
    return RawContentItem(external_id=external_id, type=ContentItemType.MESSAGE, **fields)


def cursor_record(source_id, **state) -> SyncCursor:
    return SyncCursor(id=uuid4(), source_id=source_id, key=SOURCE_CURSOR_KEY, state=state)


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    """Retries happen immediately."""
    monkeypatch.setattr(SyncOrchestrator._fetch_page.retry, "wait", wait_none())


@pytest.fixture
def source():
    return make_source()


@pytest.fixture
def adapter(source):
    adapter = MagicMock()
    adapter.refresh_auth = AsyncMock(return_value=dict(source.credentials))
    adapter.validate_credentials = AsyncMock(return_value=True)
    adapter.fetch_content = AsyncMock(return_value=FetchResult())
    adapter.handle_event = AsyncMock(return_value=[])
    return adapter


@pytest.fixture
def repository(source):
    repository = MagicMock()
    repository.get_source = AsyncMock(return_value=source)
    repository.update_source = AsyncMock(return_value=source)
    repository.list_sources = AsyncMock(return_value=[source])
    repository.upsert_raw_item = AsyncMock(
        side_effect=lambda org_id, source_id, item: make_item(
            org_id, source_id, external_id=item.external_id
        )
    )
    repository.create_participants_batch = AsyncMock(return_value=[])
    repository.resolve_external_ids = AsyncMock(return_value={})
    repository.create_relationship = AsyncMock()
    return repository


@pytest.fixture
def cursor_store():
    store = MagicMock()
    store.get = AsyncMock(return_value=None)
    store.upsert = AsyncMock()
    return store


@pytest.fixture
def orchestrator(adapter, repository, cursor_store, mock_redis_client):
    registry = MagicMock()
    registry.get = MagicMock(return_value=adapter)
    return SyncOrchestrator(
        registry,
        repository,
        cursor_store,
        redis=mock_redis_client,
        max_pages=3,
        call_timeout_seconds=0.05,
    )


def cursor_writes(cursor_store) -> list[dict]:
    """State updates that carried a pagination cursor."""
    return [
        c.args[2] for c in cursor_store.upsert.call_args_list if "cursor" in c.args[2]
    ]


def source_updates(repository) -> list[dict]:
    return [c.args[1] for c in repository.update_source.call_args_list]


class TestSyncRun:
    """Tests for a single bounded run."""

    @pytest.mark.asyncio
    async def test_completed_run(self, orchestrator, adapter, repository, cursor_store, source):
        """A drained adapter completes the run and stamps last_sync_at."""
        adapter.fetch_content = AsyncMock(
            return_value=FetchResult(items=[raw("m1"), raw("m2")])
        )

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.COMPLETED
        assert progress.items_processed == 2
        assert progress.pages == 1
        assert repository.upsert_raw_item.await_count == 2
        assert cursor_writes(cursor_store)[0]["cursor"] is None

        updates = source_updates(repository)
        assert updates[0]["sync_status"] == SourceSyncStatus.SYNCING
        assert updates[-1]["sync_status"] == SourceSyncStatus.IDLE
        assert updates[-1]["last_sync_at"] == progress.started_at

    @pytest.mark.asyncio
    async def test_first_run_uses_last_sync_time(self, orchestrator, adapter, repository):
        """Without a stored cursor the window starts at the last sync."""
        source = make_source(last_sync_at=SINCE)
        repository.get_source = AsyncMock(return_value=source)

        await orchestrator.sync_source(source.id)

        options = adapter.fetch_content.call_args.args[1]
        assert options.cursor is None
        assert options.since == SINCE

    @pytest.mark.asyncio
    async def test_continuation_keeps_original_window(
        self, orchestrator, adapter, cursor_store, source
    ):
        """A stored cursor resumes the walk with the since it started with."""
        cursor_store.get = AsyncMock(
            return_value=cursor_record(source.id, cursor="C1:100", since=SINCE.isoformat())
        )

        await orchestrator.sync_source(source.id)

        options = adapter.fetch_content.call_args.args[1]
        assert options.cursor == "C1:100"
        assert options.since == SINCE

    @pytest.mark.asyncio
    async def test_full_sync_ignores_cursor(self, orchestrator, adapter, cursor_store, repository):
        source = make_source(last_sync_at=SINCE)
        repository.get_source = AsyncMock(return_value=source)
        cursor_store.get = AsyncMock(return_value=cursor_record(source.id, cursor="C1:100"))

        await orchestrator.sync_source(source.id, full=True)

        options = adapter.fetch_content.call_args.args[1]
        assert options.cursor is None
        assert options.since is None

    @pytest.mark.asyncio
    async def test_source_filters_passed_to_adapter(self, orchestrator, adapter, repository):
        source = make_source(config={"filters": {"labels": ["bug"]}})
        repository.get_source = AsyncMock(return_value=source)

        await orchestrator.sync_source(source.id)

        assert adapter.fetch_content.call_args.args[1].filters == {"labels": ["bug"]}

    @pytest.mark.asyncio
    async def test_disabled_source_skipped(self, orchestrator, adapter, repository):
        source = make_source(sync_status=SourceSyncStatus.DISABLED)
        repository.get_source = AsyncMock(return_value=source)

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.IDLE
        adapter.fetch_content.assert_not_called()
        repository.update_source.assert_not_called()

    @pytest.mark.asyncio
    async def test_enrichment_queued_per_page(
        self, orchestrator, adapter, mock_redis_client, source
    ):
        adapter.fetch_content = AsyncMock(return_value=FetchResult(items=[raw("m1")]))

        progress = await orchestrator.sync_source(source.id)

        stream, job = mock_redis_client.publish_job.call_args.args
        assert stream == ENRICH_JOBS_STREAM
        assert job["item_ids"] == progress.item_ids
        assert job["source_id"] == source.id


class TestCursorSafety:
    """Tests for cursor advancement around failures."""

    @pytest.mark.asyncio
    async def test_pages_advance_cursor(self, orchestrator, adapter, cursor_store, source):
        """Each fully written page stores the next cursor."""
        adapter.fetch_content = AsyncMock(
            side_effect=[
                FetchResult(items=[raw("m1")], has_more=True, next_cursor="p2"),
                FetchResult(items=[raw("m2")]),
            ]
        )

        progress = await orchestrator.sync_source(source.id)

        assert [w["cursor"] for w in cursor_writes(cursor_store)] == ["p2", None]
        assert adapter.fetch_content.call_args_list[1].args[1].cursor == "p2"
        assert progress.pages == 2

    @pytest.mark.asyncio
    async def test_database_failure_keeps_cursor(
        self, orchestrator, adapter, repository, cursor_store, source
    ):
        """A store failure mid-page leaves the cursor where it was."""
        adapter.fetch_content = AsyncMock(
            return_value=FetchResult(items=[raw("m1"), raw("m2")], has_more=True, next_cursor="p2")
        )
        repository.upsert_raw_item = AsyncMock(
            side_effect=[make_item(), DatabaseError("upsert_item", "connection reset")]
        )

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.FAILED
        assert cursor_writes(cursor_store) == []
        assert source_updates(repository)[-1]["sync_status"] == SourceSyncStatus.ERROR
        assert "last_sync_at" not in source_updates(repository)[-1]

    @pytest.mark.asyncio
    async def test_item_failure_is_skipped(self, orchestrator, adapter, repository, source):
        """Bad items are counted and the rest of the page is written."""
        adapter.fetch_content = AsyncMock(
            return_value=FetchResult(items=[raw("bad"), raw("good")])
        )
        repository.upsert_raw_item = AsyncMock(
            side_effect=[ValueError("title too long"), make_item()]
        )

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.COMPLETED
        assert progress.items_processed == 1
        assert progress.items_failed == 1
        assert progress.errors[0] == {"message": "title too long", "item_id": "bad"}

    @pytest.mark.asyncio
    async def test_replayed_pages_do_not_duplicate(
        self, orchestrator, adapter, repository, mock_redis_client, source
    ):
        """Re-running from a reset cursor updates the same items in place."""
        stored = {}

        async def upsert(org_id, source_id, item):
            key = (source_id, item.external_id)
            if key not in stored:
                stored[key] = make_item(org_id, source_id, external_id=item.external_id)
            return stored[key]

        repository.upsert_raw_item = AsyncMock(side_effect=upsert)
        pages = [
            FetchResult(items=[raw("m1"), raw("m2")], has_more=True, next_cursor="p2"),
            FetchResult(items=[raw("m2"), raw("m3")]),
        ]
        adapter.fetch_content = AsyncMock(side_effect=pages + pages)

        def enqueued_ids() -> list[str]:
            return [
                item_id
                for c in mock_redis_client.publish_job.call_args_list
                if c.args[0] == ENRICH_JOBS_STREAM
                for item_id in c.args[1]["item_ids"]
            ]

        await orchestrator.sync_source(source.id)
        first_ids = enqueued_ids()
        mock_redis_client.publish_job.reset_mock()

        await orchestrator.sync_source(source.id, full=True)

        assert adapter.fetch_content.call_args_list[2].args[1].cursor is None
        assert len(stored) == 3
        assert enqueued_ids() == first_ids
        assert {c.args[2].external_id for c in repository.upsert_raw_item.call_args_list} == {
            "m1",
            "m2",
            "m3",
        }


class TestSyncBudgets:
    """Tests for page and time budgets."""

    @pytest.mark.asyncio
    async def test_page_budget_schedules_continuation(
        self, orchestrator, adapter, repository, mock_redis_client, source
    ):
        """Running out of pages ends the run and queues a follow-up sync."""
        adapter.fetch_content = AsyncMock(
            return_value=FetchResult(has_more=True, next_cursor="more")
        )

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.BUDGET_EXHAUSTED
        assert progress.pages == 3
        assert progress.next_cursor == "more"
        assert "last_sync_at" not in source_updates(repository)[-1]
        stream, job = mock_redis_client.publish_job.call_args.args
        assert stream == SYNC_JOBS_STREAM
        assert job["reason"] == SyncRunStatus.BUDGET_EXHAUSTED

    @pytest.mark.asyncio
    async def test_time_budget(self, adapter, repository, cursor_store, source):
        registry = MagicMock()
        registry.get = MagicMock(return_value=adapter)
        orchestrator = SyncOrchestrator(
            registry, repository, cursor_store, max_pages=100, max_seconds=0
        )
        adapter.fetch_content = AsyncMock(
            return_value=FetchResult(has_more=True, next_cursor="more")
        )

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.BUDGET_EXHAUSTED
        assert progress.pages == 1

    @pytest.mark.asyncio
    async def test_queue_outage_does_not_fail_run(
        self, orchestrator, adapter, mock_redis_client, source
    ):
        adapter.fetch_content = AsyncMock(return_value=FetchResult(items=[raw("m1")]))
        mock_redis_client.publish_job = AsyncMock(side_effect=RedisError("xadd", "down"))

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.COMPLETED


class TestSyncFailures:
    """Tests for retries and systemic failures."""

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, orchestrator, adapter, source):
        adapter.fetch_content = AsyncMock(
            side_effect=[
                ContentSourceSyncError(str(source.id), "fetch_content", "HTTP 503"),
                FetchResult(items=[raw("m1")]),
            ]
        )

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.COMPLETED
        assert adapter.fetch_content.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_spent(self, orchestrator, adapter, repository, source):
        """Three transient failures in a row fail the run."""
        adapter.fetch_content = AsyncMock(
            side_effect=ContentSourceSyncError(str(source.id), "fetch_content", "HTTP 503")
        )

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.FAILED
        assert adapter.fetch_content.await_count == 3
        assert source_updates(repository)[-1]["error_message"] == progress.errors[-1]["message"]

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, orchestrator, adapter, source):
        adapter.fetch_content = AsyncMock(
            side_effect=ContentSourceSyncError(
                str(source.id), "fetch_content", "HTTP 400", retryable=False
            )
        )

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.FAILED
        assert adapter.fetch_content.await_count == 1

    @pytest.mark.asyncio
    async def test_call_timeout(self, orchestrator, adapter, source):
        """Hung adapter calls time out as retryable failures."""

        async def hang(*args, **kwargs):
            await asyncio.sleep(1)

        adapter.fetch_content = AsyncMock(side_effect=hang)

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.FAILED
        assert "timed out" in progress.errors[-1]["message"]
        assert adapter.fetch_content.await_count == 3

    @pytest.mark.asyncio
    async def test_invalid_credentials(self, orchestrator, adapter, repository, source):
        adapter.validate_credentials = AsyncMock(return_value=False)

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.FAILED
        adapter.fetch_content.assert_not_called()
        assert source_updates(repository)[-1]["sync_status"] == SourceSyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, orchestrator, adapter, repository, source):
        """Programming errors mark the source and re-raise."""
        adapter.fetch_content = AsyncMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            await orchestrator.sync_source(source.id)

        assert source_updates(repository)[-1]["sync_status"] == SourceSyncStatus.ERROR


class TestCredentialRefresh:
    """Tests for refreshing credentials before a run."""

    @pytest.mark.asyncio
    async def test_refreshed_credentials_are_encrypted(
        self, adapter, repository, cursor_store, cipher
    ):
        source = make_source(credentials=cipher.encrypt({"access_token": "old"}))
        repository.get_source = AsyncMock(return_value=source)
        adapter.refresh_auth = AsyncMock(return_value={"access_token": "new"})
        registry = MagicMock()
        registry.get = MagicMock(return_value=adapter)
        orchestrator = SyncOrchestrator(
            registry, repository, cursor_store, credential_cipher=cipher
        )

        await orchestrator.sync_source(source.id)

        stored = next(u["credentials"] for u in source_updates(repository) if "credentials" in u)
        assert "access_token" not in stored
        assert cipher.decrypt(stored) == {"access_token": "new"}

    @pytest.mark.asyncio
    async def test_unchanged_credentials_not_written(self, orchestrator, repository, source):
        await orchestrator.sync_source(source.id)
        assert all("credentials" not in u for u in source_updates(repository))

    @pytest.mark.asyncio
    async def test_refresh_failure_falls_back_to_validation(
        self, orchestrator, adapter, source
    ):
        adapter.refresh_auth = AsyncMock(
            side_effect=ContentSourceSyncError(str(source.id), "refresh_auth", "HTTP 500")
        )

        progress = await orchestrator.sync_source(source.id)

        assert progress.status == SyncRunStatus.COMPLETED
        adapter.validate_credentials.assert_awaited_once()


class TestSyncAll:
    """Tests for concurrent multi-source syncs."""

    @pytest.mark.asyncio
    async def test_failures_isolated(self, orchestrator, repository, adapter):
        """A crash in one source is reported without affecting the others."""
        good, bad = make_source(), make_source()
        repository.get_source = AsyncMock(
            side_effect=lambda source_id: good if source_id == good.id else bad
        )
        async def validate(source):
            if source is bad:
                raise RuntimeError("adapter crashed")
            return True

        adapter.validate_credentials = AsyncMock(side_effect=validate)

        results = await orchestrator.sync_all([good, bad])

        assert results[str(good.id)].status == SyncRunStatus.COMPLETED
        assert results[str(bad.id)].status == SyncRunStatus.FAILED

    @pytest.mark.asyncio
    async def test_defaults_skip_disabled_sources(self, orchestrator, repository):
        repository.list_sources = AsyncMock(
            return_value=[make_source(sync_status=SourceSyncStatus.DISABLED)]
        )
        assert await orchestrator.sync_all() == {}

    @pytest.mark.asyncio
    async def test_progress_from_cursor_record(self, orchestrator, cursor_store):
        """Runs from other processes are read back from the source cursor."""
        source_id = uuid4()
        cursor_store.get = AsyncMock(
            return_value=cursor_record(
                source_id,
                last_run={
                    "status": "completed",
                    "items_processed": 4,
                    "pages": 2,
                    "started_at": "2024-03-01T00:00:00+00:00",
                },
            )
        )

        progress = await orchestrator.get_sync_progress(source_id)

        assert progress.status == SyncRunStatus.COMPLETED
        assert progress.items_processed == 4
        assert progress.started_at == SINCE

    @pytest.mark.asyncio
    async def test_no_progress(self, orchestrator):
        assert await orchestrator.get_sync_progress(uuid4()) is None


class TestIngestion:
    """Tests for webhook-driven single item ingestion."""

    @pytest.mark.asyncio
    async def test_explicit_links_recorded(self, orchestrator, adapter, repository, source):
        """References resolve to stored items and become relationships."""
        target_id = uuid4()
        repository.resolve_external_ids = AsyncMock(return_value={"acme/api#12": target_id})
        adapter.handle_event = AsyncMock(
            return_value=[
                raw(
                    "acme/api#7",
                    participants=[RawParticipant("alice", ParticipantRole.AUTHOR)],
                    related_external_ids=[
                        RawReference("acme/api#12"),
                        RawReference("acme/api#99"),
                    ],
                )
            ]
        )

        items = await orchestrator.ingest_event(source, {"action": "opened"})

        assert len(items) == 1
        repository.create_participants_batch.assert_awaited_once()
        repository.create_relationship.assert_awaited_once()
        args = repository.create_relationship.call_args
        assert args.args[1:3] == (target_id, RelationshipType.REFERENCES)
        assert args.kwargs["confidence"] == 1.0

    @pytest.mark.asyncio
    async def test_link_failure_is_logged(self, orchestrator, repository, mock_redis_client, source):
        repository.create_participants_batch = AsyncMock(
            side_effect=DatabaseError("create_participants", "deadlock")
        )

        item = await orchestrator.ingest_item(
            source,
            raw("m1", participants=[RawParticipant("U1", ParticipantRole.AUTHOR)]),
        )

        assert item.external_id == "m1"
        assert mock_redis_client.publish_job.call_args.args[0] == ENRICH_JOBS_STREAM
