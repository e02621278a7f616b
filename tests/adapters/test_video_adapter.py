"""Tests for the internal video adapter."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import asyncpg
import pytest

from content_sync.adapters.video import (
    VideoAdapter,
    ensure_video_content_source,
    parse_duration,
    sync_new_video_to_content,
    sync_video_to_content,
    update_video_content_item,
    video_to_raw,
)
from content_sync.core.errors import ContentSourceSyncError
from content_sync.models import (
    ContentItemType,
    ContentSourceType,
    FetchOptions,
    ParticipantRole,
    ProcessingStatus,
)

from factories import make_item, make_source

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def video_row(**overrides):
    row = {
        "id": uuid4(),
        "organization_id": uuid4(),
        "title": "Onboarding walkthrough",
        "transcript": "Welcome to the team",
        "duration": "01:02:03",
        "video_url": "https://cdn.example.com/v.mp4",
        "thumbnail_url": None,
        "ai_tags": '["onboarding"]',
        "author_id": uuid4(),
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class TestVideoConversion:
    """Tests for row conversion helpers."""

    def test_parse_duration(self):
        assert parse_duration("01:02:03") == 3723
        assert parse_duration("02:30") == 150
        assert parse_duration("90") == 0
        assert parse_duration("ab:cd") == 0
        assert parse_duration(None) == 0

    def test_video_to_raw(self):
        """Videos map to video items with their transcript as content."""
        row = video_row()
        item = video_to_raw(row)

        assert item.type == ContentItemType.VIDEO
        assert item.external_id == str(row["id"])
        assert item.content == "Welcome to the team"
        assert item.metadata.duration == 3723
        assert item.tags == ["onboarding"]
        assert item.participants[0].role == ParticipantRole.AUTHOR

    def test_video_without_author(self):
        item = video_to_raw(video_row(author_id=None, ai_tags=None))
        assert item.participants == []
        assert item.tags == []


class TestVideoAdapter:
    """Tests for paging over the videos table."""

    @pytest.mark.asyncio
    async def test_fetch_detects_more(self, mock_postgres):
        """One extra row signals another page at the next offset."""
        mock_postgres._conn_mock.fetch = AsyncMock(return_value=[video_row() for _ in range(3)])
        adapter = VideoAdapter(mock_postgres)

        result = await adapter.fetch_content(
            make_source(ContentSourceType.VIDEO), FetchOptions(limit=2, cursor="4")
        )

        assert len(result.items) == 2
        assert result.has_more is True
        assert result.next_cursor == "6"
        params = mock_postgres._conn_mock.fetch.call_args.args[1:]
        assert params[-2:] == (3, 4)

    @pytest.mark.asyncio
    async def test_fetch_last_page(self, mock_postgres):
        mock_postgres._conn_mock.fetch = AsyncMock(return_value=[video_row()])
        adapter = VideoAdapter(mock_postgres)

        result = await adapter.fetch_content(make_source(ContentSourceType.VIDEO), FetchOptions())

        assert result.has_more is False
        assert result.next_cursor is None

    @pytest.mark.asyncio
    async def test_fetch_since_filter(self, mock_postgres):
        """since becomes a created_at bound."""
        adapter = VideoAdapter(mock_postgres)
        await adapter.fetch_content(make_source(ContentSourceType.VIDEO), FetchOptions(since=NOW))

        sql = mock_postgres._conn_mock.fetch.call_args.args[0]
        assert "created_at >= $2" in sql

    @pytest.mark.asyncio
    async def test_database_failure(self, mock_postgres):
        """Database faults are non-retryable sync errors."""
        mock_postgres._conn_mock.fetch = AsyncMock(side_effect=asyncpg.PostgresError("down"))
        adapter = VideoAdapter(mock_postgres)

        with pytest.raises(ContentSourceSyncError) as exc_info:
            await adapter.fetch_content(make_source(ContentSourceType.VIDEO), FetchOptions())
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_fetch_item_invalid_uuid(self, mock_postgres):
        """Non-UUID ids are not videos."""
        adapter = VideoAdapter(mock_postgres)
        assert await adapter.fetch_item(make_source(ContentSourceType.VIDEO), "abc") is None
        mock_postgres.pool.acquire.assert_not_called()

    @pytest.mark.asyncio
    async def test_validate_credentials(self, mock_postgres):
        assert await VideoAdapter(mock_postgres).validate_credentials(make_source()) is True


class TestVideoLifecycle:
    """Tests for the upload and processing hooks."""

    @pytest.fixture
    def repository(self):
        repository = MagicMock()
        repository.list_sources = AsyncMock(return_value=[])
        repository.create_source = AsyncMock(
            return_value=make_source(ContentSourceType.VIDEO, credentials={})
        )
        repository.upsert_raw_item = AsyncMock()
        repository.get_item_by_external_id = AsyncMock()
        repository.update_item = AsyncMock()
        return repository

    @pytest.mark.asyncio
    async def test_ensure_source_creates_once(self, repository, organization_id):
        """The video source is created on first use."""
        source = await ensure_video_content_source(repository, organization_id)

        assert source.type == ContentSourceType.VIDEO
        repository.create_source.assert_awaited_once()
        args = repository.create_source.call_args
        assert args.args[1] == "Videos"
        assert args.kwargs["config"] == {"syncInterval": 0}

    @pytest.mark.asyncio
    async def test_ensure_source_reuses_existing(self, repository, organization_id):
        existing = make_source(ContentSourceType.VIDEO)
        repository.list_sources = AsyncMock(return_value=[existing])

        assert await ensure_video_content_source(repository, organization_id) is existing
        repository.create_source.assert_not_called()

    @pytest.mark.asyncio
    async def test_sync_video(self, mock_postgres, repository):
        row = video_row()
        item = make_item(item_type=ContentItemType.VIDEO, external_id=str(row["id"]))
        mock_postgres._conn_mock.fetchrow = AsyncMock(return_value=row)
        repository.upsert_raw_item = AsyncMock(return_value=item)

        result = await sync_video_to_content(mock_postgres, repository, row["id"], uuid4())

        assert result == item.id
        assert repository.upsert_raw_item.call_args.args[0] == row["organization_id"]

    @pytest.mark.asyncio
    async def test_sync_missing_video(self, mock_postgres, repository):
        assert await sync_video_to_content(mock_postgres, repository, uuid4(), uuid4()) is None
        repository.upsert_raw_item.assert_not_called()

    @pytest.mark.asyncio
    async def test_new_video_failure_is_swallowed(self, mock_postgres, repository, organization_id):
        """Upload hooks never raise."""
        repository.list_sources = AsyncMock(side_effect=RuntimeError("db down"))

        assert (
            await sync_new_video_to_content(mock_postgres, repository, uuid4(), organization_id)
            is None
        )

    @pytest.mark.asyncio
    async def test_update_processed_video(self, repository, organization_id):
        """Processed transcripts and summaries are written back."""
        item = make_item(item_type=ContentItemType.VIDEO)
        repository.list_sources = AsyncMock(return_value=[make_source(ContentSourceType.VIDEO)])
        repository.get_item_by_external_id = AsyncMock(return_value=item)
        repository.update_item = AsyncMock(return_value=item)

        result = await update_video_content_item(
            repository, uuid4(), organization_id, transcript="new", summary="short"
        )

        assert result == item.id
        updates = repository.update_item.call_args.args[1]
        assert updates["processing_status"] == ProcessingStatus.COMPLETED
        assert updates["content"] == "new"
        assert updates["summary"] == "short"
        assert "tags" not in updates
