"""Unit tests for ContentRepository with a mocked asyncpg pool."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import asyncpg
import pytest

from content_sync.core.errors import (
    ContentItemNotFoundError,
    ContentSourceNotFoundError,
    DatabaseError,
    ValidationError,
)
from content_sync.db.postgres import format_vector
from content_sync.db.repository import ContentRepository, item_fields_from_raw
from content_sync.models import (
    EMBEDDING_DIMENSION,
    ContentItemFilters,
    ContentItemType,
    ContentSourceType,
    GitHubIssueMetadata,
    ParticipantRole,
    ProcessingStatus,
    RawContentItem,
    RawParticipant,
    RelationshipDirection,
    RelationshipType,
    SourceSyncStatus,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def source_row(**overrides):
    row = {
        "id": uuid4(),
        "organization_id": uuid4(),
        "name": "Engineering Slack",
        "type": "slack",
        "config": '{"channels": ["C1"]}',
        "credentials": None,
        "sync_status": "idle",
        "last_sync_at": None,
        "error_message": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def item_row(**overrides):
    row = {
        "id": uuid4(),
        "organization_id": uuid4(),
        "source_id": uuid4(),
        "type": "issue",
        "external_id": "acme/api#12",
        "title": "Fix login",
        "content": "Login fails on Safari",
        "content_html": None,
        "author_id": None,
        "author_external": "octocat",
        "author_name": "The Octocat",
        "created_at_source": NOW,
        "updated_at_source": NOW,
        "metadata": '{"kind": "github_issue", "number": 12}',
        "tags": '["bug"]',
        "search_text": None,
        "processing_status": "pending",
        "processing_error": None,
        "processed_at": None,
        "summary": None,
        "key_points": "[]",
        "sentiment": None,
        "embedding": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def relationship_row(**overrides):
    row = {
        "id": uuid4(),
        "source_item_id": uuid4(),
        "target_item_id": uuid4(),
        "relationship_type": "references",
        "confidence": 1.0,
        "metadata": "{}",
        "created_at": NOW,
    }
    row.update(overrides)
    return row


@pytest.fixture
def repository(mock_postgres):
    """Create a ContentRepository with a mocked pool."""
    return ContentRepository(mock_postgres)


def raw_issue():
    return RawContentItem(
        external_id="acme/api#12",
        type=ContentItemType.ISSUE,
        title="Fix login",
        content="Login fails on Safari",
        author_external="octocat",
        created_at_source=NOW,
        metadata=GitHubIssueMetadata(repo="acme/api", number=12, state="open"),
        tags=["bug"],
    )


# ============================================================================
# Sources
# ============================================================================


class TestSources:
    """Tests for content source CRUD."""

    @pytest.mark.asyncio
    async def test_create_source(self, repository, mock_postgres):
        """Creating a source stores config as JSONB."""
        org = uuid4()
        mock_postgres._conn_mock.fetchrow = AsyncMock(
            return_value=source_row(organization_id=org)
        )

        source = await repository.create_source(
            org, "Engineering Slack", ContentSourceType.SLACK, config={"channels": ["C1"]}
        )

        assert source.type == ContentSourceType.SLACK
        assert source.config == {"channels": ["C1"]}
        args = mock_postgres._conn_mock.fetchrow.call_args.args
        assert "INSERT INTO content_sources" in args[0]
        assert args[3] == "slack"
        assert args[4] == '{"channels": ["C1"]}'

    @pytest.mark.asyncio
    async def test_get_source_missing(self, repository, mock_postgres):
        """Missing sources raise ContentSourceNotFoundError."""
        mock_postgres._conn_mock.fetchrow = AsyncMock(return_value=None)
        with pytest.raises(ContentSourceNotFoundError):
            await repository.get_source(uuid4())

    @pytest.mark.asyncio
    async def test_update_source_rejects_unknown_fields(self, repository):
        """Only whitelisted columns can be updated."""
        with pytest.raises(ValidationError):
            await repository.update_source(uuid4(), {"organization_id": uuid4()})

    @pytest.mark.asyncio
    async def test_update_source_encodes_enum(self, repository, mock_postgres):
        """Enum values are written as their string value."""
        mock_postgres._conn_mock.fetchrow = AsyncMock(
            return_value=source_row(sync_status="syncing")
        )

        source = await repository.update_source(
            uuid4(), {"sync_status": SourceSyncStatus.SYNCING, "error_message": None}
        )

        assert source.sync_status == SourceSyncStatus.SYNCING
        args = mock_postgres._conn_mock.fetchrow.call_args.args
        assert "sync_status = $2" in args[0]
        assert args[2] == "syncing"
        assert args[3] is None

    @pytest.mark.asyncio
    async def test_list_sources_filters(self, repository, mock_postgres):
        """Filters become parameterized WHERE clauses."""
        from content_sync.models import ContentSourceFilters

        org = uuid4()
        await repository.list_sources(
            ContentSourceFilters(organization_id=org, type=ContentSourceType.VIDEO)
        )

        args = mock_postgres._conn_mock.fetch.call_args.args
        assert "organization_id = $1 AND type = $2" in args[0]
        assert args[1:] == (org, "video")

    @pytest.mark.asyncio
    async def test_database_errors_are_wrapped(self, repository, mock_postgres):
        """asyncpg failures surface as DatabaseError."""
        mock_postgres._conn_mock.fetchrow = AsyncMock(
            side_effect=asyncpg.PostgresError("connection reset")
        )
        with pytest.raises(DatabaseError, match="get_source"):
            await repository.get_source_option(uuid4())


# ============================================================================
# Items
# ============================================================================


class TestUpsertItem:
    """Tests for the (source_id, external_id) dedup upsert."""

    @pytest.mark.asyncio
    async def test_upsert_raw_item(self, repository, mock_postgres):
        """Raw items upsert on the dedup key with JSONB metadata."""
        org, source_id = uuid4(), uuid4()
        mock_postgres._conn_mock.fetchrow = AsyncMock(
            return_value=item_row(organization_id=org, source_id=source_id)
        )

        item = await repository.upsert_raw_item(org, source_id, raw_issue())

        assert item.external_id == "acme/api#12"
        assert item.tags == ["bug"]
        sql, *params = mock_postgres._conn_mock.fetchrow.call_args.args
        assert "ON CONFLICT (source_id, external_id) DO UPDATE" in sql
        assert "organization_id = EXCLUDED.organization_id" not in sql
        assert "metadata = EXCLUDED.metadata" in sql
        assert params[0] == source_id
        assert params[1] == "acme/api#12"

    @pytest.mark.asyncio
    async def test_raw_upsert_leaves_ai_fields(self, repository, mock_postgres):
        """Re-syncing never overwrites summaries or embeddings."""
        mock_postgres._conn_mock.fetchrow = AsyncMock(return_value=item_row())

        await repository.upsert_raw_item(uuid4(), uuid4(), raw_issue())

        sql = mock_postgres._conn_mock.fetchrow.call_args.args[0]
        assert "summary = EXCLUDED" not in sql
        assert "embedding = EXCLUDED" not in sql
        assert "processing_status = EXCLUDED" not in sql

    @pytest.mark.asyncio
    async def test_same_key_returns_same_item(self, repository, mock_postgres):
        """Upserting twice yields the same row id."""
        row = item_row()
        mock_postgres._conn_mock.fetchrow = AsyncMock(return_value=row)

        first = await repository.upsert_raw_item(row["organization_id"], row["source_id"], raw_issue())
        second = await repository.upsert_raw_item(row["organization_id"], row["source_id"], raw_issue())

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_upsert_requires_organization_and_type(self, repository):
        """organization_id and type are mandatory."""
        with pytest.raises(ValidationError):
            await repository.upsert_item(uuid4(), "x", {"title": "no org"})

    @pytest.mark.asyncio
    async def test_upsert_rejects_unknown_fields(self, repository):
        """Unknown columns are refused before hitting the database."""
        with pytest.raises(ValidationError):
            await repository.upsert_item(
                uuid4(), "x", {"organization_id": uuid4(), "type": "message", "bogus": 1}
            )

    def test_item_fields_from_raw(self):
        """Adapter output maps onto item columns."""
        org = uuid4()
        fields = item_fields_from_raw(org, raw_issue())

        assert fields["organization_id"] == org
        assert fields["type"] == "issue"
        assert fields["metadata"]["repo"] == "acme/api"
        assert fields["tags"] == ["bug"]


class TestItemQueries:
    """Tests for item reads and updates."""

    @pytest.mark.asyncio
    async def test_get_item_missing(self, repository, mock_postgres):
        """Missing items raise ContentItemNotFoundError."""
        with pytest.raises(ContentItemNotFoundError):
            await repository.get_item(uuid4())

    @pytest.mark.asyncio
    async def test_row_embedding_is_parsed(self, repository, mock_postgres):
        """pgvector text is parsed back into floats."""
        embedding = [0.1, 0.2, 0.3] + [0.0] * (EMBEDDING_DIMENSION - 3)
        mock_postgres._conn_mock.fetchrow = AsyncMock(
            return_value=item_row(embedding=format_vector(embedding))
        )

        item = await repository.get_item(uuid4())

        assert len(item.embedding) == EMBEDDING_DIMENSION
        assert item.embedding[:3] == pytest.approx([0.1, 0.2, 0.3])

    @pytest.mark.asyncio
    async def test_list_items_pagination(self, repository, mock_postgres):
        """list_items reports totals and has_more."""
        mock_postgres._conn_mock.fetchval = AsyncMock(return_value=3)
        mock_postgres._conn_mock.fetch = AsyncMock(return_value=[item_row(), item_row()])

        page = await repository.list_items(
            ContentItemFilters(organization_id=uuid4(), tags=["bug"]), limit=2
        )

        assert page.total == 3
        assert len(page.items) == 2
        assert page.has_more is True
        sql = mock_postgres._conn_mock.fetch.call_args.args[0]
        assert "tags ?| $2::text[]" in sql
        assert "LIMIT $3 OFFSET $4" in sql

    @pytest.mark.asyncio
    async def test_list_items_rejects_sort_field(self, repository):
        """Sorting is limited to known columns."""
        with pytest.raises(ValidationError):
            await repository.list_items(sort_by="content; DROP TABLE")

    @pytest.mark.asyncio
    async def test_update_item_vector(self, repository, mock_postgres):
        """Embeddings are written through a ::vector cast."""
        mock_postgres._conn_mock.fetchrow = AsyncMock(return_value=item_row())

        await repository.update_item(
            uuid4(),
            {"embedding": [0.5, 0.25], "processing_status": ProcessingStatus.COMPLETED},
        )

        sql, *params = mock_postgres._conn_mock.fetchrow.call_args.args
        assert "embedding = $2::vector" in sql
        assert params[1] == "[0.5,0.25]"
        assert params[2] == "completed"

    @pytest.mark.asyncio
    async def test_resolve_external_ids(self, repository, mock_postgres):
        """External ids map to stored item ids."""
        target = uuid4()
        mock_postgres._conn_mock.fetch = AsyncMock(
            return_value=[{"id": target, "external_id": "acme/api#7"}]
        )

        resolved = await repository.resolve_external_ids(uuid4(), ["acme/api#7", "acme/api#8"])

        assert resolved == {"acme/api#7": target}

    @pytest.mark.asyncio
    async def test_resolve_external_ids_empty(self, repository, mock_postgres):
        """No ids means no query."""
        assert await repository.resolve_external_ids(uuid4(), []) == {}
        mock_postgres.pool.acquire.assert_not_called()


# ============================================================================
# Relationships and participants
# ============================================================================


class TestRelationships:
    """Tests for relationship upserts."""

    @pytest.mark.asyncio
    async def test_create_relationship_upserts(self, repository, mock_postgres):
        """Edges upsert on (source, target, type)."""
        source_id, target_id = uuid4(), uuid4()
        mock_postgres._conn_mock.fetchrow = AsyncMock(
            return_value=relationship_row(
                source_item_id=source_id, target_item_id=target_id, confidence=0.9
            )
        )

        edge = await repository.create_relationship(
            source_id, target_id, RelationshipType.REFERENCES, confidence=0.9
        )

        assert edge.confidence == 0.9
        sql = mock_postgres._conn_mock.fetchrow.call_args.args[0]
        assert "ON CONFLICT (source_item_id, target_item_id, relationship_type)" in sql

    @pytest.mark.asyncio
    async def test_self_loop_rejected(self, repository):
        """An item cannot relate to itself."""
        item_id = uuid4()
        with pytest.raises(ValidationError):
            await repository.create_relationship(item_id, item_id, RelationshipType.RELATES_TO)

    @pytest.mark.asyncio
    async def test_confidence_range(self, repository):
        """Confidence must be within [0, 1]."""
        with pytest.raises(ValidationError):
            await repository.create_relationship(
                uuid4(), uuid4(), RelationshipType.RELATES_TO, confidence=1.2
            )

    @pytest.mark.asyncio
    async def test_list_outgoing(self, repository, mock_postgres):
        """Outgoing listing filters on source_item_id."""
        await repository.list_relationships(uuid4(), RelationshipDirection.OUTGOING)
        sql = mock_postgres._conn_mock.fetch.call_args.args[0]
        assert "source_item_id = $1" in sql
        assert "target_item_id = $1" not in sql


class TestParticipants:
    """Tests for participant writes."""

    @pytest.mark.asyncio
    async def test_replace_deletes_existing(self, repository, mock_postgres):
        """replace=True clears the item's participants first."""
        item_id = uuid4()
        mock_postgres._conn_mock.fetchrow = AsyncMock(
            return_value={
                "id": uuid4(),
                "content_item_id": item_id,
                "user_id": None,
                "external_id": "U1",
                "name": "Ada",
                "email": None,
                "role": "author",
                "created_at": NOW,
            }
        )

        participants = await repository.create_participants_batch(
            item_id,
            [RawParticipant(external_id="U1", role=ParticipantRole.AUTHOR, name="Ada")],
            replace=True,
        )

        assert len(participants) == 1
        assert participants[0].role == ParticipantRole.AUTHOR
        delete_sql = mock_postgres._conn_mock.execute.call_args_list[0].args[0]
        assert "DELETE FROM content_participants" in delete_sql
