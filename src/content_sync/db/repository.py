"""Content repository: CRUD and idempotent upsert over the content graph."""

from enum import Enum
from typing import Any, Optional, Sequence
from uuid import UUID

import asyncpg
import structlog

from content_sync.core.errors import (
    ContentItemNotFoundError,
    ContentSourceNotFoundError,
    DatabaseError,
    ValidationError,
)
from content_sync.models import (
    ContentChunk,
    ContentItem,
    ContentItemFilters,
    ContentItemWithRelations,
    ContentParticipant,
    ContentRelationship,
    ContentSource,
    ContentSourceFilters,
    ContentSourceType,
    ContentSourceWithStats,
    PaginatedResult,
    ProcessingStatus,
    RawContentItem,
    RawParticipant,
    RelationshipDirection,
    RelationshipType,
)

from .postgres import PostgresClient, dump_json, format_vector, parse_json, parse_vector

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 50

# Fields a raw sync may write. AI-derived fields are only written when a
# caller passes them explicitly.
SOURCE_ITEM_FIELDS = (
    "title",
    "content",
    "content_html",
    "author_id",
    "author_external",
    "author_name",
    "created_at_source",
    "updated_at_source",
    "metadata",
    "tags",
)
AI_ITEM_FIELDS = (
    "search_text",
    "summary",
    "key_points",
    "sentiment",
    "embedding",
    "processing_status",
    "processing_error",
    "processed_at",
)
JSON_ITEM_FIELDS = {"metadata", "tags", "key_points"}

SOURCE_UPDATE_FIELDS = (
    "name",
    "config",
    "credentials",
    "sync_status",
    "last_sync_at",
    "error_message",
)
JSON_SOURCE_FIELDS = {"config", "credentials"}

ITEM_SORT_FIELDS = {"created_at", "created_at_source", "updated_at", "title"}

ITEM_COLUMNS = """
    id, organization_id, source_id, type, external_id, title, content,
    content_html, author_id, author_external, author_name, created_at_source,
    updated_at_source, metadata, tags, search_text, processing_status,
    processing_error, processed_at, summary, key_points, sentiment,
    embedding::text AS embedding, created_at, updated_at
"""


def item_fields_from_raw(organization_id: UUID, raw: RawContentItem) -> dict[str, Any]:
    """Map adapter output to repository upsert fields."""
    return {
        "organization_id": organization_id,
        "type": raw.type.value,
        "title": raw.title,
        "content": raw.content,
        "content_html": raw.content_html,
        "author_external": raw.author_external,
        "author_name": raw.author_name,
        "created_at_source": raw.created_at_source,
        "updated_at_source": raw.updated_at_source,
        "metadata": raw.metadata.to_dict(),
        "tags": list(raw.tags),
    }


def _encode_value(column: str, value: Any, json_fields: set[str]) -> Any:
    if column in json_fields:
        return dump_json(value)
    if column == "embedding" and value is not None:
        return format_vector(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _placeholder(column: str, index: int, json_fields: set[str]) -> str:
    if column in json_fields:
        return f"${index}::jsonb"
    if column == "embedding":
        return f"${index}::vector"
    return f"${index}"


def _row_to_source(row: Any) -> ContentSource:
    return ContentSource(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"],
        type=row["type"],
        config=parse_json(row["config"], {}),
        credentials=parse_json(row["credentials"]),
        sync_status=row["sync_status"],
        last_sync_at=row["last_sync_at"],
        error_message=row["error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_item(row: Any) -> ContentItem:
    return ContentItem(
        id=row["id"],
        organization_id=row["organization_id"],
        source_id=row["source_id"],
        type=row["type"],
        external_id=row["external_id"],
        title=row["title"],
        content=row["content"],
        content_html=row["content_html"],
        author_id=row["author_id"],
        author_external=row["author_external"],
        author_name=row["author_name"],
        created_at_source=row["created_at_source"],
        updated_at_source=row["updated_at_source"],
        metadata=parse_json(row["metadata"], {}),
        tags=parse_json(row["tags"], []),
        search_text=row["search_text"],
        processing_status=row["processing_status"],
        processing_error=row["processing_error"],
        processed_at=row["processed_at"],
        summary=row["summary"],
        key_points=parse_json(row["key_points"], []),
        sentiment=row["sentiment"],
        embedding=parse_vector(row["embedding"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_relationship(row: Any) -> ContentRelationship:
    return ContentRelationship(
        id=row["id"],
        source_item_id=row["source_item_id"],
        target_item_id=row["target_item_id"],
        relationship_type=row["relationship_type"],
        confidence=row["confidence"],
        metadata=parse_json(row["metadata"], {}),
        created_at=row["created_at"],
    )


def _row_to_participant(row: Any) -> ContentParticipant:
    return ContentParticipant(
        id=row["id"],
        content_item_id=row["content_item_id"],
        user_id=row["user_id"],
        external_id=row["external_id"],
        name=row["name"],
        email=row["email"],
        role=row["role"],
        created_at=row["created_at"],
    )


def _row_to_chunk(row: Any) -> ContentChunk:
    return ContentChunk(
        id=row["id"],
        content_item_id=row["content_item_id"],
        chunk_index=row["chunk_index"],
        content=row["content"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        embedding=parse_vector(row["embedding"]),
        created_at=row["created_at"],
    )


class ContentRepository:
    """Store for sources, items, chunks, relationships and participants.

    ``upsert_item`` is the single dedup chokepoint: every adapter's output
    is written through it, keyed on (source_id, external_id). All
    database faults surface as ``DatabaseError`` naming the operation.

    Attributes:
        _postgres: PostgreSQL client whose pool the repository uses
    """

    def __init__(self, postgres_client: PostgresClient) -> None:
        self._postgres = postgres_client

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def create_source(
        self,
        organization_id: UUID,
        name: str,
        source_type: ContentSourceType,
        config: Optional[dict[str, Any]] = None,
        credentials: Optional[dict[str, Any]] = None,
    ) -> ContentSource:
        """
        Create a new content source.

        Args:
            organization_id: Owning organization
            name: Display name
            source_type: External system type
            config: Source-specific sync settings
            credentials: Credential envelope (already encrypted)

        Returns:
            The created ContentSource

        Raises:
            DatabaseError: If creation fails
        """
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO content_sources (organization_id, name, type, config, credentials)
                    VALUES ($1, $2, $3, $4::jsonb, $5::jsonb)
                    RETURNING *
                    """,
                    organization_id,
                    name,
                    source_type.value,
                    dump_json(config or {}),
                    dump_json(credentials),
                )
                source = _row_to_source(row)
                logger.info(
                    "content_source_created",
                    source_id=str(source.id),
                    source_type=source_type.value,
                )
                return source
        except asyncpg.PostgresError as e:
            raise DatabaseError("create_source", str(e)) from e

    async def get_source_option(self, source_id: UUID) -> Optional[ContentSource]:
        """Get a content source by ID, or None if it does not exist."""
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM content_sources WHERE id = $1",
                    source_id,
                )
                return _row_to_source(row) if row else None
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_source", str(e)) from e

    async def get_source(self, source_id: UUID) -> ContentSource:
        """
        Get a content source by ID.

        Raises:
            ContentSourceNotFoundError: If the source does not exist
            DatabaseError: If the query fails
        """
        source = await self.get_source_option(source_id)
        if source is None:
            raise ContentSourceNotFoundError(str(source_id))
        return source

    async def list_sources(
        self, filters: Optional[ContentSourceFilters] = None
    ) -> list[ContentSource]:
        """List content sources matching the filters, newest first."""
        where, params = self._source_where(filters)
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT * FROM content_sources {where} ORDER BY created_at DESC",
                    *params,
                )
                return [_row_to_source(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_sources", str(e)) from e

    async def list_sources_with_stats(
        self, filters: Optional[ContentSourceFilters] = None
    ) -> list[ContentSourceWithStats]:
        """List content sources with item, pending and failed counters."""
        where, params = self._source_where(filters, alias="s.")
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT s.*,
                        COUNT(i.id) AS item_count,
                        COUNT(i.id) FILTER (WHERE i.processing_status = 'pending') AS pending_count,
                        COUNT(i.id) FILTER (WHERE i.processing_status = 'failed') AS failed_count
                    FROM content_sources s
                    LEFT JOIN content_items i ON i.source_id = s.id
                    {where}
                    GROUP BY s.id
                    ORDER BY s.created_at DESC
                    """,
                    *params,
                )
                return [
                    ContentSourceWithStats(
                        **_row_to_source(row).model_dump(),
                        item_count=row["item_count"],
                        pending_count=row["pending_count"],
                        failed_count=row["failed_count"],
                    )
                    for row in rows
                ]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_sources_with_stats", str(e)) from e

    @staticmethod
    def _source_where(
        filters: Optional[ContentSourceFilters], alias: str = ""
    ) -> tuple[str, list[Any]]:
        if filters is None:
            return "", []
        clauses: list[str] = []
        params: list[Any] = []
        if filters.organization_id is not None:
            params.append(filters.organization_id)
            clauses.append(f"{alias}organization_id = ${len(params)}")
        if filters.type is not None:
            params.append(filters.type.value)
            clauses.append(f"{alias}type = ${len(params)}")
        if filters.sync_status is not None:
            params.append(filters.sync_status.value)
            clauses.append(f"{alias}sync_status = ${len(params)}")
        if not clauses:
            return "", []
        return "WHERE " + " AND ".join(clauses), params

    async def update_source(
        self, source_id: UUID, updates: dict[str, Any]
    ) -> ContentSource:
        """
        Update mutable fields of a content source.

        Keys of ``updates`` must be among name, config, credentials,
        sync_status, last_sync_at and error_message. A key mapped to None
        clears the column.

        Raises:
            ValidationError: If an unknown field is passed
            ContentSourceNotFoundError: If the source does not exist
            DatabaseError: If the update fails
        """
        unknown = set(updates) - set(SOURCE_UPDATE_FIELDS)
        if unknown:
            raise ValidationError(", ".join(sorted(unknown)), "not an updatable source field")
        if not updates:
            return await self.get_source(source_id)

        assignments: list[str] = []
        params: list[Any] = [source_id]
        for column, value in updates.items():
            params.append(_encode_value(column, value, JSON_SOURCE_FIELDS))
            assignments.append(
                f"{column} = {_placeholder(column, len(params), JSON_SOURCE_FIELDS)}"
            )
        assignments.append("updated_at = NOW()")

        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE content_sources
                    SET {", ".join(assignments)}
                    WHERE id = $1
                    RETURNING *
                    """,
                    *params,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("update_source", str(e)) from e
        if row is None:
            raise ContentSourceNotFoundError(str(source_id))
        return _row_to_source(row)

    async def delete_source(self, source_id: UUID) -> bool:
        """Delete a source and, by cascade, its items. Returns True if deleted."""
        try:
            async with self._postgres.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM content_sources WHERE id = $1",
                    source_id,
                )
                deleted = result.split()[-1] != "0"
                if deleted:
                    logger.info("content_source_deleted", source_id=str(source_id))
                return deleted
        except asyncpg.PostgresError as e:
            raise DatabaseError("delete_source", str(e)) from e

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def create_item(
        self, organization_id: UUID, source_id: UUID, raw: RawContentItem
    ) -> ContentItem:
        """Insert a new item. Fails on a duplicate (source_id, external_id)."""
        fields = item_fields_from_raw(organization_id, raw)
        columns = ["source_id", "external_id", *fields.keys()]
        params: list[Any] = [source_id, raw.external_id]
        params.extend(_encode_value(c, v, JSON_ITEM_FIELDS) for c, v in fields.items())
        placeholders = [
            _placeholder(column, index, JSON_ITEM_FIELDS)
            for index, column in enumerate(columns, start=1)
        ]
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO content_items ({", ".join(columns)})
                    VALUES ({", ".join(placeholders)})
                    RETURNING {ITEM_COLUMNS}
                    """,
                    *params,
                )
                return _row_to_item(row)
        except asyncpg.PostgresError as e:
            raise DatabaseError("create_item", str(e)) from e

    async def upsert_item(
        self,
        source_id: UUID,
        external_id: str,
        fields: dict[str, Any],
    ) -> ContentItem:
        """
        Insert or update an item keyed on (source_id, external_id).

        On conflict only the passed fields are overwritten and updated_at
        is bumped. Raw sync passes source-side fields only, so AI-derived
        columns survive re-syncs untouched.

        Args:
            source_id: Owning source
            external_id: Identifier in the source system
            fields: Column values; organization_id and type are required

        Returns:
            The stored ContentItem (same id on every call)

        Raises:
            ValidationError: If required or unknown fields are passed
            DatabaseError: If the upsert fails
        """
        for required in ("organization_id", "type"):
            if fields.get(required) is None:
                raise ValidationError(required, "required for upsert_item")
        allowed = {"organization_id", "type", *SOURCE_ITEM_FIELDS, *AI_ITEM_FIELDS}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(", ".join(sorted(unknown)), "not an item field")

        columns = ["source_id", "external_id", *fields.keys()]
        params: list[Any] = [source_id, external_id]
        params.extend(_encode_value(c, v, JSON_ITEM_FIELDS) for c, v in fields.items())
        placeholders = [
            _placeholder(column, index, JSON_ITEM_FIELDS)
            for index, column in enumerate(columns, start=1)
        ]
        updates = [
            f"{column} = EXCLUDED.{column}"
            for column in fields
            if column != "organization_id"
        ]
        updates.append("updated_at = NOW()")

        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO content_items ({", ".join(columns)})
                    VALUES ({", ".join(placeholders)})
                    ON CONFLICT (source_id, external_id) DO UPDATE
                    SET {", ".join(updates)}
                    RETURNING {ITEM_COLUMNS}, (xmax = 0) AS inserted
                    """,
                    *params,
                )
                item = _row_to_item(row)
                logger.debug(
                    "content_item_upserted",
                    item_id=str(item.id),
                    source_id=str(source_id),
                    external_id=external_id,
                    inserted=row.get("inserted"),
                )
                return item
        except asyncpg.PostgresError as e:
            raise DatabaseError("upsert_item", str(e)) from e

    async def upsert_raw_item(
        self, organization_id: UUID, source_id: UUID, raw: RawContentItem
    ) -> ContentItem:
        """Upsert adapter output through ``upsert_item``."""
        return await self.upsert_item(
            source_id, raw.external_id, item_fields_from_raw(organization_id, raw)
        )

    async def get_item_option(self, item_id: UUID) -> Optional[ContentItem]:
        """Get an item by ID, or None if it does not exist."""
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {ITEM_COLUMNS} FROM content_items WHERE id = $1",
                    item_id,
                )
                return _row_to_item(row) if row else None
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_item", str(e)) from e

    async def get_item(self, item_id: UUID) -> ContentItem:
        """
        Get an item by ID.

        Raises:
            ContentItemNotFoundError: If the item does not exist
        """
        item = await self.get_item_option(item_id)
        if item is None:
            raise ContentItemNotFoundError(str(item_id))
        return item

    async def get_item_by_external_id(
        self, source_id: UUID, external_id: str
    ) -> Optional[ContentItem]:
        """Look up an item by its dedup key."""
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {ITEM_COLUMNS} FROM content_items
                    WHERE source_id = $1 AND external_id = $2
                    """,
                    source_id,
                    external_id,
                )
                return _row_to_item(row) if row else None
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_item_by_external_id", str(e)) from e

    async def get_items_by_ids(self, item_ids: Sequence[UUID]) -> list[ContentItem]:
        """Fetch several items at once; missing ids are ignored."""
        if not item_ids:
            return []
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT {ITEM_COLUMNS} FROM content_items WHERE id = ANY($1::uuid[])",
                    list(item_ids),
                )
                return [_row_to_item(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_items_by_ids", str(e)) from e

    async def resolve_external_ids(
        self, source_id: UUID, external_ids: Sequence[str]
    ) -> dict[str, UUID]:
        """Map external ids of one source to stored item ids."""
        if not external_ids:
            return {}
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, external_id FROM content_items
                    WHERE source_id = $1 AND external_id = ANY($2::text[])
                    """,
                    source_id,
                    list(external_ids),
                )
                return {row["external_id"]: row["id"] for row in rows}
        except asyncpg.PostgresError as e:
            raise DatabaseError("resolve_external_ids", str(e)) from e

    async def list_items(
        self,
        filters: Optional[ContentItemFilters] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> PaginatedResult[ContentItem]:
        """
        List items with filters, pagination and sorting.

        Args:
            filters: Item filters
            limit: Page size
            offset: Rows to skip
            sort_by: created_at, created_at_source, updated_at or title
            sort_order: asc or desc

        Returns:
            PaginatedResult with the page and the total match count
        """
        if sort_by not in ITEM_SORT_FIELDS:
            raise ValidationError("sort_by", f"must be one of {sorted(ITEM_SORT_FIELDS)}")
        direction = sort_order.upper()
        if direction not in {"ASC", "DESC"}:
            raise ValidationError("sort_order", "must be 'asc' or 'desc'")

        clauses: list[str] = []
        params: list[Any] = []
        if filters is not None:
            if filters.organization_id is not None:
                params.append(filters.organization_id)
                clauses.append(f"organization_id = ${len(params)}")
            if filters.source_id is not None:
                params.append(filters.source_id)
                clauses.append(f"source_id = ${len(params)}")
            if filters.type is not None:
                params.append(filters.type.value)
                clauses.append(f"type = ${len(params)}")
            if filters.processing_status is not None:
                params.append(filters.processing_status.value)
                clauses.append(f"processing_status = ${len(params)}")
            if filters.author_id is not None:
                params.append(filters.author_id)
                clauses.append(f"author_id = ${len(params)}")
            if filters.tags:
                params.append(list(filters.tags))
                clauses.append(f"tags ?| ${len(params)}::text[]")
            if filters.created_after is not None:
                params.append(filters.created_after)
                clauses.append(f"created_at >= ${len(params)}")
            if filters.created_before is not None:
                params.append(filters.created_before)
                clauses.append(f"created_at <= ${len(params)}")
            if filters.search_query:
                params.append(f"%{filters.search_query}%")
                clauses.append(
                    f"(title ILIKE ${len(params)} OR search_text ILIKE ${len(params)})"
                )
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""

        try:
            async with self._postgres.pool.acquire() as conn:
                total = await conn.fetchval(
                    f"SELECT COUNT(*) FROM content_items {where}",
                    *params,
                )
                rows = await conn.fetch(
                    f"""
                    SELECT {ITEM_COLUMNS} FROM content_items
                    {where}
                    ORDER BY {sort_by} {direction} NULLS LAST
                    LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                    """,
                    *params,
                    limit,
                    offset,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_items", str(e)) from e

        items = [_row_to_item(row) for row in rows]
        return PaginatedResult[ContentItem](
            items=items,
            total=total or 0,
            limit=limit,
            offset=offset,
            has_more=offset + len(items) < (total or 0),
        )

    async def get_item_with_relations(self, item_id: UUID) -> ContentItemWithRelations:
        """
        Get an item joined with its source, chunks, participants and edges.

        Raises:
            ContentItemNotFoundError: If the item does not exist
        """
        item = await self.get_item(item_id)
        source = await self.get_source_option(item.source_id)
        chunks = await self.list_chunks(item_id)
        participants = await self.list_participants(item_id)
        outgoing = await self.list_relationships(item_id, RelationshipDirection.OUTGOING)
        incoming = await self.list_relationships(item_id, RelationshipDirection.INCOMING)
        return ContentItemWithRelations(
            **item.model_dump(),
            source=source,
            chunks=chunks,
            participants=participants,
            outgoing_relationships=outgoing,
            incoming_relationships=incoming,
        )

    async def update_item(self, item_id: UUID, updates: dict[str, Any]) -> ContentItem:
        """
        Update an item, including AI-derived fields.

        Raises:
            ValidationError: If an unknown field is passed
            ContentItemNotFoundError: If the item does not exist
        """
        allowed = {*SOURCE_ITEM_FIELDS, *AI_ITEM_FIELDS}
        unknown = set(updates) - allowed
        if unknown:
            raise ValidationError(", ".join(sorted(unknown)), "not an updatable item field")
        if not updates:
            return await self.get_item(item_id)

        assignments: list[str] = []
        params: list[Any] = [item_id]
        for column, value in updates.items():
            params.append(_encode_value(column, value, JSON_ITEM_FIELDS))
            assignments.append(
                f"{column} = {_placeholder(column, len(params), JSON_ITEM_FIELDS)}"
            )
        assignments.append("updated_at = NOW()")

        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE content_items
                    SET {", ".join(assignments)}
                    WHERE id = $1
                    RETURNING {ITEM_COLUMNS}
                    """,
                    *params,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("update_item", str(e)) from e
        if row is None:
            raise ContentItemNotFoundError(str(item_id))
        return _row_to_item(row)

    async def update_processing_status(
        self,
        item_ids: Sequence[UUID],
        status: ProcessingStatus,
        error: Optional[str] = None,
    ) -> int:
        """Set processing status on several items. Returns rows updated.

        processed_at is stamped when the status is terminal.
        """
        if not item_ids:
            return 0
        try:
            async with self._postgres.pool.acquire() as conn:
                result = await conn.execute(
                    """
                    UPDATE content_items
                    SET processing_status = $2,
                        processing_error = $3,
                        processed_at = CASE
                            WHEN $2 IN ('completed', 'failed') THEN NOW()
                            ELSE processed_at
                        END,
                        updated_at = NOW()
                    WHERE id = ANY($1::uuid[])
                    """,
                    list(item_ids),
                    status.value,
                    error,
                )
                return int(result.split()[-1])
        except asyncpg.PostgresError as e:
            raise DatabaseError("update_processing_status", str(e)) from e

    async def delete_item(self, item_id: UUID) -> bool:
        """Delete an item. Returns True if a row was deleted."""
        try:
            async with self._postgres.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM content_items WHERE id = $1",
                    item_id,
                )
                return result.split()[-1] != "0"
        except asyncpg.PostgresError as e:
            raise DatabaseError("delete_item", str(e)) from e

    async def delete_items_by_source(self, source_id: UUID) -> int:
        """Delete every item of a source. Returns rows deleted."""
        try:
            async with self._postgres.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM content_items WHERE source_id = $1",
                    source_id,
                )
                count = int(result.split()[-1])
                logger.info(
                    "content_items_deleted_by_source",
                    source_id=str(source_id),
                    count=count,
                )
                return count
        except asyncpg.PostgresError as e:
            raise DatabaseError("delete_items_by_source", str(e)) from e

    async def find_similar_items(
        self,
        organization_id: UUID,
        embedding: Sequence[float],
        exclude_item_id: Optional[UUID] = None,
        limit: int = 10,
        min_similarity: float = 0.7,
    ) -> list[tuple[ContentItem, float]]:
        """
        Nearest items by cosine similarity using pgvector.

        Returns:
            (item, similarity) pairs, most similar first
        """
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {ITEM_COLUMNS},
                        1 - (embedding <=> $2::vector) AS similarity
                    FROM content_items
                    WHERE organization_id = $1
                        AND embedding IS NOT NULL
                        AND ($3::uuid IS NULL OR id <> $3::uuid)
                        AND 1 - (embedding <=> $2::vector) >= $4
                    ORDER BY embedding <=> $2::vector
                    LIMIT $5
                    """,
                    organization_id,
                    format_vector(embedding),
                    exclude_item_id,
                    min_similarity,
                    limit,
                )
                return [(_row_to_item(row), float(row["similarity"])) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("find_similar_items", str(e)) from e

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def create_relationship(
        self,
        source_item_id: UUID,
        target_item_id: UUID,
        relationship_type: RelationshipType,
        confidence: float = 1.0,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ContentRelationship:
        """
        Upsert a directed edge.

        Re-detecting an existing edge refreshes its confidence and
        metadata instead of inserting a duplicate.

        Raises:
            ValidationError: If confidence is outside [0, 1] or the edge is a self-loop
        """
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError("confidence", "must be between 0 and 1")
        if source_item_id == target_item_id:
            raise ValidationError("target_item_id", "must differ from source_item_id")
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO content_relationships
                        (source_item_id, target_item_id, relationship_type, confidence, metadata)
                    VALUES ($1, $2, $3, $4, $5::jsonb)
                    ON CONFLICT (source_item_id, target_item_id, relationship_type) DO UPDATE
                    SET confidence = EXCLUDED.confidence,
                        metadata = EXCLUDED.metadata
                    RETURNING *
                    """,
                    source_item_id,
                    target_item_id,
                    relationship_type.value,
                    confidence,
                    dump_json(metadata or {}),
                )
                return _row_to_relationship(row)
        except asyncpg.PostgresError as e:
            raise DatabaseError("create_relationship", str(e)) from e

    async def list_relationships(
        self,
        item_id: UUID,
        direction: RelationshipDirection = RelationshipDirection.BOTH,
    ) -> list[ContentRelationship]:
        """List edges touching an item in the given direction."""
        if direction == RelationshipDirection.OUTGOING:
            condition = "source_item_id = $1"
        elif direction == RelationshipDirection.INCOMING:
            condition = "target_item_id = $1"
        else:
            condition = "(source_item_id = $1 OR target_item_id = $1)"
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT * FROM content_relationships
                    WHERE {condition}
                    ORDER BY confidence DESC
                    """,
                    item_id,
                )
                return [_row_to_relationship(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_relationships", str(e)) from e

    async def delete_relationship(self, relationship_id: UUID) -> bool:
        """Delete an edge. Returns True if a row was deleted."""
        try:
            async with self._postgres.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM content_relationships WHERE id = $1",
                    relationship_id,
                )
                return result.split()[-1] != "0"
        except asyncpg.PostgresError as e:
            raise DatabaseError("delete_relationship", str(e)) from e

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    async def create_participant(
        self,
        item_id: UUID,
        participant: RawParticipant,
        user_id: Optional[UUID] = None,
    ) -> ContentParticipant:
        """Attach a participant to an item."""
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO content_participants
                        (content_item_id, user_id, external_id, name, email, role)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING *
                    """,
                    item_id,
                    user_id,
                    participant.external_id,
                    participant.name,
                    participant.email,
                    participant.role.value,
                )
                return _row_to_participant(row)
        except asyncpg.PostgresError as e:
            raise DatabaseError("create_participant", str(e)) from e

    async def create_participants_batch(
        self,
        item_id: UUID,
        participants: Sequence[RawParticipant],
        replace: bool = False,
    ) -> list[ContentParticipant]:
        """
        Attach several participants in one transaction.

        Args:
            item_id: Item the participants belong to
            participants: Participants to insert
            replace: Delete the item's existing participants first, which
                keeps re-syncs from accumulating duplicates
        """
        if not participants and not replace:
            return []
        try:
            async with self._postgres.pool.acquire() as conn:
                async with conn.transaction():
                    if replace:
                        await conn.execute(
                            "DELETE FROM content_participants WHERE content_item_id = $1",
                            item_id,
                        )
                    created = []
                    for participant in participants:
                        row = await conn.fetchrow(
                            """
                            INSERT INTO content_participants
                                (content_item_id, external_id, name, email, role)
                            VALUES ($1, $2, $3, $4, $5)
                            RETURNING *
                            """,
                            item_id,
                            participant.external_id,
                            participant.name,
                            participant.email,
                            participant.role.value,
                        )
                        created.append(_row_to_participant(row))
                    return created
        except asyncpg.PostgresError as e:
            raise DatabaseError("create_participants_batch", str(e)) from e

    async def list_participants(self, item_id: UUID) -> list[ContentParticipant]:
        """List participants of an item."""
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM content_participants
                    WHERE content_item_id = $1
                    ORDER BY created_at
                    """,
                    item_id,
                )
                return [_row_to_participant(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_participants", str(e)) from e

    async def delete_participant(self, participant_id: UUID) -> bool:
        """Delete a participant. Returns True if a row was deleted."""
        try:
            async with self._postgres.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM content_participants WHERE id = $1",
                    participant_id,
                )
                return result.split()[-1] != "0"
        except asyncpg.PostgresError as e:
            raise DatabaseError("delete_participant", str(e)) from e

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def create_chunks(
        self, item_id: UUID, chunks: Sequence[dict[str, Any]]
    ) -> list[ContentChunk]:
        """
        Upsert chunks of an item keyed on (content_item_id, chunk_index).

        Each chunk dict holds chunk_index and content, plus optional
        start_offset, end_offset, start_time, end_time and embedding.
        """
        try:
            async with self._postgres.pool.acquire() as conn:
                async with conn.transaction():
                    created = []
                    for chunk in chunks:
                        embedding = chunk.get("embedding")
                        row = await conn.fetchrow(
                            """
                            INSERT INTO content_chunks
                                (content_item_id, chunk_index, content, start_offset,
                                 end_offset, start_time, end_time, embedding)
                            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::vector)
                            ON CONFLICT (content_item_id, chunk_index) DO UPDATE
                            SET content = EXCLUDED.content,
                                start_offset = EXCLUDED.start_offset,
                                end_offset = EXCLUDED.end_offset,
                                start_time = EXCLUDED.start_time,
                                end_time = EXCLUDED.end_time,
                                embedding = EXCLUDED.embedding
                            RETURNING id, content_item_id, chunk_index, content,
                                start_offset, end_offset, start_time, end_time,
                                embedding::text AS embedding, created_at
                            """,
                            item_id,
                            chunk["chunk_index"],
                            chunk["content"],
                            chunk.get("start_offset"),
                            chunk.get("end_offset"),
                            chunk.get("start_time"),
                            chunk.get("end_time"),
                            format_vector(embedding) if embedding else None,
                        )
                        created.append(_row_to_chunk(row))
                    return created
        except asyncpg.PostgresError as e:
            raise DatabaseError("create_chunks", str(e)) from e

    async def list_chunks(self, item_id: UUID) -> list[ContentChunk]:
        """List chunks of an item in index order."""
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, content_item_id, chunk_index, content, start_offset,
                        end_offset, start_time, end_time,
                        embedding::text AS embedding, created_at
                    FROM content_chunks
                    WHERE content_item_id = $1
                    ORDER BY chunk_index
                    """,
                    item_id,
                )
                return [_row_to_chunk(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_chunks", str(e)) from e

    async def delete_chunks(self, item_id: UUID) -> int:
        """Delete every chunk of an item. Returns rows deleted."""
        try:
            async with self._postgres.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM content_chunks WHERE content_item_id = $1",
                    item_id,
                )
                return int(result.split()[-1])
        except asyncpg.PostgresError as e:
            raise DatabaseError("delete_chunks", str(e)) from e
