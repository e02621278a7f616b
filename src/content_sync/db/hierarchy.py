"""Notion page hierarchy records."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import asyncpg
import structlog

from content_sync.core.errors import DatabaseError
from content_sync.models import NotionPageHierarchy

from .postgres import PostgresClient, dump_json, parse_json

logger = structlog.get_logger(__name__)


def _row_to_hierarchy(row: Any) -> NotionPageHierarchy:
    return NotionPageHierarchy(
        id=row["id"],
        source_id=row["source_id"],
        page_id=row["page_id"],
        parent_id=row["parent_id"],
        parent_type=row["parent_type"],
        depth=row["depth"],
        path=parse_json(row["path"], []),
        title_path=parse_json(row["title_path"], []),
        is_database=row["is_database"],
        is_archived=row["is_archived"],
        last_edited_time=row["last_edited_time"],
    )


class PageHierarchyStore:
    """Upsert and read page positions keyed on (source_id, page_id)."""

    def __init__(self, postgres_client: PostgresClient) -> None:
        self._postgres = postgres_client

    async def upsert(
        self,
        source_id: UUID,
        page_id: str,
        parent_id: Optional[str],
        parent_type: Optional[str],
        path: list[str],
        title_path: list[str],
        is_database: bool = False,
        is_archived: bool = False,
        last_edited_time: Optional[datetime] = None,
    ) -> NotionPageHierarchy:
        """Record where a page sits in the workspace tree."""
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO notion_page_hierarchy
                        (source_id, page_id, parent_id, parent_type, depth, path,
                         title_path, is_database, is_archived, last_edited_time)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10)
                    ON CONFLICT (source_id, page_id) DO UPDATE
                    SET parent_id = EXCLUDED.parent_id,
                        parent_type = EXCLUDED.parent_type,
                        depth = EXCLUDED.depth,
                        path = EXCLUDED.path,
                        title_path = EXCLUDED.title_path,
                        is_database = EXCLUDED.is_database,
                        is_archived = EXCLUDED.is_archived,
                        last_edited_time = EXCLUDED.last_edited_time
                    RETURNING *
                    """,
                    source_id,
                    page_id,
                    parent_id,
                    parent_type,
                    max(len(path) - 1, 0),
                    dump_json(path),
                    dump_json(title_path),
                    is_database,
                    is_archived,
                    last_edited_time,
                )
                return _row_to_hierarchy(row)
        except asyncpg.PostgresError as e:
            raise DatabaseError("upsert_page_hierarchy", str(e)) from e

    async def get(self, source_id: UUID, page_id: str) -> Optional[NotionPageHierarchy]:
        """Get the stored position of a page, or None."""
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT * FROM notion_page_hierarchy
                    WHERE source_id = $1 AND page_id = $2
                    """,
                    source_id,
                    page_id,
                )
                return _row_to_hierarchy(row) if row else None
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_page_hierarchy", str(e)) from e

    async def list_children(self, source_id: UUID, parent_id: str) -> list[NotionPageHierarchy]:
        """List direct children of a page."""
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM notion_page_hierarchy
                    WHERE source_id = $1 AND parent_id = $2
                    ORDER BY page_id
                    """,
                    source_id,
                    parent_id,
                )
                return [_row_to_hierarchy(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_page_children", str(e)) from e
