"""Sync cursor store: resumable per-(source, subresource) sync state."""

from typing import Any, Optional
from uuid import UUID

import asyncpg
import structlog

from content_sync.core.errors import DatabaseError
from content_sync.models import SyncCursor

from .postgres import PostgresClient, dump_json, parse_json

logger = structlog.get_logger(__name__)

# Key used for source-wide state (as opposed to a channel, repo or page).
SOURCE_CURSOR_KEY = "_source"


def _row_to_cursor(row: Any) -> SyncCursor:
    return SyncCursor(
        id=row["id"],
        source_id=row["source_id"],
        key=row["key"],
        state=parse_json(row["state"], {}),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SyncCursorStore:
    """Durable sync positions keyed on (source_id, key).

    Writes are single-statement upserts that merge the JSONB state, so a
    scheduled sync and a webhook refresh can race without locks: the
    unique constraint prevents duplicate rows and the last writer wins on
    each state field. Cursor writes are not coupled to content writes;
    replaying a page after a failed cursor write is absorbed by the item
    dedup key.
    """

    def __init__(self, postgres_client: PostgresClient) -> None:
        self._postgres = postgres_client

    async def get(self, source_id: UUID, key: str = SOURCE_CURSOR_KEY) -> Optional[SyncCursor]:
        """Get the cursor record for a subresource, or None."""
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM sync_cursors WHERE source_id = $1 AND key = $2",
                    source_id,
                    key,
                )
                return _row_to_cursor(row) if row else None
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_cursor", str(e)) from e

    async def upsert(
        self,
        source_id: UUID,
        key: str,
        update: dict[str, Any],
        defaults: Optional[dict[str, Any]] = None,
    ) -> SyncCursor:
        """
        Create or merge a cursor record.

        Args:
            source_id: Owning source
            key: Subresource key (channel id, repo full name, page id)
            update: Fields to merge into the stored state
            defaults: Fields written only when the record is first created;
                values in ``update`` take precedence over them

        Returns:
            The stored SyncCursor with updated_at bumped

        Raises:
            DatabaseError: If the upsert fails
        """
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO sync_cursors (source_id, key, state)
                    VALUES ($1, $2, $4::jsonb || $3::jsonb)
                    ON CONFLICT (source_id, key) DO UPDATE
                    SET state = sync_cursors.state || $3::jsonb,
                        updated_at = NOW()
                    RETURNING *
                    """,
                    source_id,
                    key,
                    dump_json(update),
                    dump_json(defaults or {}),
                )
                cursor = _row_to_cursor(row)
                logger.debug(
                    "sync_cursor_upserted",
                    source_id=str(source_id),
                    key=key,
                    fields=sorted(update),
                )
                return cursor
        except asyncpg.PostgresError as e:
            raise DatabaseError("upsert_cursor", str(e)) from e

    async def list_for_source(self, source_id: UUID) -> list[SyncCursor]:
        """List every cursor record of a source."""
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT * FROM sync_cursors WHERE source_id = $1 ORDER BY key",
                    source_id,
                )
                return [_row_to_cursor(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_cursors", str(e)) from e

    async def delete(self, source_id: UUID, key: str) -> bool:
        """Forget a subresource cursor. Returns True if a row was deleted."""
        try:
            async with self._postgres.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM sync_cursors WHERE source_id = $1 AND key = $2",
                    source_id,
                    key,
                )
                return result.split()[-1] != "0"
        except asyncpg.PostgresError as e:
            raise DatabaseError("delete_cursor", str(e)) from e
