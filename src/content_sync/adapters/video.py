"""Video adapter: exposes the internal videos table as content items.

Unlike the external adapters this one reads the application's own
``videos`` table, so it needs no credentials and no HTTP client.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import asyncpg
import structlog

from content_sync.core.errors import ContentSourceSyncError
from content_sync.db.postgres import PostgresClient, parse_json
from content_sync.db.repository import ContentRepository
from content_sync.models import (
    ContentItemType,
    ContentSource,
    ContentSourceFilters,
    ContentSourceType,
    FetchOptions,
    FetchResult,
    ParticipantRole,
    ProcessingStatus,
    RawContentItem,
    RawParticipant,
    VideoMetadata,
)

from .base import ContentSourceAdapter

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 50
VIDEO_SOURCE_NAME = "Videos"

VIDEO_COLUMNS = """
    id, organization_id, title, transcript, duration, video_url,
    thumbnail_url, ai_tags, author_id, created_at, updated_at
"""


def parse_duration(duration: Optional[str]) -> int:
    """Parse ``HH:MM:SS`` or ``MM:SS`` into seconds; anything else is 0."""
    if not duration:
        return 0
    try:
        parts = [int(part) for part in duration.split(":")]
    except ValueError:
        return 0
    if len(parts) == 3:
        return parts[0] * 3600 + parts[1] * 60 + parts[2]
    if len(parts) == 2:
        return parts[0] * 60 + parts[1]
    return 0


def video_to_raw(video: Any) -> RawContentItem:
    """Convert a ``videos`` row into a raw content item."""
    video_id = str(video["id"])
    author_id = video["author_id"]
    participants = []
    if author_id:
        participants.append(
            RawParticipant(
                external_id=str(author_id),
                name="Author",
                role=ParticipantRole.AUTHOR,
            )
        )
    return RawContentItem(
        external_id=video_id,
        type=ContentItemType.VIDEO,
        title=video["title"],
        content=video["transcript"],
        created_at_source=video["created_at"],
        updated_at_source=video["updated_at"],
        metadata=VideoMetadata(
            video_id=video_id,
            duration=parse_duration(video["duration"]),
            video_url=video["video_url"],
            thumbnail_url=video["thumbnail_url"],
        ),
        tags=list(parse_json(video["ai_tags"], []) or []),
        participants=participants,
    )


class VideoAdapter(ContentSourceAdapter):
    """Adapter over the internal ``videos`` table.

    The cursor is a stringified row offset into the organization's videos,
    newest first.
    """

    def __init__(self, postgres: PostgresClient) -> None:
        super().__init__()
        self._postgres = postgres

    @property
    def source_type(self) -> ContentSourceType:
        return ContentSourceType.VIDEO

    async def _check_credentials(self, source: ContentSource) -> None:
        # Internal source, nothing to check.
        return None

    async def fetch_content(
        self, source: ContentSource, options: FetchOptions
    ) -> FetchResult:
        """Fetch one page of videos, fetching one extra row to detect more."""
        conditions = ["organization_id = $1"]
        params: list[Any] = [source.organization_id]
        if options.since:
            params.append(options.since)
            conditions.append(f"created_at >= ${len(params)}")
        if options.until:
            params.append(options.until)
            conditions.append(f"created_at <= ${len(params)}")

        try:
            offset = int(options.cursor) if options.cursor else 0
        except ValueError:
            offset = 0
        limit = options.limit or DEFAULT_PAGE_SIZE
        params.extend([limit + 1, offset])

        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {VIDEO_COLUMNS} FROM videos
                    WHERE {" AND ".join(conditions)}
                    ORDER BY created_at DESC
                    LIMIT ${len(params) - 1} OFFSET ${len(params)}
                    """,
                    *params,
                )
        except asyncpg.PostgresError as e:
            raise ContentSourceSyncError(
                str(source.id), "fetch_videos", f"Failed to fetch videos: {e}", retryable=False
            ) from e

        has_more = len(rows) > limit
        rows = rows[:limit]
        return FetchResult(
            items=[video_to_raw(row) for row in rows],
            has_more=has_more,
            next_cursor=str(offset + limit) if has_more else None,
        )

    async def fetch_item(
        self, source: ContentSource, external_id: str
    ) -> Optional[RawContentItem]:
        """Fetch one video of the source's organization."""
        try:
            video_id = UUID(external_id)
        except ValueError:
            return None
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {VIDEO_COLUMNS} FROM videos
                    WHERE id = $1 AND organization_id = $2
                    """,
                    video_id,
                    source.organization_id,
                )
        except asyncpg.PostgresError as e:
            raise ContentSourceSyncError(
                str(source.id), "fetch_video", f"Failed to fetch video: {e}", retryable=False
            ) from e
        return video_to_raw(row) if row else None


async def ensure_video_content_source(
    repository: ContentRepository, organization_id: UUID
) -> ContentSource:
    """Return the organization's video source, creating it on first use.

    Videos are synced on demand, so the source has no sync interval.
    """
    existing = await repository.list_sources(
        ContentSourceFilters(organization_id=organization_id, type=ContentSourceType.VIDEO)
    )
    if existing:
        return existing[0]
    return await repository.create_source(
        organization_id,
        VIDEO_SOURCE_NAME,
        ContentSourceType.VIDEO,
        config={"syncInterval": 0},
    )


async def sync_video_to_content(
    postgres: PostgresClient,
    repository: ContentRepository,
    video_id: UUID,
    content_source_id: UUID,
) -> Optional[UUID]:
    """
    Upsert a single video as a content item.

    Args:
        postgres: Client for the videos table
        repository: Content repository
        video_id: Video to sync
        content_source_id: The organization's video source

    Returns:
        Content item id, or None if the video does not exist

    Raises:
        ContentSourceSyncError: If the video cannot be read
        DatabaseError: If the upsert fails
    """
    try:
        async with postgres.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {VIDEO_COLUMNS} FROM videos WHERE id = $1",
                video_id,
            )
    except asyncpg.PostgresError as e:
        raise ContentSourceSyncError(
            str(content_source_id), "fetch_video", f"Failed to fetch video: {e}", retryable=False
        ) from e
    if row is None:
        return None

    item = await repository.upsert_raw_item(
        row["organization_id"], content_source_id, video_to_raw(row)
    )
    return item.id


async def sync_new_video_to_content(
    postgres: PostgresClient,
    repository: ContentRepository,
    video_id: UUID,
    organization_id: UUID,
) -> Optional[UUID]:
    """Ensure the video source exists and sync a freshly uploaded video.

    Failures are logged and reported as None so an upload never fails
    because of content sync.
    """
    try:
        source = await ensure_video_content_source(repository, organization_id)
        return await sync_video_to_content(postgres, repository, video_id, source.id)
    except Exception as e:
        logger.error(
            "video_content_sync_failed",
            video_id=str(video_id),
            organization_id=str(organization_id),
            error=str(e),
        )
        return None


async def update_video_content_item(
    repository: ContentRepository,
    video_id: UUID,
    organization_id: UUID,
    transcript: Optional[str] = None,
    summary: Optional[str] = None,
    tags: Optional[list[str]] = None,
) -> Optional[UUID]:
    """Write processed video data onto its content item.

    Returns:
        Content item id, or None if the video was never synced or the
        update failed
    """
    try:
        sources = await repository.list_sources(
            ContentSourceFilters(organization_id=organization_id, type=ContentSourceType.VIDEO)
        )
        if not sources:
            return None
        item = await repository.get_item_by_external_id(sources[0].id, str(video_id))
        if item is None:
            return None

        updates: dict[str, Any] = {
            "processing_status": ProcessingStatus.COMPLETED,
            "processed_at": datetime.now().astimezone(),
        }
        if transcript is not None:
            updates["content"] = transcript
        if summary is not None:
            updates["summary"] = summary
        if tags is not None:
            updates["tags"] = tags
        updated = await repository.update_item(item.id, updates)
        return updated.id
    except Exception as e:
        logger.error(
            "video_content_update_failed",
            video_id=str(video_id),
            organization_id=str(organization_id),
            error=str(e),
        )
        return None
