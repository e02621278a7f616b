"""Restore Slack file attachments into object storage.

Attachment handling never blocks ingestion: every failure degrades to a
``skipped`` attachment record with a human-readable reason.
"""

import asyncio
import re
from typing import Any, Optional

import httpx
import structlog

from content_sync.core.errors import StorageError
from content_sync.models import FileAttachment
from content_sync.storage import ObjectStorage

logger = structlog.get_logger(__name__)

MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024
DEFAULT_DOWNLOAD_CONCURRENCY = 10
SLACK_FILES_PREFIX = "slack-files"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def generate_file_key(source_id: str, file_id: str, filename: str) -> str:
    """Storage key ``slack-files/{source_id}/{file_id}/{sanitized name}``."""
    sanitized = _UNSAFE_FILENAME_CHARS.sub("_", filename)
    return f"{SLACK_FILES_PREFIX}/{source_id}/{file_id}/{sanitized}"


def _base_attachment(file: dict[str, Any]) -> FileAttachment:
    return FileAttachment(
        id=file.get("id") or "unknown",
        name=file.get("name") or "unknown",
        mimetype=file.get("mimetype") or "application/octet-stream",
        url=file.get("url_private") or "",
        size=file.get("size") or 0,
    )


def _skip(attachment: FileAttachment, reason: str) -> FileAttachment:
    attachment.skipped = True
    attachment.skip_reason = reason
    return attachment


class AttachmentProcessor:
    """Downloads files with the bot token and uploads them to storage.

    A file is restored only when it is at most 10MB, storage is
    configured, and the source enables file sync. Downloads take a slot
    from ``request_slots``, which the Slack adapter shares with its API
    calls.
    """

    def __init__(
        self,
        storage: Optional[ObjectStorage],
        http_client: httpx.AsyncClient,
        request_slots: Optional[asyncio.Semaphore] = None,
    ) -> None:
        self._storage = storage
        self._http = http_client
        self._slots = request_slots or asyncio.Semaphore(DEFAULT_DOWNLOAD_CONCURRENCY)

    @property
    def storage_configured(self) -> bool:
        return self._storage is not None

    async def process_files(
        self,
        files: list[dict[str, Any]],
        source_id: str,
        access_token: str,
        sync_files: bool,
    ) -> list[FileAttachment]:
        """Process every file of a message or thread concurrently."""
        if not files:
            return []
        if not sync_files:
            return [_skip(_base_attachment(f), "File sync disabled") for f in files]

        return list(
            await asyncio.gather(
                *(self.process_file(f, source_id, access_token) for f in files)
            )
        )

    async def _download(self, url: str, access_token: str) -> bytes:
        async with self._slots:
            response = await self._http.get(
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                follow_redirects=True,
            )
        response.raise_for_status()
        return response.content

    async def process_file(
        self,
        file: dict[str, Any],
        source_id: str,
        access_token: str,
    ) -> FileAttachment:
        """Restore one file, or describe why it was skipped."""
        attachment = _base_attachment(file)

        if (attachment.size or 0) > MAX_FILE_SIZE_BYTES:
            return _skip(
                attachment,
                f"File exceeds {MAX_FILE_SIZE_BYTES // (1024 * 1024)}MB limit",
            )
        if self._storage is None:
            return _skip(attachment, "Storage not configured")
        # Tombstoned and external files carry no private download URL
        if not attachment.url:
            return _skip(attachment, "No download URL")

        try:
            data = await self._download(attachment.url, access_token)
            if len(data) > MAX_FILE_SIZE_BYTES:
                return _skip(
                    attachment,
                    f"File exceeds {MAX_FILE_SIZE_BYTES // (1024 * 1024)}MB limit",
                )

            key = generate_file_key(source_id, attachment.id, attachment.name)
            await self._storage.upload_file(
                data,
                key,
                content_type=attachment.mimetype,
                metadata={
                    "sourceId": source_id,
                    "slackFileId": attachment.id,
                    "originalName": attachment.name,
                },
            )
        except StorageError as e:
            logger.warning(
                "attachment_upload_failed",
                source_id=source_id,
                file_id=attachment.id,
                error=str(e),
            )
            return _skip(attachment, f"Upload failed: {e}")
        except Exception as e:
            logger.warning(
                "attachment_processing_failed",
                source_id=source_id,
                file_id=attachment.id,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            return _skip(attachment, f"Processing failed: {e}")

        attachment.storage_key = key
        return attachment
