"""Redis client with Streams support for post-ingestion job handoff."""

import json
from datetime import datetime
from enum import Enum
from typing import Any, AsyncGenerator, Optional
from uuid import UUID

import redis.asyncio as redis
import structlog

from content_sync.core.errors import RedisError

logger = structlog.get_logger(__name__)

# Stream names for job queue
ENRICH_JOBS_STREAM = "content.enrich"
RELATIONSHIP_JOBS_STREAM = "content.relationships"
SYNC_JOBS_STREAM = "content.sync"

# Consumer group names
ENRICH_CONSUMER_GROUP = "enrich-workers"
RELATIONSHIP_CONSUMER_GROUP = "relationship-workers"
SYNC_CONSUMER_GROUP = "sync-workers"


def _serialize_value(value: Any) -> str:
    """Serialize a value for Redis storage."""
    if isinstance(value, (UUID, datetime)):
        return str(value)
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _deserialize_message(data: dict[bytes, bytes]) -> dict[str, Any]:
    """Deserialize a Redis message to a dictionary."""
    result = {}
    for key, value in data.items():
        text = _decode(value)
        try:
            result[_decode(key)] = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            result[_decode(key)] = text
    return result


def _job_log_fields(job: dict[str, Any]) -> dict[str, Any]:
    """Content job fields worth carrying into the log context."""
    item_ids = job.get("item_ids")
    fields = {
        "source_id": job.get("source_id"),
        "organization_id": job.get("organization_id"),
        "reason": job.get("reason"),
        "item_count": len(item_ids) if isinstance(item_ids, list) else None,
    }
    return {k: str(v) if isinstance(v, UUID) else v for k, v in fields.items() if v is not None}


class RedisClient:
    """
    Redis client with Streams support for async job processing.

    Decouples the ingestion path from follow-up work:
    - Sync run -> Redis Stream (content.enrich) -> Enrichment Worker
    - Enrichment Worker -> Redis Stream (content.relationships) -> Relationship Worker
    - Sync run over budget -> Redis Stream (content.sync) -> Sync Worker
    """

    def __init__(self, url: str) -> None:
        """
        Initialize Redis client.

        Args:
            url: Redis connection URL (e.g., redis://localhost:6379)
        """
        self.url = url
        self._client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._client is None:
            self._client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=False,  # We handle decoding ourselves
            )
            logger.info("redis_connected", url=self.url.split("@")[-1])

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> redis.Redis:
        """Get the Redis client, raising error if not connected."""
        if self._client is None:
            raise RedisError("connection", "Redis client not connected")
        return self._client

    async def publish_job(self, stream: str, job_data: dict[str, Any]) -> str:
        """
        Append a content job to a stream.

        None-valued fields are dropped, UUIDs and enums become strings and
        ``item_ids`` lists are stored as JSON.

        Returns:
            Message ID assigned by Redis

        Raises:
            RedisError: If the append fails
        """
        fields = {k: _serialize_value(v) for k, v in job_data.items() if v is not None}
        try:
            message_id = _decode(await self.client.xadd(stream, fields))
        except redis.RedisError as e:
            logger.error("content_job_publish_failed", stream=stream, error=str(e))
            raise RedisError("publish_job", str(e)) from e
        logger.info(
            "content_job_published",
            stream=stream,
            message_id=message_id,
            **_job_log_fields(job_data),
        )
        return message_id

    async def ensure_consumer_group(self, stream: str, group: str) -> None:
        """Create the worker group on a stream, creating the stream too.

        An existing group is left as is.
        """
        try:
            await self.client.xgroup_create(stream, group, id="0", mkstream=True)
        except redis.ResponseError as e:
            if "BUSYGROUP" in str(e):
                return
            raise RedisError("ensure_consumer_group", str(e)) from e
        logger.info("consumer_group_created", stream=stream, group=group)

    async def consume_jobs(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 1,
        block_ms: int = 5000,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """
        Yield content jobs delivered to this consumer.

        A job is acknowledged when the worker resumes the generator, so a
        worker that dies mid-job leaves it pending for redelivery. Workers
        handle their own retries by republishing a failed job.

        Args:
            stream: Stream name to consume from
            group: Consumer group name
            consumer: Consumer name (unique identifier for this worker)
            count: Number of messages to fetch at once
            block_ms: Milliseconds to block waiting for messages

        Yields:
            Job dictionaries with a ``message_id`` field added

        Raises:
            RedisError: If reading or acknowledging fails
        """
        await self.ensure_consumer_group(stream, group)

        while True:
            try:
                batches = await self.client.xreadgroup(
                    groupname=group,
                    consumername=consumer,
                    streams={stream: ">"},
                    count=count,
                    block=block_ms,
                )
            except redis.RedisError as e:
                logger.error("content_job_read_failed", stream=stream, error=str(e))
                raise RedisError("consume_jobs", str(e)) from e

            for _stream_name, entries in batches or []:
                for raw_id, data in entries:
                    job = _deserialize_message(data)
                    job["message_id"] = _decode(raw_id)
                    logger.info(
                        "content_job_received",
                        stream=stream,
                        consumer=consumer,
                        message_id=job["message_id"],
                        **_job_log_fields(job),
                    )

                    yield job

                    try:
                        await self.client.xack(stream, group, raw_id)
                    except redis.RedisError as e:
                        raise RedisError("ack_job", str(e)) from e
                    logger.debug(
                        "content_job_acknowledged",
                        stream=stream,
                        message_id=job["message_id"],
                    )
