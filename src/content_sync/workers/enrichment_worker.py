"""Async enrichment worker.

Consumes batches of freshly synced item ids from the ``content.enrich``
stream, enriches them (search text, summary, embedding) and hands the
enriched items to the relationship worker via ``content.relationships``.
"""

import asyncio
import time
from typing import Optional

import structlog

from content_sync.config import get_settings
from content_sync.core.errors import AppError
from content_sync.db.redis import (
    ENRICH_CONSUMER_GROUP,
    ENRICH_JOBS_STREAM,
    RELATIONSHIP_JOBS_STREAM,
)
from content_sync.models import BatchProcessResult
from content_sync.services import Services, build_services

from .jobs import job_item_ids, job_uuid

logger = structlog.get_logger(__name__)


async def process_enrichment_job(job_data: dict, services: Services) -> BatchProcessResult:
    """
    Process a single enrichment job.

    Args:
        job_data: Job data from the Redis Stream containing:
            - organization_id: Owning organization
            - source_id: Source the items were synced from
            - item_ids: Content item ids to enrich
        services: Wired stores and services

    Returns:
        BatchProcessResult of the enrichment

    Raises:
        ValidationError: If the job payload is malformed
    """
    organization_id = job_uuid(job_data, "organization_id")
    item_ids = job_item_ids(job_data)
    if not item_ids:
        logger.warning("enrichment_job_empty", message_id=job_data.get("message_id"))
        return BatchProcessResult()

    logger.info(
        "enrichment_job_started",
        organization_id=str(organization_id),
        source_id=job_data.get("source_id"),
        item_count=len(item_ids),
    )
    start_time = time.perf_counter()

    result = await services.enricher.process_items_batch(item_ids)

    failed_ids = {error["item_id"] for error in result.errors}
    enriched_ids = [str(i) for i in item_ids if str(i) not in failed_ids]
    if enriched_ids:
        try:
            await services.redis.publish_job(
                RELATIONSHIP_JOBS_STREAM,
                {
                    "organization_id": organization_id,
                    "source_id": job_data.get("source_id", ""),
                    "item_ids": enriched_ids,
                },
            )
        except AppError as e:
            logger.warning("relationship_job_publish_failed", error=e.message)

    logger.info(
        "enrichment_job_completed",
        organization_id=str(organization_id),
        processed=result.processed,
        failed=result.failed,
        processing_time_ms=int((time.perf_counter() - start_time) * 1000),
    )
    return result


async def run_enrichment_worker(
    consumer_name: str = "enrich-worker-1",
    batch_size: int = 1,
) -> None:
    """
    Run the enrichment worker as a long-running async task.

    Args:
        consumer_name: Unique identifier for this worker instance
        batch_size: Number of jobs to fetch at once
    """
    settings = get_settings()

    logger.info(
        "enrichment_worker_starting",
        consumer_name=consumer_name,
        stream=ENRICH_JOBS_STREAM,
        group=ENRICH_CONSUMER_GROUP,
    )
    services = await build_services(settings)
    logger.info(
        "enrichment_worker_initialized",
        consumer_name=consumer_name,
        embedding_model=settings.embedding_model,
        summary_model=settings.summary_model,
    )

    try:
        async for job_data in services.redis.consume_jobs(
            stream=ENRICH_JOBS_STREAM,
            group=ENRICH_CONSUMER_GROUP,
            consumer=consumer_name,
            count=batch_size,
            block_ms=5000,
        ):
            try:
                await process_enrichment_job(job_data, services)
            except Exception as e:
                # Log but keep consuming
                logger.error(
                    "enrichment_worker_job_error",
                    message_id=job_data.get("message_id"),
                    error=str(e),
                )
    finally:
        await services.close()


async def main() -> None:
    """Entry point for running the enrichment worker as a standalone process."""
    import signal
    import sys

    def signal_handler(sig: int, frame: Optional[object]) -> None:
        logger.info("enrichment_worker_shutdown_requested")
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await run_enrichment_worker()
    except Exception as e:
        logger.error("enrichment_worker_crashed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
