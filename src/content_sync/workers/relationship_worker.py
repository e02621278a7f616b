"""Async relationship worker.

Consumes enriched item ids from ``content.relationships``, detects
relationships for them and places them into topic clusters. All of it
is best-effort: nothing here touches a source's sync status.
"""

import asyncio
from typing import Optional
from uuid import UUID

import structlog

from content_sync.config import get_settings
from content_sync.core.errors import AppError
from content_sync.db.redis import RELATIONSHIP_CONSUMER_GROUP, RELATIONSHIP_JOBS_STREAM
from content_sync.models import DetectionResult
from content_sync.services import Services, build_services

from .jobs import job_item_ids, job_uuid

logger = structlog.get_logger(__name__)


async def assign_to_clusters(services: Services, item_ids: list[UUID]) -> set[UUID]:
    """
    Assign embedded items to topic clusters and rescore touched clusters.

    Returns:
        Ids of the clusters that gained members
    """
    touched: set[UUID] = set()
    for item in await services.repository.get_items_by_ids(item_ids):
        try:
            member = await services.clusters.assign_item(item)
        except AppError as e:
            logger.warning("cluster_assignment_failed", item_id=str(item.id), error=e.message)
            continue
        if member is not None:
            touched.add(member.cluster_id)

    for cluster_id in touched:
        try:
            await services.clusters.update_expertise_scores(cluster_id)
        except AppError as e:
            logger.warning("expertise_update_failed", cluster_id=str(cluster_id), error=e.message)
    return touched


async def process_relationship_job(job_data: dict, services: Services) -> DetectionResult:
    """
    Process a single relationship job.

    Args:
        job_data: Job data from the Redis Stream containing:
            - organization_id: Owning organization
            - item_ids: Enriched content item ids
        services: Wired stores and services

    Returns:
        DetectionResult of the detection pass

    Raises:
        ValidationError: If the job payload is malformed
    """
    organization_id = job_uuid(job_data, "organization_id")
    item_ids = job_item_ids(job_data)
    if not item_ids:
        return DetectionResult()

    logger.info(
        "relationship_job_started",
        organization_id=str(organization_id),
        item_count=len(item_ids),
    )

    try:
        result = await services.detector.detect_relationships(
            organization_id, item_ids=item_ids
        )
    except AppError as e:
        logger.warning(
            "relationship_detection_failed",
            organization_id=str(organization_id),
            error=e.message,
        )
        result = DetectionResult(errors=[e.message])

    clusters = await assign_to_clusters(services, item_ids)

    logger.info(
        "relationship_job_completed",
        organization_id=str(organization_id),
        created=result.created,
        skipped=result.skipped,
        errors=len(result.errors),
        clusters_touched=len(clusters),
    )
    return result


async def run_relationship_worker(
    consumer_name: str = "relationship-worker-1",
    batch_size: int = 1,
) -> None:
    """
    Run the relationship worker as a long-running async task.

    Args:
        consumer_name: Unique identifier for this worker instance
        batch_size: Number of jobs to fetch at once
    """
    settings = get_settings()

    logger.info(
        "relationship_worker_starting",
        consumer_name=consumer_name,
        stream=RELATIONSHIP_JOBS_STREAM,
        group=RELATIONSHIP_CONSUMER_GROUP,
    )
    services = await build_services(settings)

    try:
        async for job_data in services.redis.consume_jobs(
            stream=RELATIONSHIP_JOBS_STREAM,
            group=RELATIONSHIP_CONSUMER_GROUP,
            consumer=consumer_name,
            count=batch_size,
            block_ms=5000,
        ):
            try:
                await process_relationship_job(job_data, services)
            except Exception as e:
                logger.error(
                    "relationship_worker_job_error",
                    message_id=job_data.get("message_id"),
                    error=str(e),
                )
    finally:
        await services.close()


async def main() -> None:
    """Entry point for running the relationship worker as a standalone process."""
    import signal
    import sys

    def signal_handler(sig: int, frame: Optional[object]) -> None:
        logger.info("relationship_worker_shutdown_requested")
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await run_relationship_worker()
    except Exception as e:
        logger.error("relationship_worker_crashed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
