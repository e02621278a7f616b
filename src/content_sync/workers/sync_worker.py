"""Async sync worker.

Runs source syncs requested through the ``content.sync`` stream. The
orchestrator publishes a job there whenever a run stops on its page or
time budget, so large backfills continue in bounded slices from the
stored cursor.
"""

import asyncio
from typing import Optional

import structlog

from content_sync.config import get_settings
from content_sync.db.redis import SYNC_CONSUMER_GROUP, SYNC_JOBS_STREAM
from content_sync.models import SyncProgress
from content_sync.services import Services, build_services

from .jobs import job_uuid

logger = structlog.get_logger(__name__)


def _flag(value: object) -> bool:
    return value is True or str(value).lower() in {"true", "1", "yes"}


async def process_sync_job(job_data: dict, services: Services) -> SyncProgress:
    """
    Process a single sync job.

    Args:
        job_data: Job data from the Redis Stream containing:
            - source_id: Source to sync
            - reason: Why the job was queued (informational)
            - full: Optional flag to ignore the stored cursor
        services: Wired stores and services

    Returns:
        SyncProgress of the run

    Raises:
        ValidationError: If the job payload is malformed
        ContentSourceNotFoundError: If the source was deleted meanwhile
    """
    source_id = job_uuid(job_data, "source_id")
    logger.info(
        "sync_job_started",
        source_id=str(source_id),
        reason=job_data.get("reason"),
    )
    progress = await services.orchestrator.sync_source(
        source_id, full=_flag(job_data.get("full", False))
    )
    logger.info(
        "sync_job_completed",
        source_id=str(source_id),
        status=progress.status.value,
        items_processed=progress.items_processed,
    )
    return progress


async def run_sync_worker(
    consumer_name: str = "sync-worker-1",
    batch_size: int = 1,
) -> None:
    """
    Run the sync worker as a long-running async task.

    Args:
        consumer_name: Unique identifier for this worker instance
        batch_size: Number of jobs to fetch at once
    """
    settings = get_settings()

    logger.info(
        "sync_worker_starting",
        consumer_name=consumer_name,
        stream=SYNC_JOBS_STREAM,
        group=SYNC_CONSUMER_GROUP,
    )
    services = await build_services(settings)

    try:
        async for job_data in services.redis.consume_jobs(
            stream=SYNC_JOBS_STREAM,
            group=SYNC_CONSUMER_GROUP,
            consumer=consumer_name,
            count=batch_size,
            block_ms=5000,
        ):
            try:
                await process_sync_job(job_data, services)
            except Exception as e:
                logger.error(
                    "sync_worker_job_error",
                    source_id=job_data.get("source_id"),
                    error=str(e),
                )
    finally:
        await services.close()


async def main() -> None:
    """Entry point for running the sync worker as a standalone process."""
    import signal
    import sys

    def signal_handler(sig: int, frame: Optional[object]) -> None:
        logger.info("sync_worker_shutdown_requested")
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await run_sync_worker()
    except Exception as e:
        logger.error("sync_worker_crashed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
