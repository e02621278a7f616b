"""Sync control endpoints: queue a run and read its progress."""

from dataclasses import asdict
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query

from content_sync.db.redis import SYNC_JOBS_STREAM
from content_sync.services import Services

from .webhooks import get_services

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sources", tags=["sync"])


@router.post("/{source_id}/sync", status_code=202)
async def trigger_sync(
    source_id: UUID,
    full: bool = Query(False, description="Ignore the stored cursor"),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Queue a sync run for the sync worker."""
    source = await services.repository.get_source(source_id)
    message_id = await services.redis.publish_job(
        SYNC_JOBS_STREAM,
        {"source_id": source.id, "reason": "manual", "full": full},
    )
    logger.info("sync_requested", source_id=str(source.id), full=full)
    return {"source_id": str(source.id), "job_id": message_id, "full": full}


@router.get("/{source_id}/sync")
async def get_sync_progress(
    source_id: UUID,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Progress of the current or last run of a source."""
    source = await services.repository.get_source(source_id)
    progress = await services.orchestrator.get_sync_progress(source.id)
    return {
        "source_id": str(source.id),
        "sync_status": source.sync_status.value,
        "last_sync_at": source.last_sync_at,
        "error_message": source.error_message,
        "progress": asdict(progress) if progress else None,
    }
