"""Redis Stream workers for enrichment, relationship detection and sync continuations."""

from .enrichment_worker import process_enrichment_job, run_enrichment_worker
from .relationship_worker import process_relationship_job, run_relationship_worker
from .sync_worker import process_sync_job, run_sync_worker

__all__ = [
    "process_enrichment_job",
    "process_relationship_job",
    "process_sync_job",
    "run_enrichment_worker",
    "run_relationship_worker",
    "run_sync_worker",
]
