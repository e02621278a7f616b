"""Post-ingestion linking: relationship detection and topic clusters."""

from .clusters import AutoClusterResult, TopicClusterService
from .relationships import RelationshipDetector

__all__ = [
    "AutoClusterResult",
    "RelationshipDetector",
    "TopicClusterService",
]
