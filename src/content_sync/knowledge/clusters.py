"""Topic clustering over item embeddings.

Items join the cluster with the nearest centroid when it is similar
enough, otherwise they seed a new cluster. ``auto_cluster`` groups an
organization's embedded items greedily around seed items.
"""

import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from uuid import UUID

import numpy as np
import structlog

from content_sync.db.clusters import TopicClusterStore
from content_sync.db.repository import ContentRepository
from content_sync.models import (
    ContentItem,
    ContentItemFilters,
    TopicCluster,
    TopicClusterMember,
    TopicClusterWithMembers,
    TopicExpertise,
)

from .similarity import centroid, normalize_rows

logger = structlog.get_logger(__name__)

DEFAULT_CLUSTER_THRESHOLD = 0.7
MIN_CLUSTER_SIZE = 3
MAX_AUTO_CLUSTERS = 20
AUTO_CLUSTER_SCAN_LIMIT = 500
MAX_SEED_NAME_CHARS = 80
RECENCY_HALF_LIFE_DAYS = 30
TOPIC_EXPERTS_LIMIT = 10


@dataclass
class AutoClusterResult:
    """Outcome of an auto_cluster run."""

    clusters: list[TopicCluster] = field(default_factory=list)
    unclustered_item_ids: list[UUID] = field(default_factory=list)


def common_keywords(tag_lists: Sequence[Sequence[str]]) -> list[str]:
    """Tags carried by at least half of the members, most frequent first."""
    if not tag_lists:
        return []
    counts = Counter(tag for tags in tag_lists for tag in set(tags))
    needed = math.ceil(len(tag_lists) / 2)
    return [tag for tag, count in counts.most_common() if count >= needed]


def expertise_score(
    content_count: int,
    max_count: int,
    last_contributed_at: Optional[datetime],
    now: datetime,
) -> float:
    """Half volume relative to the top contributor, half recency."""
    volume = content_count / max_count if max_count else 0.0
    if last_contributed_at is None:
        recency = 0.0
    else:
        days = max(0.0, (now - last_contributed_at).total_seconds() / 86400)
        recency = 1.0 / (1.0 + days / RECENCY_HALF_LIFE_DAYS)
    return round(volume * 0.5 + recency * 0.5, 4)


def greedy_groups(
    embeddings: Sequence[Sequence[float]],
    threshold: float,
    min_size: int,
    max_groups: int,
) -> list[list[tuple[int, float]]]:
    """
    Group vectors around seeds in input order.

    Each unassigned vector in turn becomes a seed and claims every other
    unassigned vector at or above the threshold. Groups smaller than
    ``min_size`` are discarded and their vectors stay available.

    Returns:
        Groups of (index, similarity to seed); the seed comes first
    """
    matrix, valid = normalize_rows(embeddings)
    if matrix.size == 0:
        return []
    assigned = ~valid
    groups: list[list[tuple[int, float]]] = []

    for seed in range(len(matrix)):
        if len(groups) >= max_groups:
            break
        if assigned[seed]:
            continue
        sims = matrix @ matrix[seed]
        claim = (~assigned) & (sims >= threshold)
        claim[seed] = True
        indices = np.flatnonzero(claim)
        if len(indices) < min_size:
            continue
        group = [(seed, 1.0)] + [
            (int(i), float(sims[i])) for i in indices if i != seed
        ]
        assigned[indices] = True
        groups.append(group)
    return groups


class TopicClusterService:
    """Cluster assignment, aggregates and expertise on top of the cluster store."""

    def __init__(
        self,
        store: TopicClusterStore,
        repository: ContentRepository,
        threshold: float = DEFAULT_CLUSTER_THRESHOLD,
    ) -> None:
        self._store = store
        self._repository = repository
        self._threshold = threshold

    # CRUD passthroughs so callers need only the service.

    async def create_cluster(
        self,
        organization_id: UUID,
        name: str,
        description: Optional[str] = None,
        keywords: Optional[list[str]] = None,
    ) -> TopicCluster:
        return await self._store.create_cluster(organization_id, name, description, keywords)

    async def get_cluster(self, cluster_id: UUID) -> TopicClusterWithMembers:
        return await self._store.get_cluster_with_members(cluster_id)

    async def list_clusters(
        self, organization_id: UUID, limit: int = 50, offset: int = 0
    ) -> list[TopicCluster]:
        return await self._store.list_clusters(organization_id, limit=limit, offset=offset)

    async def update_cluster(self, cluster_id: UUID, updates: dict[str, Any]) -> TopicCluster:
        return await self._store.update_cluster(cluster_id, updates)

    async def delete_cluster(self, cluster_id: UUID) -> bool:
        return await self._store.delete_cluster(cluster_id)

    async def add_to_cluster(
        self,
        cluster_id: UUID,
        content_item_id: UUID,
        similarity: float = 1.0,
        is_primary: bool = False,
    ) -> TopicClusterMember:
        """Add an item to a cluster and refresh the cluster's aggregates."""
        await self._store.get_cluster(cluster_id)
        member = await self._store.add_member(cluster_id, content_item_id, similarity, is_primary)
        await self.refresh_aggregates(cluster_id)
        return member

    async def remove_from_cluster(self, cluster_id: UUID, content_item_id: UUID) -> bool:
        removed = await self._store.remove_member(cluster_id, content_item_id)
        if removed:
            await self.recompute_centroid(cluster_id)
            await self.refresh_aggregates(cluster_id)
        return removed

    async def assign_item(self, item: ContentItem) -> Optional[TopicClusterMember]:
        """
        Put an embedded item into its nearest cluster, or seed a new one.

        Returns:
            The membership, or None if the item has no embedding
        """
        if not item.embedding:
            return None

        nearest = await self._store.find_nearest_cluster(
            item.organization_id, item.embedding, self._threshold
        )
        if nearest is not None:
            cluster, similarity = nearest
            member = await self._store.add_member(cluster.id, item.id, similarity)
            await self.recompute_centroid(cluster.id)
            logger.debug(
                "item_assigned_to_cluster",
                item_id=str(item.id),
                cluster_id=str(cluster.id),
                similarity=round(similarity, 4),
            )
        else:
            name = (item.title or "").strip()[:MAX_SEED_NAME_CHARS] or "Untitled topic"
            cluster = await self._store.create_cluster(
                item.organization_id,
                name,
                keywords=list(item.tags),
                centroid=item.embedding,
            )
            member = await self._store.add_member(cluster.id, item.id, 1.0, is_primary=True)
            logger.info("cluster_seeded", item_id=str(item.id), cluster_id=str(cluster.id))

        await self.refresh_aggregates(member.cluster_id)
        return member

    async def auto_cluster(
        self,
        organization_id: UUID,
        min_cluster_size: int = MIN_CLUSTER_SIZE,
        max_clusters: int = MAX_AUTO_CLUSTERS,
        similarity_threshold: float = DEFAULT_CLUSTER_THRESHOLD,
    ) -> AutoClusterResult:
        """
        Greedily rebuild an organization's auto clusters.

        Clusters from the previous pass are dropped first; clusters seeded
        by incremental assignment are kept.

        Args:
            organization_id: Organization to cluster
            min_cluster_size: Smallest group kept as a cluster
            max_clusters: Stop after this many clusters
            similarity_threshold: Minimum similarity to a group's seed

        Returns:
            AutoClusterResult with the created clusters and the ids of
            embedded items left unclustered
        """
        page = await self._repository.list_items(
            ContentItemFilters(organization_id=organization_id),
            limit=AUTO_CLUSTER_SCAN_LIMIT,
        )
        items = [item for item in page.items if item.embedding]
        await self._store.delete_auto_clusters(organization_id)
        result = AutoClusterResult()
        if not items:
            return result

        groups = greedy_groups(
            [item.embedding for item in items],
            similarity_threshold,
            min_cluster_size,
            max_clusters,
        )
        clustered: set[int] = set()
        for number, group in enumerate(groups, start=1):
            members = [items[index] for index, _ in group]
            cluster = await self._store.create_cluster(
                organization_id,
                f"Topic {number}",
                keywords=common_keywords([m.tags for m in members]),
                centroid=centroid([m.embedding for m in members]),
                is_auto=True,
            )
            for position, (index, similarity) in enumerate(group):
                await self._store.add_member(
                    cluster.id, items[index].id, similarity, is_primary=position == 0
                )
                clustered.add(index)
            result.clusters.append(await self.refresh_aggregates(cluster.id))

        result.unclustered_item_ids = [
            item.id for index, item in enumerate(items) if index not in clustered
        ]
        logger.info(
            "auto_cluster_completed",
            organization_id=str(organization_id),
            items=len(items),
            clusters=len(result.clusters),
            unclustered=len(result.unclustered_item_ids),
        )
        return result

    async def recompute_centroid(self, cluster_id: UUID) -> Optional[list[float]]:
        """Set a cluster's centroid to the mean of its members' embeddings."""
        vectors = await self._store.list_member_embeddings(cluster_id)
        value = centroid(vectors)
        if value is not None:
            await self._store.update_cluster(cluster_id, {"centroid": value})
        return value

    async def refresh_aggregates(self, cluster_id: UUID) -> TopicCluster:
        """Recompute counts, source breakdown and trending score."""
        stats = await self._store.get_member_stats(cluster_id)
        total = stats["total"]
        return await self._store.update_cluster(
            cluster_id,
            {
                "content_count": total,
                "source_breakdown": stats["source_breakdown"],
                "participant_count": stats["participant_count"],
                "trending_score": round(stats["recent_count"] / total, 4) if total else 0.0,
            },
        )

    async def update_expertise_scores(
        self, cluster_id: UUID, now: Optional[datetime] = None
    ) -> list[TopicExpertise]:
        """Rescore everyone who contributed to a cluster."""
        now = now or datetime.now(timezone.utc)
        contributors = await self._store.get_contributors(cluster_id)
        if not contributors:
            return []
        max_count = max(c["content_count"] for c in contributors)
        scored = []
        for contributor in contributors:
            scored.append(
                await self._store.upsert_expertise(
                    cluster_id,
                    contributor["external_id"],
                    content_count=contributor["content_count"],
                    expertise_score=expertise_score(
                        contributor["content_count"],
                        max_count,
                        contributor["last_contributed_at"],
                        now,
                    ),
                    last_contributed_at=contributor["last_contributed_at"],
                    user_id=contributor["user_id"],
                    name=contributor["name"],
                )
            )
        logger.info("expertise_scores_updated", cluster_id=str(cluster_id), people=len(scored))
        return scored

    async def get_topic_experts(
        self, cluster_id: UUID, limit: int = TOPIC_EXPERTS_LIMIT
    ) -> list[TopicExpertise]:
        return await self._store.get_topic_experts(cluster_id, limit)

    async def get_related_clusters(
        self, cluster_id: UUID, limit: int = 5, min_similarity: float = 0.5
    ) -> list[tuple[TopicCluster, float]]:
        await self._store.get_cluster(cluster_id)
        return await self._store.get_related_clusters(cluster_id, limit, min_similarity)
