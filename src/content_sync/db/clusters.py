"""Topic cluster store: clusters, memberships and per-topic expertise."""

from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID

import asyncpg
import structlog

from content_sync.core.errors import DatabaseError, TopicClusterNotFoundError, ValidationError
from content_sync.models import (
    TopicCluster,
    TopicClusterMember,
    TopicClusterWithMembers,
    TopicExpertise,
)

from .postgres import PostgresClient, dump_json, format_vector, parse_json, parse_vector

logger = structlog.get_logger(__name__)

CLUSTER_COLUMNS = """
    id, organization_id, name, description, keywords,
    centroid::text AS centroid, content_count, source_breakdown,
    participant_count, trending_score, is_auto, created_at, updated_at
"""

RELATED_CLUSTER_COLUMNS = """
    c.id, c.organization_id, c.name, c.description, c.keywords,
    c.centroid::text AS centroid, c.content_count, c.source_breakdown,
    c.participant_count, c.trending_score, c.is_auto, c.created_at, c.updated_at
"""

UPDATABLE_CLUSTER_FIELDS = {
    "name",
    "description",
    "keywords",
    "centroid",
    "content_count",
    "source_breakdown",
    "participant_count",
    "trending_score",
}

TRENDING_WINDOW_DAYS = 7


def _row_to_cluster(row: Any) -> TopicCluster:
    return TopicCluster(
        id=row["id"],
        organization_id=row["organization_id"],
        name=row["name"],
        description=row["description"],
        keywords=parse_json(row["keywords"], []),
        centroid=parse_vector(row["centroid"]),
        content_count=row["content_count"],
        source_breakdown=parse_json(row["source_breakdown"], {}),
        participant_count=row["participant_count"],
        trending_score=row["trending_score"],
        is_auto=row["is_auto"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_member(row: Any) -> TopicClusterMember:
    return TopicClusterMember(
        id=row["id"],
        cluster_id=row["cluster_id"],
        content_item_id=row["content_item_id"],
        similarity=row["similarity"],
        is_primary=row["is_primary"],
        created_at=row["created_at"],
    )


def _row_to_expertise(row: Any) -> TopicExpertise:
    return TopicExpertise(
        id=row["id"],
        cluster_id=row["cluster_id"],
        external_id=row["external_id"],
        user_id=row["user_id"],
        name=row["name"],
        content_count=row["content_count"],
        last_contributed_at=row["last_contributed_at"],
        expertise_score=row["expertise_score"],
    )


class TopicClusterStore:
    """PostgreSQL persistence for topic clusters.

    Member counts are recomputed from ``topic_cluster_members`` on every
    membership change rather than incremented, so concurrent assignments
    cannot drift the stored count.
    """

    def __init__(self, postgres_client: PostgresClient) -> None:
        self._postgres = postgres_client

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    async def create_cluster(
        self,
        organization_id: UUID,
        name: str,
        description: Optional[str] = None,
        keywords: Optional[list[str]] = None,
        centroid: Optional[Sequence[float]] = None,
        is_auto: bool = False,
    ) -> TopicCluster:
        """
        Create a topic cluster.

        ``is_auto`` marks clusters built by a bulk auto-clustering pass,
        which the next pass replaces.

        Raises:
            ValidationError: If the name is blank
            DatabaseError: If the insert fails
        """
        if not name or not name.strip():
            raise ValidationError("name", "Cluster name must not be empty")
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO topic_clusters
                        (organization_id, name, description, keywords, centroid, is_auto)
                    VALUES ($1, $2, $3, $4::jsonb, $5::vector, $6)
                    RETURNING {CLUSTER_COLUMNS}
                    """,
                    organization_id,
                    name.strip(),
                    description,
                    dump_json(keywords or []),
                    format_vector(centroid) if centroid else None,
                    is_auto,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("create_cluster", str(e)) from e

        cluster = _row_to_cluster(row)
        logger.info(
            "topic_cluster_created",
            cluster_id=str(cluster.id),
            organization_id=str(organization_id),
            name=cluster.name,
        )
        return cluster

    async def get_cluster_option(self, cluster_id: UUID) -> Optional[TopicCluster]:
        """Get a cluster by id, or None."""
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {CLUSTER_COLUMNS} FROM topic_clusters WHERE id = $1",
                    cluster_id,
                )
                return _row_to_cluster(row) if row else None
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_cluster", str(e)) from e

    async def get_cluster(self, cluster_id: UUID) -> TopicCluster:
        """Get a cluster by id.

        Raises:
            TopicClusterNotFoundError: If it does not exist
        """
        cluster = await self.get_cluster_option(cluster_id)
        if cluster is None:
            raise TopicClusterNotFoundError(str(cluster_id))
        return cluster

    async def get_cluster_with_members(self, cluster_id: UUID) -> TopicClusterWithMembers:
        cluster = await self.get_cluster(cluster_id)
        members = await self.list_members(cluster_id)
        return TopicClusterWithMembers(**cluster.model_dump(), members=members)

    async def list_clusters(
        self,
        organization_id: UUID,
        limit: int = 50,
        offset: int = 0,
        order_by: str = "content_count",
    ) -> list[TopicCluster]:
        """List an organization's clusters, largest (or most trending) first."""
        if order_by not in {"content_count", "trending_score", "created_at"}:
            raise ValidationError("order_by", f"Unsupported ordering: {order_by}")
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {CLUSTER_COLUMNS} FROM topic_clusters
                    WHERE organization_id = $1
                    ORDER BY {order_by} DESC, created_at DESC
                    LIMIT $2 OFFSET $3
                    """,
                    organization_id,
                    limit,
                    offset,
                )
                return [_row_to_cluster(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_clusters", str(e)) from e

    async def update_cluster(self, cluster_id: UUID, updates: dict[str, Any]) -> TopicCluster:
        """
        Update cluster fields.

        Raises:
            ValidationError: If an unknown field is given
            TopicClusterNotFoundError: If the cluster does not exist
        """
        unknown = set(updates) - UPDATABLE_CLUSTER_FIELDS
        if unknown:
            raise ValidationError("updates", f"Unknown cluster fields: {sorted(unknown)}")
        if not updates:
            return await self.get_cluster(cluster_id)

        assignments = []
        params: list[Any] = [cluster_id]
        for column, value in updates.items():
            params.append(value)
            index = len(params)
            if column in {"keywords", "source_breakdown"}:
                params[-1] = dump_json(value)
                assignments.append(f"{column} = ${index}::jsonb")
            elif column == "centroid":
                params[-1] = format_vector(value) if value else None
                assignments.append(f"{column} = ${index}::vector")
            else:
                assignments.append(f"{column} = ${index}")

        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE topic_clusters
                    SET {", ".join(assignments)}, updated_at = NOW()
                    WHERE id = $1
                    RETURNING {CLUSTER_COLUMNS}
                    """,
                    *params,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("update_cluster", str(e)) from e
        if row is None:
            raise TopicClusterNotFoundError(str(cluster_id))
        return _row_to_cluster(row)

    async def delete_cluster(self, cluster_id: UUID) -> bool:
        """Delete a cluster with its members and expertise rows."""
        try:
            async with self._postgres.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM topic_clusters WHERE id = $1", cluster_id
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("delete_cluster", str(e)) from e
        deleted = result.endswith(" 1")
        if deleted:
            logger.info("topic_cluster_deleted", cluster_id=str(cluster_id))
        return deleted

    async def delete_auto_clusters(self, organization_id: UUID) -> int:
        """Delete an organization's auto-built clusters; returns how many."""
        try:
            async with self._postgres.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM topic_clusters WHERE organization_id = $1 AND is_auto",
                    organization_id,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("delete_auto_clusters", str(e)) from e
        deleted = int(result.split()[-1])
        if deleted:
            logger.info(
                "auto_clusters_cleared",
                organization_id=str(organization_id),
                deleted=deleted,
            )
        return deleted

    async def find_nearest_cluster(
        self,
        organization_id: UUID,
        embedding: Sequence[float],
        min_similarity: float,
    ) -> Optional[tuple[TopicCluster, float]]:
        """The cluster whose centroid is closest to an embedding, if close enough."""
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {CLUSTER_COLUMNS},
                        1 - (centroid <=> $2::vector) AS similarity
                    FROM topic_clusters
                    WHERE organization_id = $1 AND centroid IS NOT NULL
                    ORDER BY centroid <=> $2::vector
                    LIMIT 1
                    """,
                    organization_id,
                    format_vector(embedding),
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("find_nearest_cluster", str(e)) from e
        if row is None or float(row["similarity"]) < min_similarity:
            return None
        return _row_to_cluster(row), float(row["similarity"])

    async def get_related_clusters(
        self,
        cluster_id: UUID,
        limit: int = 5,
        min_similarity: float = 0.5,
    ) -> list[tuple[TopicCluster, float]]:
        """Other clusters of the same organization ranked by centroid similarity."""
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {RELATED_CLUSTER_COLUMNS},
                        1 - (c.centroid <=> base.centroid) AS similarity
                    FROM topic_clusters c
                    JOIN topic_clusters base ON base.id = $1
                    WHERE c.organization_id = base.organization_id
                        AND c.id <> base.id
                        AND c.centroid IS NOT NULL
                        AND base.centroid IS NOT NULL
                        AND 1 - (c.centroid <=> base.centroid) >= $2
                    ORDER BY c.centroid <=> base.centroid
                    LIMIT $3
                    """,
                    cluster_id,
                    min_similarity,
                    limit,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_related_clusters", str(e)) from e

        return [(_row_to_cluster(row), float(row["similarity"])) for row in rows]

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def add_member(
        self,
        cluster_id: UUID,
        content_item_id: UUID,
        similarity: float = 1.0,
        is_primary: bool = False,
    ) -> TopicClusterMember:
        """
        Add an item to a cluster, refreshing its similarity if already a member.

        The cluster's content_count is recomputed in the same transaction.
        """
        try:
            async with self._postgres.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        INSERT INTO topic_cluster_members
                            (cluster_id, content_item_id, similarity, is_primary)
                        VALUES ($1, $2, $3, $4)
                        ON CONFLICT (cluster_id, content_item_id) DO UPDATE SET
                            similarity = EXCLUDED.similarity,
                            is_primary = topic_cluster_members.is_primary
                                OR EXCLUDED.is_primary
                        RETURNING *
                        """,
                        cluster_id,
                        content_item_id,
                        similarity,
                        is_primary,
                    )
                    await self._recount(conn, cluster_id)
        except asyncpg.ForeignKeyViolationError as e:
            raise TopicClusterNotFoundError(str(cluster_id)) from e
        except asyncpg.PostgresError as e:
            raise DatabaseError("add_cluster_member", str(e)) from e
        return _row_to_member(row)

    async def remove_member(self, cluster_id: UUID, content_item_id: UUID) -> bool:
        """Remove an item from a cluster and recount its members."""
        try:
            async with self._postgres.pool.acquire() as conn:
                async with conn.transaction():
                    result = await conn.execute(
                        """
                        DELETE FROM topic_cluster_members
                        WHERE cluster_id = $1 AND content_item_id = $2
                        """,
                        cluster_id,
                        content_item_id,
                    )
                    await self._recount(conn, cluster_id)
        except asyncpg.PostgresError as e:
            raise DatabaseError("remove_cluster_member", str(e)) from e
        return result.endswith(" 1")

    async def _recount(self, conn: asyncpg.Connection, cluster_id: UUID) -> None:
        await conn.execute(
            """
            UPDATE topic_clusters SET
                content_count = (
                    SELECT COUNT(*) FROM topic_cluster_members WHERE cluster_id = $1
                ),
                updated_at = NOW()
            WHERE id = $1
            """,
            cluster_id,
        )

    async def list_members(self, cluster_id: UUID) -> list[TopicClusterMember]:
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM topic_cluster_members
                    WHERE cluster_id = $1
                    ORDER BY is_primary DESC, similarity DESC
                    """,
                    cluster_id,
                )
                return [_row_to_member(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_cluster_members", str(e)) from e

    async def list_member_embeddings(self, cluster_id: UUID) -> list[list[float]]:
        """Embeddings of a cluster's members that have one."""
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT ci.embedding::text AS embedding
                    FROM topic_cluster_members m
                    JOIN content_items ci ON ci.id = m.content_item_id
                    WHERE m.cluster_id = $1 AND ci.embedding IS NOT NULL
                    """,
                    cluster_id,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_member_embeddings", str(e)) from e
        return [v for v in (parse_vector(row["embedding"]) for row in rows) if v]

    async def list_clusters_for_item(self, content_item_id: UUID) -> list[TopicCluster]:
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {CLUSTER_COLUMNS} FROM topic_clusters
                    WHERE id IN (
                        SELECT cluster_id FROM topic_cluster_members
                        WHERE content_item_id = $1
                    )
                    ORDER BY content_count DESC
                    """,
                    content_item_id,
                )
                return [_row_to_cluster(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_clusters_for_item", str(e)) from e

    # ------------------------------------------------------------------
    # Aggregates and expertise
    # ------------------------------------------------------------------

    async def get_member_stats(self, cluster_id: UUID) -> dict[str, Any]:
        """
        Aggregate a cluster's members.

        Returns:
            Dict with ``source_breakdown`` (source type to count),
            ``participant_count`` and ``recent_count`` (members added in
            the trending window) plus ``total``
        """
        try:
            async with self._postgres.pool.acquire() as conn:
                breakdown_rows = await conn.fetch(
                    """
                    SELECT cs.type AS source_type, COUNT(*) AS count
                    FROM topic_cluster_members m
                    JOIN content_items ci ON ci.id = m.content_item_id
                    JOIN content_sources cs ON cs.id = ci.source_id
                    WHERE m.cluster_id = $1
                    GROUP BY cs.type
                    """,
                    cluster_id,
                )
                counts = await conn.fetchrow(
                    f"""
                    SELECT
                        COUNT(*) AS total,
                        COUNT(*) FILTER (
                            WHERE m.created_at >= NOW() - INTERVAL '{TRENDING_WINDOW_DAYS} days'
                        ) AS recent_count,
                        (
                            SELECT COUNT(DISTINCT COALESCE(p.external_id, p.user_id::text))
                            FROM content_participants p
                            JOIN topic_cluster_members pm
                                ON pm.content_item_id = p.content_item_id
                            WHERE pm.cluster_id = $1
                        ) AS participant_count
                    FROM topic_cluster_members m
                    WHERE m.cluster_id = $1
                    """,
                    cluster_id,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_cluster_member_stats", str(e)) from e

        return {
            "source_breakdown": {row["source_type"]: int(row["count"]) for row in breakdown_rows},
            "participant_count": int(counts["participant_count"] or 0),
            "recent_count": int(counts["recent_count"] or 0),
            "total": int(counts["total"] or 0),
        }

    async def get_contributors(self, cluster_id: UUID) -> list[dict[str, Any]]:
        """
        Per-person contribution counts across a cluster's members.

        Participants are taken from ``content_participants``; items without
        participants fall back to their external author.

        Returns:
            Dicts with external_id, user_id, name, content_count and
            last_contributed_at
        """
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    WITH contributions AS (
                        SELECT
                            COALESCE(p.external_id, p.user_id::text) AS external_id,
                            p.user_id,
                            p.name,
                            ci.id AS item_id,
                            COALESCE(ci.created_at_source, ci.created_at) AS contributed_at
                        FROM topic_cluster_members m
                        JOIN content_items ci ON ci.id = m.content_item_id
                        JOIN content_participants p ON p.content_item_id = ci.id
                        WHERE m.cluster_id = $1
                        UNION ALL
                        SELECT
                            ci.author_external,
                            ci.author_id,
                            ci.author_name,
                            ci.id,
                            COALESCE(ci.created_at_source, ci.created_at)
                        FROM topic_cluster_members m
                        JOIN content_items ci ON ci.id = m.content_item_id
                        WHERE m.cluster_id = $1
                            AND ci.author_external IS NOT NULL
                            AND NOT EXISTS (
                                SELECT 1 FROM content_participants p
                                WHERE p.content_item_id = ci.id
                            )
                    )
                    SELECT
                        external_id,
                        (ARRAY_AGG(user_id) FILTER (WHERE user_id IS NOT NULL))[1] AS user_id,
                        (ARRAY_AGG(name) FILTER (WHERE name IS NOT NULL))[1] AS name,
                        COUNT(DISTINCT item_id) AS content_count,
                        MAX(contributed_at) AS last_contributed_at
                    FROM contributions
                    WHERE external_id IS NOT NULL
                    GROUP BY external_id
                    """,
                    cluster_id,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_cluster_contributors", str(e)) from e
        return [
            {
                "external_id": row["external_id"],
                "user_id": row["user_id"],
                "name": row["name"],
                "content_count": int(row["content_count"]),
                "last_contributed_at": row["last_contributed_at"],
            }
            for row in rows
        ]

    async def upsert_expertise(
        self,
        cluster_id: UUID,
        external_id: str,
        content_count: int,
        expertise_score: float,
        last_contributed_at: Optional[datetime] = None,
        user_id: Optional[UUID] = None,
        name: Optional[str] = None,
    ) -> TopicExpertise:
        try:
            async with self._postgres.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO topic_expertise
                        (cluster_id, external_id, user_id, name, content_count,
                         last_contributed_at, expertise_score)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (cluster_id, external_id) DO UPDATE SET
                        user_id = COALESCE(EXCLUDED.user_id, topic_expertise.user_id),
                        name = COALESCE(EXCLUDED.name, topic_expertise.name),
                        content_count = EXCLUDED.content_count,
                        last_contributed_at = EXCLUDED.last_contributed_at,
                        expertise_score = EXCLUDED.expertise_score
                    RETURNING *
                    """,
                    cluster_id,
                    external_id,
                    user_id,
                    name,
                    content_count,
                    last_contributed_at,
                    expertise_score,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError("upsert_expertise", str(e)) from e
        return _row_to_expertise(row)

    async def get_topic_experts(self, cluster_id: UUID, limit: int = 10) -> list[TopicExpertise]:
        """People with the highest expertise score for a cluster."""
        try:
            async with self._postgres.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM topic_expertise
                    WHERE cluster_id = $1
                    ORDER BY expertise_score DESC, content_count DESC
                    LIMIT $2
                    """,
                    cluster_id,
                    limit,
                )
                return [_row_to_expertise(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_topic_experts", str(e)) from e
