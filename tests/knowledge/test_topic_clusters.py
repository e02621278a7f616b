"""Tests for topic clustering and expertise scoring."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from content_sync.knowledge.clusters import (
    TopicClusterService,
    common_keywords,
    expertise_score,
    greedy_groups,
)
from content_sync.models import (
    EMBEDDING_DIMENSION,
    PaginatedResult,
    TopicCluster,
    TopicClusterMember,
    TopicExpertise,
)

from factories import make_item

NOW = datetime(2024, 3, 31, tzinfo=timezone.utc)


def vector(*leading: float) -> list[float]:
    return list(leading) + [0.0] * (EMBEDDING_DIMENSION - len(leading))


def make_cluster(organization_id=None, **fields):
    return TopicCluster(
        id=fields.pop("id", uuid4()),
        organization_id=organization_id or uuid4(),
        name=fields.pop("name", "Auth"),
        **fields,
    )


class TestClusterHelpers:
    """Tests for the pure clustering helpers."""

    def test_common_keywords(self):
        """Tags on at least half the members, most frequent first."""
        tags = [["auth", "login"], ["auth"], ["auth", "login", "web"], ["db"]]
        assert common_keywords(tags) == ["auth", "login"]
        assert common_keywords([]) == []

    def test_expertise_score(self):
        assert expertise_score(10, 10, NOW, NOW) == 1.0
        # Half volume, thirty days old: 0.25 + 0.25
        assert expertise_score(5, 10, NOW - timedelta(days=30), NOW) == 0.5
        assert expertise_score(5, 10, None, NOW) == 0.25
        assert expertise_score(0, 0, None, NOW) == 0.0

    def test_greedy_groups(self):
        """Seeds claim close vectors; small groups are dropped."""
        embeddings = [
            [1.0, 0.0],
            [0.95, 0.05],
            [0.9, 0.1],
            [0.0, 1.0],
            [0.0, 0.0],
        ]

        groups = greedy_groups(embeddings, threshold=0.9, min_size=3, max_groups=5)

        assert len(groups) == 1
        assert [index for index, _ in groups[0]] == [0, 1, 2]
        assert groups[0][0] == (0, 1.0)

    def test_greedy_groups_respects_max(self):
        embeddings = [[1.0, 0.0]] * 2 + [[0.0, 1.0]] * 2
        assert len(greedy_groups(embeddings, 0.9, min_size=2, max_groups=1)) == 1

    def test_greedy_groups_empty(self):
        assert greedy_groups([], 0.7, 3, 20) == []


class TestTopicClusterService:
    """Tests for TopicClusterService."""

    @pytest.fixture
    def org_id(self):
        return uuid4()

    @pytest.fixture
    def store(self):
        store = MagicMock()
        store.create_cluster = AsyncMock(
            side_effect=lambda org_id, name, keywords=None, centroid=None, is_auto=False, **_: (
                make_cluster(
                    org_id, name=name, keywords=keywords or [], centroid=centroid, is_auto=is_auto
                )
            )
        )
        store.add_member = AsyncMock(
            side_effect=lambda cluster_id, item_id, similarity=1.0, is_primary=False: (
                TopicClusterMember(
                    id=uuid4(),
                    cluster_id=cluster_id,
                    content_item_id=item_id,
                    similarity=similarity,
                    is_primary=is_primary,
                )
            )
        )
        store.update_cluster = AsyncMock(
            side_effect=lambda cluster_id, updates: make_cluster(id=cluster_id)
        )
        store.get_cluster = AsyncMock(return_value=make_cluster())
        store.find_nearest_cluster = AsyncMock(return_value=None)
        store.list_member_embeddings = AsyncMock(return_value=[])
        store.remove_member = AsyncMock(return_value=True)
        store.delete_auto_clusters = AsyncMock(return_value=0)
        store.get_member_stats = AsyncMock(
            return_value={
                "total": 4,
                "source_breakdown": {"slack": 3, "github": 1},
                "participant_count": 2,
                "recent_count": 1,
            }
        )
        store.get_contributors = AsyncMock(return_value=[])
        store.upsert_expertise = AsyncMock()
        return store

    @pytest.fixture
    def repository(self):
        repository = MagicMock()
        repository.list_items = AsyncMock(
            return_value=PaginatedResult(items=[], total=0, limit=500, offset=0, has_more=False)
        )
        return repository

    @pytest.fixture
    def service(self, store, repository):
        return TopicClusterService(store, repository, threshold=0.7)

    @pytest.mark.asyncio
    async def test_assign_to_nearest(self, service, store, org_id):
        cluster = make_cluster(org_id)
        store.find_nearest_cluster = AsyncMock(return_value=(cluster, 0.83))
        store.list_member_embeddings = AsyncMock(return_value=[vector(1.0), vector(0.0, 1.0)])
        item = make_item(org_id, embedding=vector(1.0))

        member = await service.assign_item(item)

        assert member.cluster_id == cluster.id
        assert member.similarity == 0.83
        store.create_cluster.assert_not_called()
        centroid_update = store.update_cluster.call_args_list[0].args[1]
        assert centroid_update["centroid"][:2] == pytest.approx([0.5, 0.5])

    @pytest.mark.asyncio
    async def test_seed_new_cluster(self, service, store, org_id):
        """Items far from every cluster seed one named after them."""
        item = make_item(org_id, title="  SSO rollout  ", tags=["auth"], embedding=vector(1.0))

        member = await service.assign_item(item)

        args = store.create_cluster.call_args
        assert args.args[1] == "SSO rollout"
        assert args.kwargs["keywords"] == ["auth"]
        assert args.kwargs["centroid"] == item.embedding
        assert member.is_primary is True

    @pytest.mark.asyncio
    async def test_unembedded_item_not_assigned(self, service, store):
        assert await service.assign_item(make_item()) is None
        store.find_nearest_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_refresh_aggregates(self, service, store):
        cluster_id = uuid4()

        await service.refresh_aggregates(cluster_id)

        updates = store.update_cluster.call_args.args[1]
        assert updates == {
            "content_count": 4,
            "source_breakdown": {"slack": 3, "github": 1},
            "participant_count": 2,
            "trending_score": 0.25,
        }

    @pytest.mark.asyncio
    async def test_empty_cluster_not_trending(self, service, store):
        store.get_member_stats = AsyncMock(
            return_value={
                "total": 0,
                "source_breakdown": {},
                "participant_count": 0,
                "recent_count": 0,
            }
        )
        await service.refresh_aggregates(uuid4())
        assert store.update_cluster.call_args.args[1]["trending_score"] == 0.0

    @pytest.mark.asyncio
    async def test_remove_recomputes(self, service, store):
        store.list_member_embeddings = AsyncMock(return_value=[vector(1.0)])

        assert await service.remove_from_cluster(uuid4(), uuid4()) is True
        assert store.update_cluster.await_count == 2

    @pytest.mark.asyncio
    async def test_remove_missing_member(self, service, store):
        store.remove_member = AsyncMock(return_value=False)

        assert await service.remove_from_cluster(uuid4(), uuid4()) is False
        store.update_cluster.assert_not_called()

    @pytest.mark.asyncio
    async def test_auto_cluster(self, service, store, repository, org_id):
        """Close items form a cluster; the rest stay unclustered."""
        group = [
            make_item(org_id, tags=["auth", "sso"], embedding=vector(1.0, 0.05 * i))
            for i in range(3)
        ]
        loner = make_item(org_id, embedding=vector(0.0, 1.0))
        unembedded = make_item(org_id)
        repository.list_items = AsyncMock(
            return_value=PaginatedResult(
                items=group + [loner, unembedded], total=5, limit=500, offset=0, has_more=False
            )
        )

        result = await service.auto_cluster(org_id, min_cluster_size=3)

        assert len(result.clusters) == 1
        assert result.unclustered_item_ids == [loner.id]
        args = store.create_cluster.call_args
        assert args.args[1] == "Topic 1"
        assert sorted(args.kwargs["keywords"]) == ["auth", "sso"]
        assert args.kwargs["is_auto"] is True
        store.delete_auto_clusters.assert_awaited_once_with(org_id)
        primaries = [c.kwargs["is_primary"] for c in store.add_member.call_args_list]
        assert primaries == [True, False, False]

    @pytest.mark.asyncio
    async def test_auto_cluster_nothing_embedded(self, service, store):
        result = await service.auto_cluster(uuid4())

        assert result.clusters == []
        store.create_cluster.assert_not_called()
        store.delete_auto_clusters.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_auto_cluster_rebuild_replaces_previous_pass(
        self, service, store, repository, org_id
    ):
        """Running twice leaves one pass worth of clusters."""
        live: dict = {}

        async def create_cluster(org_id, name, is_auto=False, **kwargs):
            cluster = make_cluster(org_id, name=name, is_auto=is_auto)
            live[cluster.id] = cluster
            return cluster

        async def delete_auto_clusters(org_id):
            stale = [cid for cid, c in live.items() if c.is_auto]
            for cid in stale:
                del live[cid]
            return len(stale)

        store.create_cluster = AsyncMock(side_effect=create_cluster)
        store.delete_auto_clusters = AsyncMock(side_effect=delete_auto_clusters)
        seeded = make_cluster(org_id, name="SSO rollout")
        live[seeded.id] = seeded
        group = [make_item(org_id, embedding=vector(1.0, 0.05 * i)) for i in range(3)]
        repository.list_items = AsyncMock(
            return_value=PaginatedResult(items=group, total=3, limit=500, offset=0, has_more=False)
        )

        await service.auto_cluster(org_id, min_cluster_size=3)
        await service.auto_cluster(org_id, min_cluster_size=3)

        assert sorted(c.name for c in live.values()) == ["SSO rollout", "Topic 1"]
        assert store.delete_auto_clusters.await_count == 2

    @pytest.mark.asyncio
    async def test_update_expertise_scores(self, service, store):
        cluster_id = uuid4()
        store.get_contributors = AsyncMock(
            return_value=[
                {
                    "external_id": "alice",
                    "user_id": None,
                    "name": "Alice",
                    "content_count": 4,
                    "last_contributed_at": NOW,
                },
                {
                    "external_id": "bob",
                    "user_id": None,
                    "name": None,
                    "content_count": 2,
                    "last_contributed_at": None,
                },
            ]
        )
        store.upsert_expertise = AsyncMock(
            side_effect=lambda cluster_id, external_id, **kw: TopicExpertise(
                id=uuid4(), cluster_id=cluster_id, external_id=external_id, **kw
            )
        )

        scored = await service.update_expertise_scores(cluster_id, now=NOW)

        assert {e.external_id: e.expertise_score for e in scored} == {"alice": 1.0, "bob": 0.25}

    @pytest.mark.asyncio
    async def test_no_contributors(self, service, store):
        assert await service.update_expertise_scores(uuid4()) == []
        store.upsert_expertise.assert_not_called()
