"""Relationship detection between stored content items.

Strategies run over an item and its organization's recent items:

- explicit: URLs, ``#id`` references and title mentions in the text
- semantic: cosine similarity of embeddings
- temporal: items from different sources created close together
- entity: shared tags or the same author across sources

Candidates are deduplicated on (source, target, type), keeping the
highest confidence, and upserted so a re-run refreshes existing edges.
"""

import re
from datetime import datetime
from typing import Iterable, Optional, Sequence
from uuid import UUID

import structlog

from content_sync.core.errors import AppError
from content_sync.db.repository import ContentRepository
from content_sync.models import (
    ContentItem,
    ContentItemFilters,
    ContentRelationship,
    DetectionResult,
    RelationshipCandidate,
    RelationshipDirection,
    RelationshipType,
)

from .similarity import similarities_to

logger = structlog.get_logger(__name__)

STRATEGY_EXPLICIT = "explicit"
STRATEGY_SEMANTIC = "semantic"
STRATEGY_TEMPORAL = "temporal"
STRATEGY_ENTITY = "entity"
DEFAULT_STRATEGIES = (STRATEGY_EXPLICIT, STRATEGY_SEMANTIC, STRATEGY_TEMPORAL)

DEFAULT_MIN_CONFIDENCE = 0.5
DEFAULT_MAX_RESULTS = 1000
ITEM_CANDIDATE_LIMIT = 100
ORGANIZATION_SCAN_LIMIT = 500

URL_CONFIDENCE = 0.95
ID_REFERENCE_CONFIDENCE = 0.9
TITLE_MENTION_CONFIDENCE = 0.8
SAME_AUTHOR_CONFIDENCE = 0.7
MIN_TITLE_MENTION_LENGTH = 6

# (max hours apart, confidence), checked in order
TEMPORAL_WINDOWS = ((1.0, 0.8), (4.0, 0.7), (24.0, 0.5))

URL_PATTERN = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+", re.IGNORECASE)


def _item_text(item: ContentItem) -> str:
    return f"{item.title or ''} {item.content or ''}"


def _item_time(item: ContentItem) -> Optional[datetime]:
    return item.created_at_source or item.created_at


def extract_urls(item: ContentItem) -> list[str]:
    """URLs identifying an item: its metadata url plus URLs in its text."""
    urls: list[str] = []
    for key in ("url", "html_url", "permalink", "video_url"):
        value = item.metadata.get(key)
        if isinstance(value, str) and value:
            urls.append(value)
    urls.extend(URL_PATTERN.findall(_item_text(item)))
    return list(dict.fromkeys(urls))


def _id_reference_pattern(external_id: str) -> re.Pattern:
    # Composite ids such as "org/repo#12" are matched as written; bare ids as "#12".
    token = external_id if "#" in external_id else f"#{external_id}"
    return re.compile(re.escape(token) + r"(?:\D|$)", re.IGNORECASE)


def detect_explicit_references(
    source: ContentItem, targets: Iterable[ContentItem]
) -> list[RelationshipCandidate]:
    """Find URLs, id references and title mentions of targets in the source text."""
    candidates: list[RelationshipCandidate] = []
    text = _item_text(source)
    source_urls = set(URL_PATTERN.findall(text))

    for target in targets:
        for url in extract_urls(target):
            if url in source_urls or url in text:
                candidates.append(
                    RelationshipCandidate(
                        source_item_id=str(source.id),
                        target_item_id=str(target.id),
                        relationship_type=RelationshipType.REFERENCES,
                        confidence=URL_CONFIDENCE,
                        strategy=STRATEGY_EXPLICIT,
                        evidence={"reason": "url", "url": url},
                    )
                )
                break

        if target.external_id and _id_reference_pattern(target.external_id).search(text):
            candidates.append(
                RelationshipCandidate(
                    source_item_id=str(source.id),
                    target_item_id=str(target.id),
                    relationship_type=RelationshipType.REFERENCES,
                    confidence=ID_REFERENCE_CONFIDENCE,
                    strategy=STRATEGY_EXPLICIT,
                    evidence={"reason": "id_reference", "external_id": target.external_id},
                )
            )

        title = target.title or ""
        if len(title) >= MIN_TITLE_MENTION_LENGTH and title.lower() in text.lower():
            if title.lower() == (source.title or "").lower():
                continue
            candidates.append(
                RelationshipCandidate(
                    source_item_id=str(source.id),
                    target_item_id=str(target.id),
                    relationship_type=RelationshipType.MENTIONS,
                    confidence=TITLE_MENTION_CONFIDENCE,
                    strategy=STRATEGY_EXPLICIT,
                    evidence={"reason": "title_mention", "title": title},
                )
            )
    return candidates


def detect_semantic_similarity(
    source: ContentItem,
    targets: Sequence[ContentItem],
    min_similarity: float,
) -> list[RelationshipCandidate]:
    """``similar_to`` edges to targets whose embeddings are close enough."""
    if not source.embedding:
        return []
    embedded = [t for t in targets if t.embedding and t.id != source.id]
    if not embedded:
        return []

    scores = similarities_to(source.embedding, [t.embedding for t in embedded])
    candidates = []
    for target, score in zip(embedded, scores):
        similarity = float(min(1.0, max(0.0, score)))
        if similarity >= min_similarity:
            candidates.append(
                RelationshipCandidate(
                    source_item_id=str(source.id),
                    target_item_id=str(target.id),
                    relationship_type=RelationshipType.SIMILAR_TO,
                    confidence=similarity,
                    strategy=STRATEGY_SEMANTIC,
                    evidence={"similarity": round(similarity, 4)},
                )
            )
    return candidates


def temporal_confidence(hours_apart: float) -> float:
    """Confidence for two items created ``hours_apart`` hours apart (0 if unrelated)."""
    for max_hours, confidence in TEMPORAL_WINDOWS:
        if hours_apart <= max_hours:
            return confidence
    return 0.0


def detect_temporal_proximity(
    source: ContentItem, targets: Iterable[ContentItem]
) -> list[RelationshipCandidate]:
    """``relates_to`` edges to items of other sources created within a day."""
    source_time = _item_time(source)
    if source_time is None:
        return []
    candidates = []
    for target in targets:
        if target.source_id == source.source_id:
            continue
        target_time = _item_time(target)
        if target_time is None:
            continue
        hours = abs((source_time - target_time).total_seconds()) / 3600
        confidence = temporal_confidence(hours)
        if confidence > 0:
            candidates.append(
                RelationshipCandidate(
                    source_item_id=str(source.id),
                    target_item_id=str(target.id),
                    relationship_type=RelationshipType.RELATES_TO,
                    confidence=confidence,
                    strategy=STRATEGY_TEMPORAL,
                    evidence={
                        "hours_apart": round(hours, 2),
                        "source_type": source.type.value,
                        "target_type": target.type.value,
                    },
                )
            )
    return candidates


def detect_entity_cooccurrence(
    source: ContentItem, targets: Iterable[ContentItem]
) -> list[RelationshipCandidate]:
    """``relates_to`` edges across sources for shared tags or a shared author."""
    source_tags = set(source.tags)
    source_author = source.author_external or (str(source.author_id) if source.author_id else None)
    candidates = []
    for target in targets:
        if target.source_id == source.source_id:
            continue

        shared = sorted(source_tags.intersection(target.tags))
        if len(shared) >= 2:
            candidates.append(
                RelationshipCandidate(
                    source_item_id=str(source.id),
                    target_item_id=str(target.id),
                    relationship_type=RelationshipType.RELATES_TO,
                    confidence=min(0.9, 0.5 + 0.1 * len(shared)),
                    strategy=STRATEGY_ENTITY,
                    evidence={"shared_tags": shared},
                )
            )

        target_author = target.author_external or (
            str(target.author_id) if target.author_id else None
        )
        if source_author and source_author == target_author:
            candidates.append(
                RelationshipCandidate(
                    source_item_id=str(source.id),
                    target_item_id=str(target.id),
                    relationship_type=RelationshipType.RELATES_TO,
                    confidence=SAME_AUTHOR_CONFIDENCE,
                    strategy=STRATEGY_ENTITY,
                    evidence={"author": source.author_name or source_author},
                )
            )
    return candidates


def deduplicate_candidates(
    candidates: Iterable[RelationshipCandidate],
) -> list[RelationshipCandidate]:
    """Keep the highest-confidence candidate per (source, target, type)."""
    best: dict[str, RelationshipCandidate] = {}
    for candidate in candidates:
        existing = best.get(candidate.key)
        if existing is None or candidate.confidence > existing.confidence:
            best[candidate.key] = candidate
    return list(best.values())


class RelationshipDetector:
    """Detects and persists relationships between content items."""

    def __init__(
        self,
        repository: ContentRepository,
        similarity_threshold: float = 0.8,
    ) -> None:
        """
        Initialize the detector.

        Args:
            repository: Content repository
            similarity_threshold: Floor for ``similar_to`` edges; never
                below the detection's min_confidence
        """
        self._repository = repository
        self._similarity_threshold = similarity_threshold

    def _candidates_for(
        self,
        item: ContentItem,
        others: Sequence[ContentItem],
        strategies: Sequence[str],
        min_confidence: float,
    ) -> list[RelationshipCandidate]:
        candidates: list[RelationshipCandidate] = []
        if STRATEGY_EXPLICIT in strategies:
            candidates.extend(detect_explicit_references(item, others))
        if STRATEGY_SEMANTIC in strategies:
            threshold = max(min_confidence, self._similarity_threshold)
            candidates.extend(detect_semantic_similarity(item, others, threshold))
        if STRATEGY_TEMPORAL in strategies:
            candidates.extend(detect_temporal_proximity(item, others))
        if STRATEGY_ENTITY in strategies:
            candidates.extend(detect_entity_cooccurrence(item, others))
        return candidates

    async def detect_for_item(
        self,
        item_id: UUID,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        strategies: Sequence[str] = DEFAULT_STRATEGIES,
    ) -> list[RelationshipCandidate]:
        """
        Propose relationships from one item to its organization's recent items.

        Returns:
            Deduplicated candidates at or above min_confidence; empty if
            the item does not exist
        """
        item = await self._repository.get_item_option(item_id)
        if item is None:
            return []
        page = await self._repository.list_items(
            ContentItemFilters(organization_id=item.organization_id),
            limit=ITEM_CANDIDATE_LIMIT,
        )
        others = [i for i in page.items if i.id != item.id]
        candidates = self._candidates_for(item, others, strategies, min_confidence)
        return [c for c in deduplicate_candidates(candidates) if c.confidence >= min_confidence]

    async def detect_relationships(
        self,
        organization_id: UUID,
        source_id: Optional[UUID] = None,
        item_ids: Optional[Sequence[UUID]] = None,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        max_results: int = DEFAULT_MAX_RESULTS,
        strategies: Sequence[str] = DEFAULT_STRATEGIES,
    ) -> DetectionResult:
        """
        Detect and persist relationships.

        With ``item_ids`` those items are compared against the organization's
        recent items; otherwise the organization's (or source's) items are
        compared pairwise.

        Args:
            organization_id: Organization to scan
            source_id: Restrict the scan to one source
            item_ids: Items to detect relationships for
            min_confidence: Drop weaker candidates
            max_results: Cap on persisted candidates
            strategies: Strategies to run

        Returns:
            DetectionResult with candidates, created/skipped counts and errors
        """
        result = DetectionResult()
        pool = await self._repository.list_items(
            ContentItemFilters(organization_id=organization_id, source_id=source_id),
            limit=ORGANIZATION_SCAN_LIMIT,
        )
        if item_ids:
            items = await self._repository.get_items_by_ids(item_ids)
            items = [i for i in items if i.organization_id == organization_id]
            known = {i.id for i in pool.items}
            others = pool.items + [i for i in items if i.id not in known]
        else:
            items = pool.items
            others = pool.items

        candidates: list[RelationshipCandidate] = []
        for item in items:
            try:
                candidates.extend(
                    self._candidates_for(
                        item,
                        [o for o in others if o.id != item.id],
                        strategies,
                        min_confidence,
                    )
                )
            except (TypeError, ValueError) as e:
                result.errors.append(f"{item.id}: {e}")
                logger.warning("relationship_detection_failed", item_id=str(item.id), error=str(e))

        result.candidates = [
            c for c in deduplicate_candidates(candidates) if c.confidence >= min_confidence
        ][:max_results]
        await self._persist(result)

        logger.info(
            "relationships_detected",
            organization_id=str(organization_id),
            candidates=len(result.candidates),
            created=result.created,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result

    async def _persist(self, result: DetectionResult) -> None:
        """Upsert candidates; unchanged edges are counted as skipped."""
        existing: dict[str, dict[str, float]] = {}
        for candidate in result.candidates:
            try:
                if candidate.source_item_id not in existing:
                    edges = await self._repository.list_relationships(
                        UUID(candidate.source_item_id), RelationshipDirection.OUTGOING
                    )
                    existing[candidate.source_item_id] = {
                        f"{e.source_item_id}:{e.target_item_id}:{e.relationship_type.value}": e.confidence
                        for e in edges
                    }
                current = existing[candidate.source_item_id].get(candidate.key)
                if current is not None and abs(current - candidate.confidence) < 1e-9:
                    result.skipped += 1
                    continue
                await self.create_relationship(candidate)
                existing[candidate.source_item_id][candidate.key] = candidate.confidence
                result.created += 1
            except AppError as e:
                result.errors.append(f"{candidate.key}: {e.message}")
                logger.warning(
                    "relationship_persist_failed",
                    source_item_id=candidate.source_item_id,
                    target_item_id=candidate.target_item_id,
                    error=e.message,
                )

    async def create_relationship(self, candidate: RelationshipCandidate) -> ContentRelationship:
        """Upsert one candidate as an edge."""
        return await self._repository.create_relationship(
            UUID(candidate.source_item_id),
            UUID(candidate.target_item_id),
            candidate.relationship_type,
            confidence=candidate.confidence,
            metadata={"strategy": candidate.strategy, **candidate.evidence},
        )

    async def create_relationships(
        self, candidates: Sequence[RelationshipCandidate]
    ) -> list[ContentRelationship]:
        """Upsert several candidates, stopping at the first failure."""
        return [await self.create_relationship(c) for c in candidates]

    async def find_similar_items(
        self,
        item_id: UUID,
        limit: int = 10,
        min_similarity: float = 0.7,
    ) -> list[tuple[ContentItem, float]]:
        """Nearest items to an item by embedding, via pgvector."""
        item = await self._repository.get_item_option(item_id)
        if item is None or not item.embedding:
            return []
        return await self._repository.find_similar_items(
            item.organization_id,
            item.embedding,
            exclude_item_id=item.id,
            limit=limit,
            min_similarity=min_similarity,
        )
