"""Data models exchanged between adapters and the sync orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .content import ContentItemType, ParticipantRole, RelationshipType
from .metadata import GenericMetadata, SourceMetadata


@dataclass
class RawParticipant:
    """Person attached to a raw item, identified by their source-side id."""

    external_id: Optional[str]
    role: ParticipantRole
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class RawReference:
    """Cross-reference from a raw item to another item of the same source."""

    external_id: str
    relationship_type: RelationshipType = RelationshipType.REFERENCES


@dataclass
class RawContentItem:
    """Adapter output, normalized but not yet deduplicated or stored.

    Attributes:
        external_id: Identifier of the record in the source system
        type: Normalized item type
        title: Display title
        content: Flattened plain/markdown text
        content_html: Optional rich rendering
        author_external: Source-side author id
        author_name: Source-side author display name
        created_at_source: Creation time in the source
        updated_at_source: Last update time in the source
        metadata: Typed per-source metadata variant
        tags: Free-form tags (labels, channel names, AI tags)
        participants: People involved in the item
        related_external_ids: Explicit references to other items
    """

    external_id: str
    type: ContentItemType
    title: Optional[str] = None
    content: Optional[str] = None
    content_html: Optional[str] = None
    author_external: Optional[str] = None
    author_name: Optional[str] = None
    created_at_source: Optional[datetime] = None
    updated_at_source: Optional[datetime] = None
    metadata: SourceMetadata = field(default_factory=GenericMetadata)
    tags: list[str] = field(default_factory=list)
    participants: list[RawParticipant] = field(default_factory=list)
    related_external_ids: list[RawReference] = field(default_factory=list)


@dataclass
class FetchOptions:
    """Options for one ``fetch_content`` call."""

    cursor: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None
    filters: dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchResult:
    """One page of adapter output."""

    items: list[RawContentItem] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None


class SyncRunStatus(str, Enum):
    """Status of an in-flight or finished sync run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    FAILED = "failed"


@dataclass
class SyncProgress:
    """Progress of a sync run for one source.

    Attributes:
        source_id: Source being synced
        status: Run status
        items_processed: Items upserted successfully
        items_failed: Items skipped after a per-item failure
        items_total: Items returned by the adapter so far
        pages: Pages fully processed
        errors: Per-item and run-level errors
        next_cursor: Cursor to resume from when the budget ran out
        started_at: When the run started
        completed_at: When the run ended
    """

    source_id: str
    status: SyncRunStatus = SyncRunStatus.IDLE
    items_processed: int = 0
    items_failed: int = 0
    items_total: int = 0
    pages: int = 0
    errors: list[dict[str, Optional[str]]] = field(default_factory=list)
    item_ids: list[str] = field(default_factory=list)
    next_cursor: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def mark_started(self) -> None:
        """Mark the run as started."""
        self.status = SyncRunStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def mark_completed(self, budget_exhausted: bool = False) -> None:
        """Mark the run as finished without a systemic failure."""
        self.completed_at = datetime.now(timezone.utc)
        self.status = (
            SyncRunStatus.BUDGET_EXHAUSTED if budget_exhausted else SyncRunStatus.COMPLETED
        )

    def mark_failed(self, message: str) -> None:
        """Mark the run as failed with a run-level error."""
        self.completed_at = datetime.now(timezone.utc)
        self.status = SyncRunStatus.FAILED
        self.errors.append({"message": message, "item_id": None})

    def add_error(self, item_id: Optional[str], message: str) -> None:
        """Record a per-item failure."""
        self.items_failed += 1
        self.errors.append({"message": message, "item_id": item_id})

    @property
    def duration_seconds(self) -> float:
        """Elapsed time of the run."""
        if not self.started_at:
            return 0.0
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()


@dataclass
class BatchProcessResult:
    """Outcome of an enrichment batch."""

    processed: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


@dataclass
class RelationshipCandidate:
    """Relationship proposed by a detection strategy before persistence."""

    source_item_id: str
    target_item_id: str
    relationship_type: RelationshipType
    confidence: float
    strategy: str
    evidence: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Dedup key matching the relationship unique constraint."""
        return f"{self.source_item_id}:{self.target_item_id}:{self.relationship_type.value}"


@dataclass
class DetectionResult:
    """Outcome of a relationship detection pass."""

    candidates: list[RelationshipCandidate] = field(default_factory=list)
    created: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
