"""Pydantic models for the normalized content graph."""

from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

EMBEDDING_DIMENSION = 1536


class ContentSourceType(str, Enum):
    """External systems content can be synced from."""

    VIDEO = "video"
    SLACK = "slack"
    NOTION = "notion"
    GITHUB = "github"
    GOOGLE_DRIVE = "google_drive"
    CONFLUENCE = "confluence"
    LINEAR = "linear"


class ContentItemType(str, Enum):
    """Kinds of normalized content atoms."""

    VIDEO = "video"
    MESSAGE = "message"
    THREAD = "thread"
    DOCUMENT = "document"
    ISSUE = "issue"
    PULL_REQUEST = "pull_request"
    COMMENT = "comment"
    FILE = "file"


class SourceSyncStatus(str, Enum):
    """Sync status stored on a content source."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    DISABLED = "disabled"


class ProcessingStatus(str, Enum):
    """AI enrichment status of a content item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RelationshipType(str, Enum):
    """Directed edge types between content items."""

    REFERENCES = "references"
    REPLIES_TO = "replies_to"
    IMPLEMENTS = "implements"
    SUPERSEDES = "supersedes"
    RELATES_TO = "relates_to"
    SIMILAR_TO = "similar_to"
    MENTIONS = "mentions"
    DERIVED_FROM = "derived_from"


class ParticipantRole(str, Enum):
    """How a person is involved in a content item."""

    AUTHOR = "author"
    SPEAKER = "speaker"
    PARTICIPANT = "participant"
    MENTIONED = "mentioned"
    ASSIGNEE = "assignee"
    REVIEWER = "reviewer"


class RelationshipDirection(str, Enum):
    """Which edges to return when listing relationships of an item."""

    OUTGOING = "outgoing"
    INCOMING = "incoming"
    BOTH = "both"


class ContentSource(BaseModel):
    """A connected external account or workspace."""

    id: UUID = Field(..., description="Source identifier")
    organization_id: UUID = Field(..., description="Owning organization")
    name: str = Field(..., description="Display name")
    type: ContentSourceType = Field(..., description="External system type")
    config: dict[str, Any] = Field(
        default_factory=dict, description="Source-specific sync settings"
    )
    credentials: Optional[dict[str, Any]] = Field(
        default=None, description="Encrypted credential envelope or plaintext tokens"
    )
    sync_status: SourceSyncStatus = Field(default=SourceSyncStatus.IDLE)
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ContentSourceWithStats(ContentSource):
    """Content source with item counters."""

    item_count: int = 0
    pending_count: int = 0
    failed_count: int = 0


class ContentItem(BaseModel):
    """Unified content atom after normalization from any source."""

    id: UUID
    organization_id: UUID
    source_id: UUID
    type: ContentItemType
    external_id: str
    title: Optional[str] = None
    content: Optional[str] = None
    content_html: Optional[str] = None
    author_id: Optional[UUID] = None
    author_external: Optional[str] = None
    author_name: Optional[str] = None
    created_at_source: Optional[datetime] = None
    updated_at_source: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    search_text: Optional[str] = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    processing_error: Optional[str] = None
    processed_at: Optional[datetime] = None
    summary: Optional[str] = None
    key_points: list[str] = Field(default_factory=list)
    sentiment: Optional[str] = None
    embedding: Optional[list[float]] = Field(
        default=None, description="Embedding vector (1536 dimensions)"
    )
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("embedding")
    @classmethod
    def validate_embedding(cls, v: Optional[list[float]]) -> Optional[list[float]]:
        """Validate embedding dimension."""
        if v is not None and len(v) != EMBEDDING_DIMENSION:
            raise ValueError(
                f"Embedding must have {EMBEDDING_DIMENSION} dimensions, got {len(v)}"
            )
        return v


class ContentChunk(BaseModel):
    """Sub-span of a content item's text with its own embedding."""

    id: UUID
    content_item_id: UUID
    chunk_index: int = Field(..., ge=0)
    content: str
    start_offset: Optional[int] = None
    end_offset: Optional[int] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    embedding: Optional[list[float]] = None
    created_at: Optional[datetime] = None


class ContentRelationship(BaseModel):
    """Directed, typed, confidence-scored edge between two items."""

    id: UUID
    source_item_id: UUID
    target_item_id: UUID
    relationship_type: RelationshipType
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class ContentParticipant(BaseModel):
    """A person's involvement in a content item."""

    id: UUID
    content_item_id: UUID
    user_id: Optional[UUID] = None
    external_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    role: ParticipantRole
    created_at: Optional[datetime] = None


class ContentItemWithRelations(ContentItem):
    """Content item joined with its source, chunks, people and edges."""

    source: Optional[ContentSource] = None
    chunks: list[ContentChunk] = Field(default_factory=list)
    participants: list[ContentParticipant] = Field(default_factory=list)
    outgoing_relationships: list[ContentRelationship] = Field(default_factory=list)
    incoming_relationships: list[ContentRelationship] = Field(default_factory=list)


class TopicCluster(BaseModel):
    """Group of semantically similar items around a centroid embedding."""

    id: UUID
    organization_id: UUID
    name: str
    description: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    centroid: Optional[list[float]] = None
    content_count: int = 0
    source_breakdown: dict[str, int] = Field(default_factory=dict)
    participant_count: int = 0
    trending_score: float = 0.0
    is_auto: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TopicClusterMember(BaseModel):
    """Membership of an item in a topic cluster."""

    id: UUID
    cluster_id: UUID
    content_item_id: UUID
    similarity: float = 1.0
    is_primary: bool = False
    created_at: Optional[datetime] = None


class TopicExpertise(BaseModel):
    """A person's contribution to a topic cluster."""

    id: UUID
    cluster_id: UUID
    external_id: str
    user_id: Optional[UUID] = None
    name: Optional[str] = None
    content_count: int = 0
    last_contributed_at: Optional[datetime] = None
    expertise_score: float = 0.0


class TopicClusterWithMembers(TopicCluster):
    """Topic cluster joined with its member items."""

    members: list[TopicClusterMember] = Field(default_factory=list)


class SyncCursor(BaseModel):
    """Resumable sync position for a (source, subresource) pair."""

    id: UUID
    source_id: UUID
    key: str
    state: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def cursor(self) -> Optional[str]:
        """Stored pagination cursor, if any."""
        value = self.state.get("cursor")
        return str(value) if value is not None else None


class NotionPageHierarchy(BaseModel):
    """Position of a Notion page in its workspace tree."""

    id: UUID
    source_id: UUID
    page_id: str
    parent_id: Optional[str] = None
    parent_type: Optional[str] = None
    depth: int = 0
    path: list[str] = Field(default_factory=list)
    title_path: list[str] = Field(default_factory=list)
    is_database: bool = False
    is_archived: bool = False
    last_edited_time: Optional[datetime] = None


T = TypeVar("T")


class PaginatedResult(BaseModel, Generic[T]):
    """One page of a filtered listing."""

    items: list[T]
    total: int
    limit: int
    offset: int
    has_more: bool


class ContentItemFilters(BaseModel):
    """Filters accepted by item listings."""

    organization_id: Optional[UUID] = None
    source_id: Optional[UUID] = None
    type: Optional[ContentItemType] = None
    processing_status: Optional[ProcessingStatus] = None
    author_id: Optional[UUID] = None
    tags: list[str] = Field(default_factory=list)
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    search_query: Optional[str] = None


class ContentSourceFilters(BaseModel):
    """Filters accepted by source listings."""

    organization_id: Optional[UUID] = None
    type: Optional[ContentSourceType] = None
    sync_status: Optional[SourceSyncStatus] = None
