"""Data models for the Content Sync engine."""

from .content import (
    EMBEDDING_DIMENSION,
    ContentChunk,
    ContentItem,
    ContentItemFilters,
    ContentItemType,
    ContentItemWithRelations,
    ContentParticipant,
    ContentRelationship,
    ContentSource,
    ContentSourceFilters,
    ContentSourceType,
    ContentSourceWithStats,
    NotionPageHierarchy,
    PaginatedResult,
    ParticipantRole,
    ProcessingStatus,
    RelationshipDirection,
    RelationshipType,
    SourceSyncStatus,
    SyncCursor,
    TopicCluster,
    TopicClusterMember,
    TopicClusterWithMembers,
    TopicExpertise,
)
from .metadata import (
    CodeContext,
    FileAttachment,
    GenericMetadata,
    GitHubDiscussionMetadata,
    GitHubIssueMetadata,
    GitHubPullRequestMetadata,
    GitHubWikiMetadata,
    NotionDatabaseEntryMetadata,
    NotionPageMetadata,
    SlackMessageMetadata,
    SlackReaction,
    SourceMetadata,
    VideoMetadata,
)
from .sync import (
    BatchProcessResult,
    DetectionResult,
    FetchOptions,
    FetchResult,
    RawContentItem,
    RawParticipant,
    RawReference,
    RelationshipCandidate,
    SyncProgress,
    SyncRunStatus,
)

__all__ = [
    # Content graph
    "EMBEDDING_DIMENSION",
    "ContentChunk",
    "ContentItem",
    "ContentItemFilters",
    "ContentItemType",
    "ContentItemWithRelations",
    "ContentParticipant",
    "ContentRelationship",
    "ContentSource",
    "ContentSourceFilters",
    "ContentSourceType",
    "ContentSourceWithStats",
    "NotionPageHierarchy",
    "PaginatedResult",
    "ParticipantRole",
    "ProcessingStatus",
    "RelationshipDirection",
    "RelationshipType",
    "SourceSyncStatus",
    "SyncCursor",
    "TopicCluster",
    "TopicClusterMember",
    "TopicClusterWithMembers",
    "TopicExpertise",
    # Metadata variants
    "CodeContext",
    "FileAttachment",
    "GenericMetadata",
    "GitHubDiscussionMetadata",
    "GitHubIssueMetadata",
    "GitHubPullRequestMetadata",
    "GitHubWikiMetadata",
    "NotionDatabaseEntryMetadata",
    "NotionPageMetadata",
    "SlackMessageMetadata",
    "SlackReaction",
    "SourceMetadata",
    "VideoMetadata",
    # Sync
    "BatchProcessResult",
    "DetectionResult",
    "FetchOptions",
    "FetchResult",
    "RawContentItem",
    "RawParticipant",
    "RawReference",
    "RelationshipCandidate",
    "SyncProgress",
    "SyncRunStatus",
]
