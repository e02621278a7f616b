"""Typed per-source metadata attached to content items.

Each adapter converter returns one of these variants. The repository
stores them opaquely as JSONB via ``to_dict()``; nothing downstream of
the adapters needs to understand another source's shape.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional


def _to_json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, SourceMetadata):
        return value.to_dict()
    if isinstance(value, (set, frozenset)):
        return sorted(_to_json_value(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_to_json_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _to_json_value(v) for k, v in value.items()}
    return value


@dataclass
class SourceMetadata:
    """Base class for metadata variants.

    The ``kind`` tag identifies the variant inside the stored JSON.
    """

    kind: ClassVar[str] = "generic"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict, dropping unset optionals."""
        result: dict[str, Any] = {"kind": self.kind}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            result[f.name] = _to_json_value(value)
        return result


@dataclass
class GenericMetadata(SourceMetadata):
    """Free-form metadata for sources without a dedicated variant."""

    kind: ClassVar[str] = "generic"

    values: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result = {"kind": self.kind}
        result.update(_to_json_value(self.values))
        return result


# Slack


@dataclass
class SlackReaction(SourceMetadata):
    """Aggregated emoji reaction."""

    kind: ClassVar[str] = "slack_reaction"

    name: str
    count: int = 0
    users: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "count": self.count, "users": list(self.users)}


@dataclass
class FileAttachment(SourceMetadata):
    """File attached to a message, restored into object storage when allowed."""

    kind: ClassVar[str] = "file_attachment"

    id: str
    name: str
    mimetype: Optional[str] = None
    url: Optional[str] = None
    size: Optional[int] = None
    storage_key: Optional[str] = None
    skipped: Optional[bool] = None
    skip_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.pop("kind", None)
        return result


@dataclass
class SlackMessageMetadata(SourceMetadata):
    """Metadata for Slack messages and aggregated threads."""

    kind: ClassVar[str] = "slack"

    channel_id: str
    channel_name: str
    channel_type: str = "public"
    message_ts: Optional[str] = None
    thread_ts: Optional[str] = None
    reactions: list[SlackReaction] = field(default_factory=list)
    files: list[FileAttachment] = field(default_factory=list)
    reply_count: int = 0
    reply_users_count: int = 0
    latest_reply: Optional[str] = None
    permalink: Optional[str] = None
    edited: Optional[dict[str, Any]] = None
    blocks: Optional[list[dict[str, Any]]] = None


# GitHub


@dataclass
class CodeContext(SourceMetadata):
    """Languages, files and symbols touched by a pull request."""

    kind: ClassVar[str] = "code_context"

    languages: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)
    components: list[str] = field(default_factory=list)
    functions: list[str] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    classes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.pop("kind", None)
        return result


@dataclass
class GitHubPullRequestMetadata(SourceMetadata):
    """Metadata for a GitHub pull request."""

    kind: ClassVar[str] = "github_pull_request"

    repo: str
    number: int
    state: str
    node_id: Optional[str] = None
    draft: bool = False
    base_branch: Optional[str] = None
    head_branch: Optional[str] = None
    base_sha: Optional[str] = None
    head_sha: Optional[str] = None
    merge_commit_sha: Optional[str] = None
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    reviewers: list[str] = field(default_factory=list)
    review_state: Optional[str] = None
    merged_by: Optional[str] = None
    merged_at: Optional[str] = None
    files_changed: int = 0
    additions: int = 0
    deletions: int = 0
    commits: int = 0
    comments: int = 0
    review_comments: int = 0
    linked_issues: list[int] = field(default_factory=list)
    url: Optional[str] = None
    html_url: Optional[str] = None
    symbols_added: list[str] = field(default_factory=list)
    symbols_modified: list[str] = field(default_factory=list)
    symbols_removed: list[str] = field(default_factory=list)
    components_changed: list[str] = field(default_factory=list)
    code_context: Optional[CodeContext] = None


@dataclass
class GitHubIssueMetadata(SourceMetadata):
    """Metadata for a GitHub issue."""

    kind: ClassVar[str] = "github_issue"

    repo: str
    number: int
    state: str
    state_reason: Optional[str] = None
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    milestone: Optional[str] = None
    linked_prs: list[int] = field(default_factory=list)
    is_pull_request: bool = False
    comment_count: int = 0
    reactions: dict[str, int] = field(default_factory=dict)
    url: Optional[str] = None
    html_url: Optional[str] = None


@dataclass
class GitHubDiscussionMetadata(SourceMetadata):
    """Metadata for a GitHub discussion."""

    kind: ClassVar[str] = "github_discussion"

    repo: str
    number: int
    category: Optional[str] = None
    is_answered: bool = False
    answer_id: Optional[str] = None
    answer_author: Optional[str] = None
    comment_count: int = 0
    upvote_count: int = 0
    labels: list[str] = field(default_factory=list)
    url: Optional[str] = None


@dataclass
class GitHubWikiMetadata(SourceMetadata):
    """Metadata for a GitHub wiki page."""

    kind: ClassVar[str] = "github_wiki"

    repo: str
    path: str
    sha: Optional[str] = None
    url: Optional[str] = None


# Notion


@dataclass
class NotionPageMetadata(SourceMetadata):
    """Metadata for a Notion page."""

    kind: ClassVar[str] = "notion_page"

    page_id: str
    parent_type: str
    parent_id: Optional[str] = None
    icon: Optional[str] = None
    cover: Optional[str] = None
    created_time: Optional[str] = None
    last_edited_time: Optional[str] = None
    created_by: Optional[str] = None
    last_edited_by: Optional[str] = None
    url: Optional[str] = None
    breadcrumb: list[str] = field(default_factory=list)
    depth: int = 0
    is_database_entry: bool = False
    database_id: Optional[str] = None


@dataclass
class NotionDatabaseEntryMetadata(NotionPageMetadata):
    """Metadata for a row of a Notion database."""

    kind: ClassVar[str] = "notion_database_entry"

    properties: dict[str, Any] = field(default_factory=dict)


# Video


@dataclass
class VideoMetadata(SourceMetadata):
    """Metadata for an internally hosted video."""

    kind: ClassVar[str] = "video"

    video_id: str
    duration: Optional[int] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
