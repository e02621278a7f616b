"""Conversion of GitHub API payloads into raw content items.

Also extracts code context and symbol changes from PR diffs. Symbol
extraction is a regex heuristic for TypeScript/JavaScript only; other
languages contribute files, directories and languages but no symbols.
"""

import base64
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from content_sync.models import (
    CodeContext,
    ContentItemType,
    GitHubDiscussionMetadata,
    GitHubIssueMetadata,
    GitHubPullRequestMetadata,
    GitHubWikiMetadata,
    ParticipantRole,
    RawContentItem,
    RawParticipant,
    RawReference,
)

MAX_REVIEW_COMMENTS = 10
MAX_ISSUE_COMMENTS = 20

_ISSUE_REFERENCE_PATTERNS = (
    re.compile(r"#(\d+)"),
    re.compile(r"(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s+#(\d+)", re.IGNORECASE),
    re.compile(r"github\.com/[\w-]+/[\w-]+/issues/(\d+)"),
)

LANGUAGE_MAP = {
    "ts": "TypeScript",
    "tsx": "TypeScript",
    "js": "JavaScript",
    "jsx": "JavaScript",
    "py": "Python",
    "rb": "Ruby",
    "go": "Go",
    "rs": "Rust",
    "java": "Java",
    "kt": "Kotlin",
    "swift": "Swift",
    "cs": "C#",
    "cpp": "C++",
    "c": "C",
    "h": "C",
    "php": "PHP",
    "sql": "SQL",
    "md": "Markdown",
    "json": "JSON",
    "yaml": "YAML",
    "yml": "YAML",
    "xml": "XML",
    "html": "HTML",
    "css": "CSS",
    "scss": "SCSS",
    "less": "LESS",
}

SYMBOL_LANGUAGES = frozenset({"TypeScript", "JavaScript"})

_FUNCTION_DECL = re.compile(r"(?:export\s+)?(?:async\s+)?function\s+(\w+)")
_ARROW_FUNCTION = re.compile(r"(?:export\s+)?(?:const|let)\s+(\w+)\s*=\s*(?:async\s*)?\(")
_CLASS_DECL = re.compile(r"(?:export\s+)?class\s+(\w+)")
_REACT_WRAPPER = re.compile(
    r"(?:export\s+)?(?:const|let)\s+([A-Z]\w+)\s*=\s*(?:React\.)?(?:memo|forwardRef)"
)
_METHOD_DEF = re.compile(r"^\s+(?:async\s+)?(\w+)\s*\([^)]*\)\s*[{:]", re.MULTILINE)
_IMPORT_FROM = re.compile(r"import\s+(?:{[^}]+}|\w+)\s+from\s+['\"]([^'\"]+)['\"]")
_DYNAMIC_IMPORT = re.compile(r"import\s*\(\s*['\"]([^'\"]+)['\"]\s*\)")
_REQUIRE = re.compile(r"require\s*\(\s*['\"]([^'\"]+)['\"]\s*\)")

_SKIPPED_METHODS = frozenset(
    {
        "constructor",
        "render",
        "componentDidMount",
        "componentWillUnmount",
        "componentDidUpdate",
        # control flow keywords that look like calls followed by a block
        "if",
        "for",
        "while",
        "switch",
        "catch",
    }
)

REVIEW_STATE_MARKERS = {
    "APPROVED": "✓",
    "CHANGES_REQUESTED": "✗",
    "COMMENTED": "○",
    "PENDING": "◌",
    "DISMISSED": "–",
}

ISSUE_REACTIONS = ("+1", "-1", "laugh", "hooray", "confused", "heart", "rocket", "eyes")


@dataclass
class SymbolChanges:
    """Symbols touched by a diff, split by how they changed."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    components_changed: list[str] = field(default_factory=list)


def parse_github_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse GitHub's ISO-8601 timestamps (``Z`` suffix included)."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def extract_issue_references(text: Optional[str]) -> list[int]:
    """Issue numbers referenced by ``#123``, ``closes #123`` or issue URLs.

    Returns:
        Sorted, de-duplicated issue numbers
    """
    if not text:
        return []
    numbers = set()
    for pattern in _ISSUE_REFERENCE_PATTERNS:
        numbers.update(int(n) for n in pattern.findall(text))
    return sorted(numbers)


def detect_language(filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return LANGUAGE_MAP.get(ext, "Unknown")


def _is_component_name(name: str) -> bool:
    return name[:1].isupper()


def _patch_lines(patch: str, marker: str) -> list[str]:
    """Added (``+``) or removed (``-``) lines of a unified diff, marker stripped."""
    header = marker * 3
    return [
        line[1:]
        for line in patch.split("\n")
        if line.startswith(marker) and not line.startswith(header)
    ]


def extract_symbols_from_patch(patch: str, language: str) -> dict[str, list[str]]:
    """Functions, components and classes declared in a patch's added lines."""
    functions: dict[str, None] = {}
    components: dict[str, None] = {}
    classes: dict[str, None] = {}
    if language not in SYMBOL_LANGUAGES:
        return {"functions": [], "components": [], "classes": []}

    content = "\n".join(_patch_lines(patch, "+"))
    for pattern in (_FUNCTION_DECL, _ARROW_FUNCTION):
        for name in pattern.findall(content):
            target = components if _is_component_name(name) else functions
            target[name] = None
    for name in _CLASS_DECL.findall(content):
        classes[name] = None
    for name in _REACT_WRAPPER.findall(content):
        components[name] = None
    for name in _METHOD_DEF.findall(content):
        if name not in _SKIPPED_METHODS:
            functions[name] = None

    return {
        "functions": list(functions),
        "components": list(components),
        "classes": list(classes),
    }


def extract_imports_from_patch(patch: str, language: str) -> list[str]:
    """Module specifiers imported by a patch's added lines."""
    if language not in SYMBOL_LANGUAGES:
        return []
    content = "\n".join(_patch_lines(patch, "+"))
    imports: dict[str, None] = {}
    for pattern in (_IMPORT_FROM, _DYNAMIC_IMPORT, _REQUIRE):
        for module in pattern.findall(content):
            imports[module] = None
    return list(imports)


def _declared_symbols(lines: list[str], language: str) -> dict[str, None]:
    if language not in SYMBOL_LANGUAGES:
        return {}
    content = "\n".join(lines)
    symbols: dict[str, None] = {}
    for pattern in (_FUNCTION_DECL, _ARROW_FUNCTION, _CLASS_DECL, _REACT_WRAPPER):
        for name in pattern.findall(content):
            symbols[name] = None
    return symbols


def extract_symbol_changes(files: list[dict[str, Any]]) -> SymbolChanges:
    """Classify declared symbols across all patches.

    A symbol found in both added and removed lines is ``modified``; one
    found only in added lines is ``added``; only in removed lines,
    ``removed``. Every capitalized symbol is a changed component.
    """
    added: dict[str, None] = {}
    removed: dict[str, None] = {}
    for file in files:
        patch = file.get("patch")
        if not patch:
            continue
        language = detect_language(file.get("filename", ""))
        added.update(_declared_symbols(_patch_lines(patch, "+"), language))
        removed.update(_declared_symbols(_patch_lines(patch, "-"), language))

    components = [s for s in {**added, **removed} if _is_component_name(s)]
    return SymbolChanges(
        added=[s for s in added if s not in removed],
        modified=[s for s in added if s in removed],
        removed=[s for s in removed if s not in added],
        components_changed=components,
    )


def extract_code_context(files: list[dict[str, Any]]) -> CodeContext:
    """Languages, paths, symbols and imports touched by a set of changed files."""
    functions: dict[str, None] = {}
    components: dict[str, None] = {}
    classes: dict[str, None] = {}
    imports: dict[str, None] = {}
    filenames = [f.get("filename", "") for f in files]

    for file in files:
        patch = file.get("patch")
        if not patch:
            continue
        language = detect_language(file.get("filename", ""))
        symbols = extract_symbols_from_patch(patch, language)
        functions.update(dict.fromkeys(symbols["functions"]))
        components.update(dict.fromkeys(symbols["components"]))
        classes.update(dict.fromkeys(symbols["classes"]))
        imports.update(dict.fromkeys(extract_imports_from_patch(patch, language)))

    directories = [d for d in dict.fromkeys(name.rpartition("/")[0] for name in filenames) if d]
    return CodeContext(
        languages=list(dict.fromkeys(detect_language(name) for name in filenames)),
        files=filenames,
        directories=directories,
        components=list(components),
        functions=list(functions),
        imports=list(imports),
        classes=list(classes),
    )


def determine_review_state(reviews: list[dict[str, Any]]) -> Optional[str]:
    """Aggregate review state: change requests win over approvals."""
    states = [r.get("state") for r in reviews]
    if "CHANGES_REQUESTED" in states:
        return "changes_requested"
    if "APPROVED" in states:
        return "approved"
    if reviews:
        return "pending"
    return None


def _login(user: Optional[dict[str, Any]]) -> str:
    return (user or {}).get("login") or "unknown"


def _user_id(user: Optional[dict[str, Any]]) -> str:
    if user and user.get("id") is not None:
        return str(user["id"])
    return "unknown"


def _label_names(labels: Optional[list[Any]]) -> list[str]:
    names = []
    for label in labels or []:
        name = label if isinstance(label, str) else (label or {}).get("name")
        if name:
            names.append(name)
    return names


def _references(repo: str, numbers: list[int], own_number: int) -> list[RawReference]:
    return [RawReference(external_id=f"{repo}#{n}") for n in numbers if n != own_number]


def _line_total(pr: dict[str, Any], files: list[dict[str, Any]], field: str) -> int:
    # The /pulls list payload omits line counts; fall back to the file list
    if pr.get(field) is not None:
        return pr[field]
    return sum(f.get(field) or 0 for f in files)


def pr_to_raw(
    pr: dict[str, Any],
    reviews: list[dict[str, Any]],
    review_comments: list[dict[str, Any]],
    files: list[dict[str, Any]],
) -> RawContentItem:
    """Convert a pull request with its reviews, review comments and files.

    The content is a markdown document: description, changed files with
    line counts, review verdicts and the first review comments.
    """
    repo = pr["base"]["repo"]["full_name"]
    number = pr["number"]

    sections = [
        f"# {pr.get('title') or ''}",
        "",
        pr.get("body") or "_No description provided_",
        "",
        "## Files Changed",
        "\n".join(
            f"- `{f.get('filename')}` (+{f.get('additions', 0)}/-{f.get('deletions', 0)})"
            for f in files
        ),
        "",
    ]
    if reviews:
        sections.append("## Reviews")
        for review in reviews:
            state = review.get("state") or "COMMENTED"
            marker = REVIEW_STATE_MARKERS.get(state, "○")
            sections.append(f"{marker} **{_login(review.get('user'))}**: {state}")
            if review.get("body"):
                sections.append(f"> {review['body']}")
        sections.append("")
    if review_comments:
        sections.append("## Review Comments")
        for comment in review_comments[:MAX_REVIEW_COMMENTS]:
            location = f" on `{comment['path']}:{comment.get('line')}`" if comment.get("path") else ""
            sections.append(f"**{_login(comment.get('user'))}**{location}:")
            sections.append(f"> {comment.get('body') or ''}")
            sections.append("")

    linked_issues = extract_issue_references(pr.get("body"))
    symbol_changes = extract_symbol_changes(files)
    metadata = GitHubPullRequestMetadata(
        repo=repo,
        number=number,
        state="merged" if pr.get("merged") or pr.get("merged_at") else pr.get("state", "open"),
        node_id=pr.get("node_id"),
        draft=bool(pr.get("draft")),
        base_branch=pr["base"].get("ref"),
        head_branch=(pr.get("head") or {}).get("ref"),
        base_sha=pr["base"].get("sha"),
        head_sha=(pr.get("head") or {}).get("sha"),
        merge_commit_sha=pr.get("merge_commit_sha"),
        labels=_label_names(pr.get("labels")),
        assignees=[_login(a) for a in pr.get("assignees") or []],
        reviewers=[_login(r) for r in pr.get("requested_reviewers") or []],
        review_state=determine_review_state(reviews),
        merged_by=_login(pr["merged_by"]) if pr.get("merged_by") else None,
        merged_at=pr.get("merged_at"),
        files_changed=pr.get("changed_files") or len(files),
        additions=_line_total(pr, files, "additions"),
        deletions=_line_total(pr, files, "deletions"),
        commits=pr.get("commits") or 0,
        comments=pr.get("comments") or 0,
        review_comments=pr.get("review_comments") or 0,
        linked_issues=linked_issues,
        url=pr.get("url"),
        html_url=pr.get("html_url"),
        symbols_added=symbol_changes.added,
        symbols_modified=symbol_changes.modified,
        symbols_removed=symbol_changes.removed,
        components_changed=symbol_changes.components_changed,
        code_context=extract_code_context(files),
    )

    author = pr.get("user")
    participants = [
        RawParticipant(
            external_id=_user_id(author), role=ParticipantRole.AUTHOR, name=_login(author)
        )
    ]
    reviewer_logins = dict.fromkeys(_login(r.get("user")) for r in reviews)
    reviewer_logins.pop(_login(author), None)
    participants.extend(
        RawParticipant(external_id=login, role=ParticipantRole.REVIEWER, name=login)
        for login in reviewer_logins
    )

    return RawContentItem(
        external_id=f"{repo}#{number}",
        type=ContentItemType.PULL_REQUEST,
        title=f"PR #{number}: {pr.get('title') or ''}",
        content="\n".join(sections),
        author_external=_user_id(author),
        author_name=_login(author),
        created_at_source=parse_github_datetime(pr.get("created_at")),
        updated_at_source=parse_github_datetime(pr.get("updated_at")),
        metadata=metadata,
        tags=metadata.labels,
        participants=participants,
        related_external_ids=_references(repo, linked_issues, number),
    )


def _repo_from_html_url(html_url: str) -> str:
    match = re.search(r"github\.com/([^/]+/[^/]+)", html_url or "")
    return match.group(1) if match else ""


def issue_to_raw(
    issue: dict[str, Any],
    comments: list[dict[str, Any]],
    repo: Optional[str] = None,
) -> RawContentItem:
    """Convert an issue and up to 20 of its comments."""
    repo = repo or _repo_from_html_url(issue.get("html_url", ""))
    number = issue["number"]

    sections = [f"# {issue.get('title') or ''}", "", issue.get("body") or "_No description provided_"]
    if comments:
        sections.extend(["", "## Comments", ""])
        for comment in comments[:MAX_ISSUE_COMMENTS]:
            sections.append(f"**{_login(comment.get('user'))}** ({comment.get('created_at')}):")
            sections.append(f"> {comment.get('body') or ''}")
            sections.append("")

    linked_prs = extract_issue_references(issue.get("body"))
    reactions = issue.get("reactions") or {}
    state_reason = issue.get("state_reason")
    metadata = GitHubIssueMetadata(
        repo=repo,
        number=number,
        state="closed" if issue.get("state") == "closed" else "open",
        state_reason=None if state_reason == "duplicate" else state_reason,
        labels=_label_names(issue.get("labels")),
        assignees=[_login(a) for a in issue.get("assignees") or []],
        milestone=(issue.get("milestone") or {}).get("title"),
        linked_prs=linked_prs,
        is_pull_request=bool(issue.get("pull_request")),
        comment_count=issue.get("comments") or 0,
        reactions={name: reactions[name] for name in ISSUE_REACTIONS if reactions.get(name)},
        url=issue.get("url"),
        html_url=issue.get("html_url"),
    )

    author = issue.get("user")
    participants = [
        RawParticipant(
            external_id=_user_id(author), role=ParticipantRole.AUTHOR, name=_login(author)
        )
    ]
    commenters = dict.fromkeys(_login(c.get("user")) for c in comments)
    commenters.pop(_login(author), None)
    participants.extend(
        RawParticipant(external_id=login, role=ParticipantRole.PARTICIPANT, name=login)
        for login in commenters
    )
    participants.extend(
        RawParticipant(external_id=_login(a), role=ParticipantRole.ASSIGNEE, name=_login(a))
        for a in issue.get("assignees") or []
    )

    return RawContentItem(
        external_id=f"{repo}#{number}",
        type=ContentItemType.ISSUE,
        title=f"Issue #{number}: {issue.get('title') or ''}",
        content="\n".join(sections),
        author_external=_user_id(author),
        author_name=_login(author),
        created_at_source=parse_github_datetime(issue.get("created_at")),
        updated_at_source=parse_github_datetime(issue.get("updated_at")),
        metadata=metadata,
        tags=metadata.labels,
        participants=participants,
        related_external_ids=_references(repo, linked_prs, number),
    )


def discussion_to_raw(discussion: dict[str, Any], repo: str) -> RawContentItem:
    """Convert a discussion node from the GraphQL API."""
    author = discussion.get("author") or {}
    answer = discussion.get("answer") or {}
    metadata = GitHubDiscussionMetadata(
        repo=repo,
        number=discussion["number"],
        category=(discussion.get("category") or {}).get("name"),
        is_answered=bool(answer),
        answer_id=answer.get("id"),
        answer_author=(answer.get("author") or {}).get("login"),
        comment_count=(discussion.get("comments") or {}).get("totalCount") or 0,
        upvote_count=discussion.get("upvoteCount") or 0,
        labels=[label["name"] for label in (discussion.get("labels") or {}).get("nodes") or []],
        url=discussion.get("url"),
    )
    login = author.get("login") or "unknown"
    return RawContentItem(
        external_id=discussion["id"],
        type=ContentItemType.THREAD,
        title=f"Discussion #{discussion['number']}: {discussion.get('title') or ''}",
        content=discussion.get("body"),
        author_external=author.get("id") or login,
        author_name=login,
        created_at_source=parse_github_datetime(discussion.get("createdAt")),
        updated_at_source=parse_github_datetime(discussion.get("updatedAt")),
        metadata=metadata,
        tags=metadata.labels,
        participants=[RawParticipant(external_id=login, role=ParticipantRole.AUTHOR, name=login)],
        related_external_ids=_references(
            repo, extract_issue_references(discussion.get("body")), -1
        ),
    )


def wiki_to_raw(page: dict[str, Any], repo: str, html_url: str) -> RawContentItem:
    """Convert a wiki page fetched through the contents API.

    Wiki pages carry no author or timestamps.
    """
    page_name = re.sub(r"\.md$", "", page["name"], flags=re.IGNORECASE).replace("-", " ")
    content = page.get("content") or ""
    if page.get("encoding") == "base64":
        content = base64.b64decode(content).decode("utf-8")
    return RawContentItem(
        external_id=f"{repo}/wiki/{page['path']}",
        type=ContentItemType.DOCUMENT,
        title=f"Wiki: {page_name}",
        content=content,
        metadata=GitHubWikiMetadata(repo=repo, path=page["path"], sha=page.get("sha"), url=html_url),
    )
