"""GitHub adapter: pull requests, issues, discussions and wiki pages.

Each ``fetch_content`` call syncs one configured repository; the cursor
is the full name of the next repository to sync.
"""

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

import httpx

from content_sync.core.errors import ContentSourceAuthError, ContentSourceSyncError
from content_sync.credentials import CredentialCipher
from content_sync.models import (
    ContentSource,
    ContentSourceType,
    FetchOptions,
    FetchResult,
    RawContentItem,
)

from .base import DEFAULT_FANOUT_CONCURRENCY, DEFAULT_TIMEOUT_SECONDS, HttpSourceAdapter
from .github_converters import (
    discussion_to_raw,
    issue_to_raw,
    parse_github_datetime,
    pr_to_raw,
    wiki_to_raw,
)

if TYPE_CHECKING:
    from content_sync.db.cursors import SyncCursorStore
    from content_sync.models import SyncCursor

OAUTH_TOKEN_URL = "https://github.com/login/oauth/access_token"

PER_PAGE = 50
MAX_PR_PAGES = 20
MAX_ISSUE_PAGES = 20
MAX_DISCUSSION_PAGES = 10
MAX_REPOSITORY_PAGES = 10
MAX_WIKI_DIRECTORIES = 10
MAX_WIKI_PAGES_PER_DIRECTORY = 50

PR_EVENT_ACTIONS = frozenset({"opened", "edited", "closed", "reopened", "synchronize"})
ISSUE_EVENT_ACTIONS = frozenset({"opened", "edited", "closed", "reopened"})

DISCUSSIONS_QUERY = """
query($owner: String!, $name: String!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    discussions(first: 50, after: $cursor, orderBy: {field: UPDATED_AT, direction: DESC}) {
      pageInfo { hasNextPage endCursor }
      nodes {
        id
        number
        title
        body
        author { login }
        category { name }
        answer { id author { login } }
        comments { totalCount }
        upvoteCount
        labels(first: 10) { nodes { name } }
        url
        createdAt
        updatedAt
      }
    }
  }
}
"""


def _is_markdown(entry: dict[str, Any]) -> bool:
    name = entry.get("name", "")
    return entry.get("type") == "file" and (name.endswith(".md") or name.endswith(".markdown"))


def _wiki_slug(path: str) -> str:
    for suffix in (".markdown", ".md"):
        if path.lower().endswith(suffix):
            return path[: -len(suffix)]
    return path


class GitHubAdapter(HttpSourceAdapter):
    """Adapter for the GitHub REST and GraphQL APIs.

    Config keys: ``repositories`` (``owner/name`` list), ``syncPRs``,
    ``syncIssues`` and ``syncDiscussions`` (default true), ``syncWiki``
    (default false), ``labelFilters`` and ``excludeLabels``.
    """

    base_url = "https://api.github.com"

    def __init__(
        self,
        credential_cipher: Optional[CredentialCipher] = None,
        fanout_concurrency: int = DEFAULT_FANOUT_CONCURRENCY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        cursor_store: Optional["SyncCursorStore"] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(credential_cipher, fanout_concurrency, timeout_seconds, client)
        self._cursor_store = cursor_store
        self._client_id = client_id
        self._client_secret = client_secret

    @property
    def source_type(self) -> ContentSourceType:
        return ContentSourceType.GITHUB

    def _default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _access_token(self, source: ContentSource) -> str:
        credentials = self._credentials(source)
        token = credentials.get("accessToken") or credentials.get("access_token")
        if not token:
            raise ContentSourceAuthError(
                str(source.id), "get_access_token", "No access token found for GitHub source"
            )
        return token

    async def _get(
        self,
        source: ContentSource,
        path: str,
        operation: str,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        response = await self._request(
            source,
            "GET",
            path,
            operation=operation,
            params=params,
            headers={"Authorization": f"Bearer {self._access_token(source)}"},
        )
        return self._json(source, response, operation)

    async def _get_or_empty(self, source: ContentSource, path: str, operation: str) -> list:
        """GET a list endpoint, treating non-auth failures as an empty list."""
        try:
            return await self._get(source, path, operation) or []
        except ContentSourceSyncError as e:
            self._logger_for(source).warning("github_subfetch_failed", path=path, error=str(e))
            return []

    async def _graphql(
        self, source: ContentSource, query: str, variables: dict[str, Any], operation: str
    ) -> dict[str, Any]:
        response = await self._request(
            source,
            "POST",
            "/graphql",
            operation=operation,
            json={"query": query, "variables": variables},
            headers={"Authorization": f"Bearer {self._access_token(source)}"},
        )
        payload = self._json(source, response, operation)
        if payload.get("errors"):
            message = "; ".join(e.get("message", "unknown") for e in payload["errors"])
            raise ContentSourceSyncError(
                str(source.id), operation, f"GraphQL error: {message}", retryable=False
            )
        return payload.get("data") or {}

    async def _check_credentials(self, source: ContentSource) -> None:
        await self._get(source, "/user", "get_user")

    async def refresh_auth(self, source: ContentSource) -> dict[str, Any]:
        """Exchange the stored refresh token for a new access token.

        Sources without a refresh token (personal access tokens, OAuth
        tokens that never expire) keep their current credentials.

        Raises:
            ContentSourceAuthError: If no token is stored or GitHub rejects
                the refresh
        """
        credentials = self._credentials(source)
        self._access_token(source)
        refresh_token = credentials.get("refreshToken") or credentials.get("refresh_token")
        if not refresh_token or not (self._client_id and self._client_secret):
            return credentials

        response = await self._request(
            source,
            "POST",
            OAUTH_TOKEN_URL,
            operation="refresh_auth",
            data={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            headers={"Accept": "application/json"},
        )
        payload = self._json(source, response, "refresh_auth")
        if payload.get("error") or not payload.get("access_token"):
            raise ContentSourceAuthError(
                str(source.id),
                "refresh_auth",
                payload.get("error_description") or payload.get("error") or "no access token",
            )

        refreshed = {
            **credentials,
            "accessToken": payload["access_token"],
            "refreshToken": payload.get("refresh_token") or refresh_token,
        }
        if payload.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(payload["expires_in"]))
            refreshed["expiresAt"] = expires_at.isoformat()
        self._logger_for(source).info("github_token_refreshed")
        return refreshed

    # ------------------------------------------------------------------
    # Repository bookkeeping
    # ------------------------------------------------------------------

    async def list_repositories(self, source: ContentSource) -> list[dict[str, Any]]:
        """Repositories visible to the token, most recently updated first."""
        repos: list[dict[str, Any]] = []
        for page in range(1, MAX_REPOSITORY_PAGES + 1):
            batch = await self._get(
                source,
                "/user/repos",
                "list_repositories",
                params={"per_page": 100, "page": page, "sort": "updated"},
            )
            repos.extend(batch)
            if len(batch) < 100:
                break
        return repos

    async def get_repo_sync_state(
        self, source_id: Any, repo_full_name: str
    ) -> Optional["SyncCursor"]:
        if self._cursor_store is None:
            return None
        return await self._cursor_store.get(source_id, repo_full_name)

    async def update_repo_sync_state(
        self, source_id: Any, repo_full_name: str, update: dict[str, Any]
    ) -> Optional["SyncCursor"]:
        if self._cursor_store is None:
            return None
        return await self._cursor_store.upsert(
            source_id, repo_full_name, update, defaults={"repo_full_name": repo_full_name}
        )

    # ------------------------------------------------------------------
    # Per-kind sync
    # ------------------------------------------------------------------

    @staticmethod
    def _passes_label_filters(labels: list[Any], config: dict[str, Any]) -> bool:
        names = {
            label if isinstance(label, str) else (label or {}).get("name")
            for label in labels or []
        }
        include = config.get("labelFilters") or []
        exclude = config.get("excludeLabels") or []
        if include and not any(f in names for f in include):
            return False
        return not any(f in names for f in exclude)

    async def _pr_item(self, source: ContentSource, repo: str, pr: dict[str, Any]) -> RawContentItem:
        base = f"/repos/{repo}/pulls/{pr['number']}"
        reviews, review_comments, files = await self._gather(
            [
                self._get_or_empty(source, f"{base}/reviews", "list_reviews"),
                self._get_or_empty(source, f"{base}/comments", "list_review_comments"),
                self._get_or_empty(source, f"{base}/files", "list_pr_files"),
            ]
        )
        return pr_to_raw(pr, reviews, review_comments, files)

    async def _issue_item(
        self, source: ContentSource, repo: str, issue: dict[str, Any]
    ) -> RawContentItem:
        comments = await self._get_or_empty(
            source, f"/repos/{repo}/issues/{issue['number']}/comments", "list_issue_comments"
        )
        return issue_to_raw(issue, comments, repo)

    async def sync_pull_requests(
        self, source: ContentSource, repo: str, since: Optional[datetime] = None
    ) -> list[RawContentItem]:
        """Pull requests updated since ``since``, newest first."""
        config = source.config or {}
        wanted: list[dict[str, Any]] = []
        for page in range(1, MAX_PR_PAGES + 1):
            prs = await self._get(
                source,
                f"/repos/{repo}/pulls",
                "list_pull_requests",
                params={
                    "state": "all",
                    "sort": "updated",
                    "direction": "desc",
                    "per_page": PER_PAGE,
                    "page": page,
                },
            )
            reached_window_end = False
            for pr in prs:
                updated_at = parse_github_datetime(pr.get("updated_at"))
                if since and updated_at and updated_at < since:
                    reached_window_end = True
                    break
                if self._passes_label_filters(pr.get("labels"), config):
                    wanted.append(pr)
            if reached_window_end or len(prs) < PER_PAGE:
                break
        return await self._gather(self._pr_item(source, repo, pr) for pr in wanted)

    async def sync_issues(
        self, source: ContentSource, repo: str, since: Optional[datetime] = None
    ) -> list[RawContentItem]:
        """Issues updated since ``since``; pull requests in the listing are skipped."""
        config = source.config or {}
        params: dict[str, Any] = {
            "state": "all",
            "sort": "updated",
            "direction": "desc",
            "per_page": PER_PAGE,
        }
        if since:
            params["since"] = since.isoformat()
        wanted: list[dict[str, Any]] = []
        for page in range(1, MAX_ISSUE_PAGES + 1):
            issues = await self._get(
                source, f"/repos/{repo}/issues", "list_issues", params={**params, "page": page}
            )
            wanted.extend(
                issue
                for issue in issues
                if not issue.get("pull_request")
                and self._passes_label_filters(issue.get("labels"), config)
            )
            if len(issues) < PER_PAGE:
                break
        return await self._gather(self._issue_item(source, repo, i) for i in wanted)

    async def sync_discussions(
        self, source: ContentSource, repo: str, since: Optional[datetime] = None
    ) -> list[RawContentItem]:
        owner, name = repo.split("/", 1)
        items: list[RawContentItem] = []
        cursor: Optional[str] = None
        for _ in range(MAX_DISCUSSION_PAGES):
            data = await self._graphql(
                source,
                DISCUSSIONS_QUERY,
                {"owner": owner, "name": name, "cursor": cursor},
                "list_discussions",
            )
            discussions = ((data.get("repository") or {}).get("discussions")) or {}
            for node in discussions.get("nodes") or []:
                updated_at = parse_github_datetime(node.get("updatedAt"))
                if since and updated_at and updated_at < since:
                    return items
                items.append(discussion_to_raw(node, repo))
            page_info = discussions.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")
        return items

    async def _wiki_page(
        self, source: ContentSource, repo: str, wiki_repo: str, entry: dict[str, Any], slug: str
    ) -> Optional[RawContentItem]:
        try:
            page = await self._get(
                source, f"/repos/{wiki_repo}/contents/{entry['path']}", "get_wiki_page"
            )
        except ContentSourceSyncError:
            return None
        return wiki_to_raw(page, repo, f"https://github.com/{repo}/wiki/{slug}")

    async def sync_wiki(self, source: ContentSource, repo: str) -> list[RawContentItem]:
        """Markdown wiki pages at the root and one directory level down."""
        repo_info = await self._get(source, f"/repos/{repo}", "get_repository")
        if not repo_info.get("has_wiki"):
            return []

        wiki_repo = f"{repo}.wiki"
        try:
            entries = await self._get(source, f"/repos/{wiki_repo}/contents", "list_wiki_pages")
        except ContentSourceSyncError:
            return []
        if not isinstance(entries, list):
            return []

        pages = [
            self._wiki_page(source, repo, wiki_repo, e, _wiki_slug(e["name"]))
            for e in entries
            if _is_markdown(e)
        ]
        directories = [e for e in entries if e.get("type") == "dir"][:MAX_WIKI_DIRECTORIES]
        for directory in directories:
            children = await self._get_or_empty(
                source, f"/repos/{wiki_repo}/contents/{directory['path']}", "list_wiki_pages"
            )
            pages.extend(
                self._wiki_page(source, repo, wiki_repo, e, _wiki_slug(e["path"]))
                for e in [c for c in children if _is_markdown(c)][:MAX_WIKI_PAGES_PER_DIRECTORY]
            )
        return [item for item in await self._gather(pages) if item is not None]

    # ------------------------------------------------------------------
    # Adapter contract
    # ------------------------------------------------------------------

    async def fetch_content(
        self, source: ContentSource, options: FetchOptions
    ) -> FetchResult:
        """Sync the repository named by the cursor (or the first one)."""
        config = source.config or {}
        repositories: list[str] = list(config.get("repositories") or [])
        if not repositories:
            return FetchResult()

        index = repositories.index(options.cursor) if options.cursor in repositories else 0
        repo = repositories[index]
        since = options.since

        items: list[RawContentItem] = []
        counts: dict[str, int] = {}
        if config.get("syncPRs") is not False:
            prs = await self.sync_pull_requests(source, repo, since)
            counts["pr_count"] = len(prs)
            items.extend(prs)
        if config.get("syncIssues") is not False:
            issues = await self.sync_issues(source, repo, since)
            counts["issue_count"] = len(issues)
            items.extend(issues)
        if config.get("syncDiscussions") is not False:
            discussions = await self.sync_discussions(source, repo, since)
            counts["discussion_count"] = len(discussions)
            items.extend(discussions)
        if config.get("syncWiki") is True:
            wiki_pages = await self.sync_wiki(source, repo)
            counts["wiki_page_count"] = len(wiki_pages)
            items.extend(wiki_pages)

        await self.update_repo_sync_state(
            source.id,
            repo,
            {**counts, "last_synced_at": datetime.now(timezone.utc).isoformat()},
        )

        next_cursor = repositories[index + 1] if index + 1 < len(repositories) else None
        self._logger_for(source).info(
            "github_repository_synced", repo=repo, item_count=len(items), **counts
        )
        return FetchResult(items=items, has_more=next_cursor is not None, next_cursor=next_cursor)

    async def fetch_item(
        self, source: ContentSource, external_id: str
    ) -> Optional[RawContentItem]:
        """Fetch ``owner/repo#number`` as a pull request, else as an issue."""
        repo, sep, number = external_id.rpartition("#")
        if not sep or not number.isdigit():
            return None
        try:
            pr = await self._get(source, f"/repos/{repo}/pulls/{number}", "get_pull_request")
            return await self._pr_item(source, repo, pr)
        except ContentSourceSyncError as e:
            if e.status_code != 404:
                raise
        try:
            issue = await self._get(source, f"/repos/{repo}/issues/{number}", "get_issue")
        except ContentSourceSyncError as e:
            if e.status_code == 404:
                return None
            raise
        return await self._issue_item(source, repo, issue)

    async def handle_event(
        self, source: ContentSource, event: dict[str, Any]
    ) -> list[RawContentItem]:
        """Handle a webhook delivery.

        ``event`` carries the delivery's ``X-GitHub-Event`` name under
        ``event`` and the JSON body under ``payload``.
        """
        name = event.get("event")
        payload = event.get("payload") or {}
        action = payload.get("action")
        repo = (payload.get("repository") or {}).get("full_name")
        if not repo:
            return []

        if name in ("pull_request", "pull_request_review", "pull_request_review_comment"):
            pr = payload.get("pull_request")
            if not isinstance(pr, dict) or "number" not in pr:
                return []
            if name == "pull_request" and action not in PR_EVENT_ACTIONS:
                return []
            return [await self._pr_item(source, repo, pr)]

        if name in ("issues", "issue_comment"):
            issue = payload.get("issue")
            if not isinstance(issue, dict) or "number" not in issue or issue.get("pull_request"):
                return []
            if name == "issues" and action not in ISSUE_EVENT_ACTIONS:
                return []
            return [await self._issue_item(source, repo, issue)]

        return []
