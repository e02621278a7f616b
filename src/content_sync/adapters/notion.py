"""Notion adapter: pages, databases and their entries."""

from typing import TYPE_CHECKING, Any, Optional

import httpx

from content_sync.core.errors import ContentSourceAuthError, ContentSourceSyncError
from content_sync.credentials import CredentialCipher
from content_sync.models import (
    ContentSource,
    ContentSourceType,
    FetchOptions,
    FetchResult,
    NotionPageHierarchy,
    RawContentItem,
)

from .base import DEFAULT_FANOUT_CONCURRENCY, DEFAULT_TIMEOUT_SECONDS, HttpSourceAdapter
from .notion_blocks import (
    blocks_to_text,
    comments_to_text,
    database_entry_to_raw,
    extract_page_title,
    page_to_raw,
    parent_info,
    parse_notion_time,
    rich_text_to_plain,
)

if TYPE_CHECKING:
    from content_sync.db.hierarchy import PageHierarchyStore

NOTION_API_VERSION = "2022-06-28"
DEFAULT_PAGE_SIZE = 50
DATABASE_QUERY_PAGE_SIZE = 100
MAX_DATABASE_QUERY_PAGES = 10


def _selection(config: dict[str, Any]) -> tuple[set[str], set[str]]:
    """Selected root pages and databases, from top-level or nested ``settings`` config."""
    settings = config.get("settings") or {}
    pages = config.get("rootPages") or settings.get("rootPages") or []
    databases = config.get("databases") or settings.get("databases") or []
    return set(pages), set(databases)


class NotionAdapter(HttpSourceAdapter):
    """Adapter for the Notion API using an integration token.

    Config keys: ``rootPages`` and ``databases`` restrict the sync to
    those subtrees, ``syncComments`` (default true) appends page
    comments, ``maxDepth`` skips deeper pages.
    """

    base_url = "https://api.notion.com/v1"

    def __init__(
        self,
        credential_cipher: Optional[CredentialCipher] = None,
        fanout_concurrency: int = DEFAULT_FANOUT_CONCURRENCY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        hierarchy_store: Optional["PageHierarchyStore"] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(credential_cipher, fanout_concurrency, timeout_seconds, client)
        self._hierarchy_store = hierarchy_store

    @property
    def source_type(self) -> ContentSourceType:
        return ContentSourceType.NOTION

    def _default_headers(self) -> dict[str, str]:
        return {"Notion-Version": NOTION_API_VERSION}

    def _access_token(self, source: ContentSource) -> str:
        credentials = self._credentials(source)
        token = credentials.get("accessToken") or credentials.get("access_token")
        if not token:
            raise ContentSourceAuthError(
                str(source.id), "get_access_token", "No access token found for Notion source"
            )
        return token

    async def _call(
        self,
        source: ContentSource,
        method: str,
        path: str,
        operation: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        response = await self._request(
            source,
            method,
            path,
            operation=operation,
            headers={"Authorization": f"Bearer {self._access_token(source)}"},
            **kwargs,
        )
        return self._json(source, response, operation)

    async def _check_credentials(self, source: ContentSource) -> None:
        await self._call(source, "GET", "/users/me", "get_bot_user")

    async def refresh_auth(self, source: ContentSource) -> dict[str, Any]:
        """Notion integration tokens do not expire; verify one is present."""
        self._access_token(source)
        return self._credentials(source)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def _search_all(self, source: ContentSource, object_type: str) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            body: dict[str, Any] = {
                "filter": {"property": "object", "value": object_type},
                "page_size": 100,
            }
            if cursor:
                body["start_cursor"] = cursor
            response = await self._call(source, "POST", "/search", f"search_{object_type}", json=body)
            results.extend(response.get("results") or [])
            cursor = response.get("next_cursor")
            if not response.get("has_more") or not cursor:
                return results

    async def list_root_pages(self, source: ContentSource) -> list[dict[str, Any]]:
        """Pages the integration can see, for selection in the UI."""
        return await self._search_all(source, "page")

    async def list_databases(self, source: ContentSource) -> list[dict[str, Any]]:
        return await self._search_all(source, "database")

    async def get_page_blocks(self, source: ContentSource, block_id: str) -> list[dict[str, Any]]:
        """All blocks of a page, with nested blocks under ``children``."""
        blocks: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params = {"start_cursor": cursor} if cursor else None
            response = await self._call(
                source, "GET", f"/blocks/{block_id}/children", "list_blocks", params=params
            )
            blocks.extend(b for b in response.get("results") or [] if b.get("type"))
            cursor = response.get("next_cursor")
            if not response.get("has_more") or not cursor:
                break

        parents = [b for b in blocks if b.get("has_children")]
        children = await self._gather(
            self.get_page_blocks(source, b["id"]) for b in parents
        )
        for block, nested in zip(parents, children):
            block["children"] = nested
        return blocks

    async def get_page_comments(self, source: ContentSource, page_id: str) -> list[dict[str, Any]]:
        comments: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            params: dict[str, Any] = {"block_id": page_id}
            if cursor:
                params["start_cursor"] = cursor
            response = await self._call(source, "GET", "/comments", "list_comments", params=params)
            comments.extend(response.get("results") or [])
            cursor = response.get("next_cursor")
            if not response.get("has_more") or not cursor:
                return comments

    async def query_database(
        self, source: ContentSource, database_id: str
    ) -> list[dict[str, Any]]:
        """Database rows, full page objects only."""
        entries: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        for _ in range(MAX_DATABASE_QUERY_PAGES):
            body: dict[str, Any] = {"page_size": DATABASE_QUERY_PAGE_SIZE}
            if cursor:
                body["start_cursor"] = cursor
            response = await self._call(
                source, "POST", f"/databases/{database_id}/query", "query_database", json=body
            )
            entries.extend(
                r for r in response.get("results") or []
                if r.get("object") == "page" and "properties" in r
            )
            cursor = response.get("next_cursor")
            if not response.get("has_more") or not cursor:
                break
        return entries

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    async def get_page_hierarchy(
        self, source_id: Any, page_id: str
    ) -> Optional[NotionPageHierarchy]:
        if self._hierarchy_store is None:
            return None
        return await self._hierarchy_store.get(source_id, page_id)

    async def record_page_hierarchy(
        self,
        source: ContentSource,
        page: dict[str, Any],
        title: str,
        is_database: bool = False,
    ) -> Optional[NotionPageHierarchy]:
        """Store a page's position, extending its parent's stored path."""
        if self._hierarchy_store is None:
            return None
        parent_type, parent_id = parent_info(page.get("parent") or {})
        path = [page["id"]]
        title_path = [title]
        if parent_id:
            parent = await self._hierarchy_store.get(source.id, parent_id)
            if parent is not None:
                path = [*parent.path, page["id"]]
                title_path = [*parent.title_path, title]
            else:
                path = [parent_id, page["id"]]
        return await self._hierarchy_store.upsert(
            source.id,
            page["id"],
            parent_id=parent_id,
            parent_type=parent_type,
            path=path,
            title_path=title_path,
            is_database=is_database,
            is_archived=bool(page.get("archived")),
            last_edited_time=parse_notion_time(page.get("last_edited_time")),
        )

    async def _is_selected(
        self,
        source: ContentSource,
        result: dict[str, Any],
        pages: set[str],
        databases: set[str],
    ) -> bool:
        if not pages and not databases:
            return True
        if result["id"] in pages or result["id"] in databases:
            return True
        _, parent_id = parent_info(result.get("parent") or {})
        if parent_id and (parent_id in pages or parent_id in databases):
            return True
        hierarchy = await self.get_page_hierarchy(source.id, result["id"])
        return bool(hierarchy and any(ancestor in pages for ancestor in hierarchy.path))

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    async def _page_item(
        self, source: ContentSource, page: dict[str, Any]
    ) -> Optional[RawContentItem]:
        config = source.config or {}
        title = extract_page_title(page.get("properties") or {})
        hierarchy = await self.record_page_hierarchy(source, page, title)
        depth = hierarchy.depth if hierarchy else 0
        max_depth = config.get("maxDepth")
        if max_depth is not None and depth > max_depth:
            return None

        content = blocks_to_text(await self.get_page_blocks(source, page["id"]))
        if config.get("syncComments") is not False:
            try:
                comments = await self.get_page_comments(source, page["id"])
            except ContentSourceSyncError as e:
                self._logger_for(source).warning(
                    "notion_comments_unavailable", page_id=page["id"], error=str(e)
                )
                comments = []
            if comments:
                content = f"{content}\n\n---\n\n## Comments\n\n{comments_to_text(comments)}"

        breadcrumb = hierarchy.title_path[:-1] if hierarchy else []
        return page_to_raw(page, content, breadcrumb, depth)

    async def _database_items(
        self, source: ContentSource, database: dict[str, Any]
    ) -> list[RawContentItem]:
        title = rich_text_to_plain(database.get("title")) or "Database"
        await self.record_page_hierarchy(source, database, title, is_database=True)
        entries = await self.query_database(source, database["id"])
        return [database_entry_to_raw(e, title) for e in entries if not e.get("archived")]

    # ------------------------------------------------------------------
    # Adapter contract
    # ------------------------------------------------------------------

    async def fetch_content(
        self, source: ContentSource, options: FetchOptions
    ) -> FetchResult:
        """One page of the workspace search, most recently edited first.

        Search results older than ``since`` end the walk early.
        """
        pages, databases = _selection(source.config or {})
        body: dict[str, Any] = {
            "sort": {"direction": "descending", "timestamp": "last_edited_time"},
            "page_size": options.limit or DEFAULT_PAGE_SIZE,
        }
        if options.cursor:
            body["start_cursor"] = options.cursor
        response = await self._call(source, "POST", "/search", "search", json=body)

        reached_since = False
        page_tasks = []
        database_tasks = []
        for result in response.get("results") or []:
            if result.get("archived"):
                continue
            edited = parse_notion_time(result.get("last_edited_time"))
            if options.since and edited and edited < options.since:
                reached_since = True
                break
            if not await self._is_selected(source, result, pages, databases):
                continue
            if result.get("object") == "page" and "properties" in result:
                page_tasks.append(self._page_item(source, result))
            elif result.get("object") in ("database", "data_source"):
                database_tasks.append(self._database_items(source, result))

        items = [i for i in await self._gather(page_tasks) if i is not None]
        for entries in await self._gather(database_tasks):
            items.extend(entries)

        has_more = bool(response.get("has_more")) and not reached_since
        next_cursor = response.get("next_cursor") if has_more else None
        self._logger_for(source).debug(
            "notion_page_fetched", item_count=len(items), has_more=has_more
        )
        return FetchResult(items=items, has_more=has_more, next_cursor=next_cursor)

    async def fetch_item(
        self, source: ContentSource, external_id: str
    ) -> Optional[RawContentItem]:
        try:
            page = await self._call(source, "GET", f"/pages/{external_id}", "get_page")
        except ContentSourceSyncError as e:
            if e.status_code == 404:
                return None
            raise
        return await self._page_item(source, page)
