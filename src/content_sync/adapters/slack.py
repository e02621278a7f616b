"""Slack adapter: channel messages and threads as content items.

Pages walk one configured channel at a time, newest first. The cursor
``"{channel_id}:{ts}"`` names the channel being read and the timestamp
of the oldest message already seen there (empty when the channel has
not been started).
"""

from dataclasses import asdict
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

import httpx

from content_sync.core.errors import (
    ContentSourceAuthError,
    ContentSourceSyncError,
    SourceError,
)
from content_sync.credentials import CredentialCipher
from content_sync.models import (
    ContentSource,
    ContentSourceType,
    FetchOptions,
    FetchResult,
    FileAttachment,
    RawContentItem,
)

from .attachments import AttachmentProcessor
from .base import DEFAULT_FANOUT_CONCURRENCY, DEFAULT_TIMEOUT_SECONDS, HttpSourceAdapter
from .slack_messages import (
    SlackChannel,
    SlackUser,
    aggregate_thread,
    message_to_raw,
    to_slack_ts,
)

if TYPE_CHECKING:
    from content_sync.db.cursors import SyncCursorStore
    from content_sync.models import SyncCursor
    from content_sync.storage import ObjectStorage

DEFAULT_PAGE_SIZE = 50
USERS_CURSOR_KEY = "_users"

# Slack error codes that mean the token itself is unusable.
AUTH_ERROR_CODES = frozenset(
    {"invalid_auth", "token_revoked", "not_authed", "account_inactive", "token_expired"}
)


def parse_cursor(cursor: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split ``"{channel_id}:{ts}"`` into its parts."""
    if not cursor:
        return None, None
    channel_id, _, ts = cursor.partition(":")
    return channel_id or None, ts or None


class SlackAdapter(HttpSourceAdapter):
    """Adapter for the Slack Web API using a bot token.

    Config keys read from the source: ``channels`` (ids to sync),
    ``excludeBots``, ``syncThreads`` (default true) and ``syncFiles``
    (default true).
    """

    base_url = "https://slack.com/api/"

    def __init__(
        self,
        credential_cipher: Optional[CredentialCipher] = None,
        fanout_concurrency: int = DEFAULT_FANOUT_CONCURRENCY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        storage: Optional["ObjectStorage"] = None,
        cursor_store: Optional["SyncCursorStore"] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(credential_cipher, fanout_concurrency, timeout_seconds, client)
        self._storage = storage
        self._cursor_store = cursor_store

    @property
    def source_type(self) -> ContentSourceType:
        return ContentSourceType.SLACK

    def _access_token(self, source: ContentSource) -> str:
        credentials = self._credentials(source)
        token = credentials.get("accessToken") or credentials.get("access_token")
        if not token:
            raise ContentSourceAuthError(
                str(source.id), "get_access_token", "No access token found for Slack source"
            )
        return token

    async def _slack_call(
        self,
        source: ContentSource,
        token: str,
        method: str,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Call a Web API method and check the ``ok`` envelope."""
        response = await self._request(
            source,
            "GET",
            method,
            operation=method,
            params={k: v for k, v in (params or {}).items() if v is not None},
            headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(source, response, method)
        if not data.get("ok"):
            error = data.get("error") or "unknown_error"
            if error in AUTH_ERROR_CODES:
                raise ContentSourceAuthError(str(source.id), method, error)
            raise ContentSourceSyncError(
                str(source.id),
                method,
                f"Slack API error: {error}",
                retryable=error == "ratelimited",
            )
        return data

    async def _paginate(
        self,
        source: ContentSource,
        token: str,
        method: str,
        key: str,
        params: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Collect every page of a cursor-paginated list method."""
        results: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            data = await self._slack_call(source, token, method, {**params, "cursor": cursor})
            results.extend(data.get(key) or [])
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return results

    async def _check_credentials(self, source: ContentSource) -> None:
        await self._slack_call(source, self._access_token(source), "auth.test")

    async def refresh_auth(self, source: ContentSource) -> dict[str, Any]:
        """Slack bot tokens do not expire; verify one is present."""
        self._access_token(source)
        return self._credentials(source)

    # ------------------------------------------------------------------
    # Workspace lookups
    # ------------------------------------------------------------------

    async def list_channels(self, source: ContentSource) -> list[SlackChannel]:
        """List public and private channels the bot can see."""
        channels = await self._paginate(
            source,
            self._access_token(source),
            "conversations.list",
            "channels",
            {"types": "public_channel,private_channel", "exclude_archived": "true", "limit": 200},
        )
        return [SlackChannel.from_api(c) for c in channels]

    async def sync_users(self, source: ContentSource) -> list[SlackUser]:
        """Fetch workspace members and cache them with the source's sync state."""
        members = await self._paginate(
            source, self._access_token(source), "users.list", "members", {"limit": 200}
        )
        users = [SlackUser.from_api(m) for m in members]
        if self._cursor_store is not None:
            await self._cursor_store.upsert(
                source.id,
                USERS_CURSOR_KEY,
                {
                    "users": {u.id: asdict(u) for u in users},
                    "synced_at": datetime.now(timezone.utc).isoformat(),
                },
            )
        self._logger_for(source).info("slack_users_synced", user_count=len(users))
        return users

    async def _load_users(self, source: ContentSource) -> dict[str, SlackUser]:
        if self._cursor_store is not None:
            record = await self._cursor_store.get(source.id, USERS_CURSOR_KEY)
            if record is not None and record.state.get("users"):
                return {
                    user_id: SlackUser(**data)
                    for user_id, data in record.state["users"].items()
                }
        try:
            users = await self.sync_users(source)
        except ContentSourceSyncError as e:
            self._logger_for(source).warning("slack_users_unavailable", error=str(e))
            return {}
        return {u.id: u for u in users}

    async def _channel_names(self, source: ContentSource, token: str) -> dict[str, str]:
        """Channel names by id for mention resolution; empty when unavailable."""
        try:
            channels = await self._paginate(
                source,
                token,
                "conversations.list",
                "channels",
                {"types": "public_channel,private_channel", "limit": 1000},
            )
        except ContentSourceSyncError as e:
            self._logger_for(source).warning("slack_channel_map_unavailable", error=str(e))
            return {}
        return {c["id"]: c.get("name") or c["id"] for c in channels}

    async def _channel_info(
        self, source: ContentSource, token: str, channel_id: str
    ) -> SlackChannel:
        data = await self._slack_call(
            source, token, "conversations.info", {"channel": channel_id}
        )
        return SlackChannel.from_api(data["channel"])

    async def _permalink(
        self, source: ContentSource, token: str, channel_id: str, ts: str
    ) -> Optional[str]:
        try:
            data = await self._slack_call(
                source, token, "chat.getPermalink", {"channel": channel_id, "message_ts": ts}
            )
        except SourceError:
            return None
        return data.get("permalink")

    async def _thread_messages(
        self, source: ContentSource, token: str, channel_id: str, thread_ts: str
    ) -> list[dict[str, Any]]:
        """Parent first, then replies, as returned by conversations.replies."""
        return await self._paginate(
            source,
            token,
            "conversations.replies",
            "messages",
            {"channel": channel_id, "ts": thread_ts, "limit": 100},
        )

    # ------------------------------------------------------------------
    # Channel sync state
    # ------------------------------------------------------------------

    async def get_channel_sync_state(
        self, source_id: Any, channel_id: str
    ) -> Optional["SyncCursor"]:
        if self._cursor_store is None:
            return None
        return await self._cursor_store.get(source_id, channel_id)

    async def update_channel_sync_state(
        self, source_id: Any, channel_id: str, update: dict[str, Any]
    ) -> Optional["SyncCursor"]:
        """Merge per-channel sync state; new records default to a public channel named by id."""
        if self._cursor_store is None:
            return None
        return await self._cursor_store.upsert(
            source_id,
            channel_id,
            update,
            defaults={"channel_name": channel_id, "channel_type": "public"},
        )

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    async def _process_files(
        self,
        source: ContentSource,
        token: str,
        messages: list[dict[str, Any]],
    ) -> Optional[list[FileAttachment]]:
        files = [f for m in messages for f in (m.get("files") or [])]
        if not files:
            return None
        processor = AttachmentProcessor(
            self._storage, await self._get_client(), self._request_slots
        )
        return await processor.process_files(
            files,
            str(source.id),
            token,
            sync_files=(source.config or {}).get("syncFiles") is not False,
        )

    async def _convert(
        self,
        source: ContentSource,
        token: str,
        channel: SlackChannel,
        message: dict[str, Any],
        users: dict[str, SlackUser],
        channel_names: dict[str, str],
        thread: Optional[list[dict[str, Any]]] = None,
    ) -> RawContentItem:
        """Convert a message, aggregating it with ``thread`` replies when given."""
        permalink = await self._permalink(source, token, channel.id, message["ts"])
        if thread is not None:
            replies = [m for m in thread if m.get("ts") != message["ts"]]
            files = await self._process_files(source, token, [message, *replies])
            return aggregate_thread(
                message, replies, channel, users, permalink, files or [], channel_names
            )
        files = await self._process_files(source, token, [message])
        return message_to_raw(message, channel, users, permalink, files, channel_names)

    async def _convert_history_message(
        self,
        source: ContentSource,
        token: str,
        channel: SlackChannel,
        message: dict[str, Any],
        users: dict[str, SlackUser],
        channel_names: dict[str, str],
    ) -> RawContentItem:
        sync_threads = (source.config or {}).get("syncThreads") is not False
        thread = None
        if (message.get("reply_count") or 0) > 0 and sync_threads:
            thread = await self._thread_messages(source, token, channel.id, message["ts"])
        return await self._convert(source, token, channel, message, users, channel_names, thread)

    @staticmethod
    def _should_skip(message: dict[str, Any], exclude_bots: bool) -> bool:
        if exclude_bots and message.get("bot_id"):
            return True
        subtype = message.get("subtype")
        return bool(subtype) and subtype != "thread_broadcast"

    # ------------------------------------------------------------------
    # Adapter contract
    # ------------------------------------------------------------------

    async def fetch_content(
        self, source: ContentSource, options: FetchOptions
    ) -> FetchResult:
        """Fetch one page of messages from the channel named by the cursor.

        Channels whose info cannot be read are skipped. When a channel is
        exhausted the cursor moves on to the next configured channel.
        """
        config = source.config or {}
        channel_ids: list[str] = list(config.get("channels") or [])
        if not channel_ids:
            return FetchResult()

        token = self._access_token(source)
        log = self._logger_for(source)

        cursor_channel, latest = parse_cursor(options.cursor)
        index = channel_ids.index(cursor_channel) if cursor_channel in channel_ids else 0
        if cursor_channel not in channel_ids:
            latest = None

        oldest = to_slack_ts(options.since) if options.since else None
        if options.until and latest is None:
            latest = to_slack_ts(options.until)
        limit = options.limit or DEFAULT_PAGE_SIZE

        while index < len(channel_ids):
            channel_id = channel_ids[index]
            try:
                channel = await self._channel_info(source, token, channel_id)
            except ContentSourceSyncError as e:
                log.warning("slack_channel_skipped", channel_id=channel_id, error=str(e))
                index += 1
                latest = None
                continue

            history = await self._slack_call(
                source,
                token,
                "conversations.history",
                {"channel": channel_id, "limit": limit, "oldest": oldest, "latest": latest},
            )
            messages = history.get("messages") or []
            exclude_bots = bool(config.get("excludeBots"))
            wanted = [m for m in messages if not self._should_skip(m, exclude_bots)]

            users = await self._load_users(source)
            channel_names = await self._channel_names(source, token)
            items = await self._gather(
                self._convert_history_message(source, token, channel, m, users, channel_names)
                for m in wanted
            )

            if messages:
                newest_ts = max(messages, key=lambda m: float(m["ts"]))["ts"]
                await self.update_channel_sync_state(
                    source.id,
                    channel_id,
                    {
                        "channel_name": channel.name or channel_id,
                        "channel_type": channel.channel_type,
                        "last_message_ts": newest_ts,
                        "last_sync_at": datetime.now(timezone.utc).isoformat(),
                    },
                )

            if history.get("has_more") and messages:
                oldest_ts = min(messages, key=lambda m: float(m["ts"]))["ts"]
                next_cursor: Optional[str] = f"{channel_id}:{oldest_ts}"
            elif index + 1 < len(channel_ids):
                next_cursor = f"{channel_ids[index + 1]}:"
            else:
                next_cursor = None

            log.debug(
                "slack_page_fetched",
                channel_id=channel_id,
                message_count=len(messages),
                item_count=len(items),
                next_cursor=next_cursor,
            )
            return FetchResult(
                items=items, has_more=next_cursor is not None, next_cursor=next_cursor
            )

        return FetchResult()

    async def _fetch_in_channel(
        self,
        source: ContentSource,
        token: str,
        channel_id: str,
        ts: str,
    ) -> Optional[RawContentItem]:
        thread = await self._thread_messages(source, token, channel_id, ts)
        if not thread:
            return None
        parent = thread[0]
        channel = await self._channel_info(source, token, channel_id)
        users = await self._load_users(source)
        channel_names = await self._channel_names(source, token)
        return await self._convert(
            source,
            token,
            channel,
            parent,
            users,
            channel_names,
            thread if len(thread) > 1 else None,
        )

    async def fetch_item(
        self, source: ContentSource, external_id: str
    ) -> Optional[RawContentItem]:
        """Find a message by its ``ts`` in any configured channel."""
        token = self._access_token(source)
        for channel_id in (source.config or {}).get("channels") or []:
            try:
                item = await self._fetch_in_channel(source, token, channel_id, external_id)
            except ContentSourceSyncError:
                continue
            if item is not None:
                return item
        return None

    async def handle_event(
        self, source: ContentSource, event: dict[str, Any]
    ) -> list[RawContentItem]:
        """Handle ``message`` and ``reaction_added``/``reaction_removed`` events.

        Thread replies re-aggregate the whole thread; reactions refetch the
        item they were added to.
        """
        token = self._access_token(source)
        event_type = event.get("type")

        if event_type in ("reaction_added", "reaction_removed"):
            target = event.get("item") or {}
            if not target.get("channel") or not target.get("ts"):
                return []
            item = await self._fetch_in_channel(source, token, target["channel"], target["ts"])
            return [item] if item else []

        if event_type != "message":
            return []

        channel_id = event.get("channel")
        message = event
        if event.get("subtype") == "message_changed":
            message = event.get("message") or {}
        elif self._should_skip(event, exclude_bots=False):
            return []
        if not channel_id or not message.get("ts"):
            return []

        thread_ts = message.get("thread_ts")
        if thread_ts and thread_ts != message["ts"]:
            item = await self._fetch_in_channel(source, token, channel_id, thread_ts)
            return [item] if item else []

        try:
            channel = await self._channel_info(source, token, channel_id)
        except ContentSourceSyncError as e:
            self._logger_for(source).warning(
                "slack_event_channel_unavailable", channel_id=channel_id, error=str(e)
            )
            return []
        users = await self._load_users(source)
        channel_names = await self._channel_names(source, token)
        return [await self._convert(source, token, channel, message, users, channel_names)]
