"""Conversion of Slack messages and threads into raw content items."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from content_sync.models import (
    ContentItemType,
    FileAttachment,
    ParticipantRole,
    RawContentItem,
    RawParticipant,
    SlackMessageMetadata,
    SlackReaction,
)

MESSAGE_PREVIEW_LENGTH = 50
THREAD_PREVIEW_LENGTH = 40

_CHANNEL_MENTION = re.compile(r"<#([A-Z0-9]+)\|([^>]+)>")
_BARE_CHANNEL_MENTION = re.compile(r"<#([A-Z0-9]+)>")
_USER_MENTION = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]+)?>")


@dataclass
class SlackUser:
    """Workspace member as returned by users.list."""

    id: str
    real_name: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    is_bot: bool = False

    @classmethod
    def from_api(cls, member: dict[str, Any]) -> "SlackUser":
        profile = member.get("profile") or {}
        return cls(
            id=member["id"],
            real_name=member.get("real_name") or profile.get("real_name") or None,
            display_name=profile.get("display_name") or None,
            email=profile.get("email") or None,
            is_bot=bool(member.get("is_bot")),
        )

    @property
    def name(self) -> Optional[str]:
        return self.real_name or self.display_name


@dataclass
class SlackChannel:
    """Channel a message was read from."""

    id: str
    name: Optional[str] = None
    is_private: bool = False

    @classmethod
    def from_api(cls, channel: dict[str, Any]) -> "SlackChannel":
        return cls(
            id=channel["id"],
            name=channel.get("name"),
            is_private=bool(channel.get("is_private")),
        )

    @property
    def channel_type(self) -> str:
        return "private" if self.is_private else "public"


def parse_slack_ts(ts: Optional[str]) -> datetime:
    """Convert a Slack ``ts`` (epoch seconds with micros) to a UTC datetime."""
    return datetime.fromtimestamp(float(ts or "0"), tz=timezone.utc)


def to_slack_ts(value: datetime) -> str:
    """Convert a datetime to a Slack ``oldest``/``latest`` parameter."""
    return f"{value.timestamp():.6f}"


def message_author(message: dict[str, Any]) -> str:
    return message.get("user") or message.get("bot_id") or "unknown"


def resolve_channel_mentions(
    text: str, channels: Optional[dict[str, str]] = None
) -> str:
    """Turn ``<#C123|general>`` into ``#general``.

    Bare ``<#C123>`` mentions are resolved through ``channels`` when the
    id is known.
    """
    text = _CHANNEL_MENTION.sub(r"#\2", text)
    if channels:
        text = _BARE_CHANNEL_MENTION.sub(
            lambda m: f"#{channels[m.group(1)]}" if m.group(1) in channels else m.group(0),
            text,
        )
    return text


def resolve_user_mentions(text: str, users: dict[str, SlackUser]) -> str:
    """Turn ``<@U123>`` into ``@display name`` for known users."""

    def replace(match: re.Match) -> str:
        user = users.get(match.group(1))
        if user is None:
            return match.group(0)
        return f"@{user.display_name or user.real_name or user.id}"

    return _USER_MENTION.sub(replace, text)


def mentioned_user_ids(text: Optional[str]) -> list[str]:
    if not text:
        return []
    return list(dict.fromkeys(_USER_MENTION.findall(text)))


def _resolve_text(
    text: Optional[str],
    users: dict[str, SlackUser],
    channels: Optional[dict[str, str]],
) -> Optional[str]:
    if not text:
        return text
    return resolve_user_mentions(resolve_channel_mentions(text, channels), users)


def file_metadata_only(files: list[dict[str, Any]]) -> list[FileAttachment]:
    """Attachment metadata for files that are not restored."""
    return [
        FileAttachment(
            id=f.get("id") or "unknown",
            name=f.get("name") or "unknown",
            mimetype=f.get("mimetype") or "application/octet-stream",
            url=f.get("url_private") or "",
            size=f.get("size") or 0,
        )
        for f in files
    ]


def aggregate_reactions(messages: list[dict[str, Any]]) -> list[SlackReaction]:
    """Sum reaction counts per emoji across messages and union the users."""
    totals: dict[str, SlackReaction] = {}
    for message in messages:
        for reaction in message.get("reactions") or []:
            name = reaction.get("name")
            if not name:
                continue
            entry = totals.setdefault(name, SlackReaction(name=name))
            entry.count += reaction.get("count") or 0
            for user in reaction.get("users") or []:
                if user not in entry.users:
                    entry.users.append(user)
    return list(totals.values())


def _user_name(user: Optional[SlackUser]) -> str:
    return (user.name if user else None) or "Unknown"


def generate_message_title(
    message: dict[str, Any], channel: SlackChannel, user: Optional[SlackUser]
) -> str:
    text = message.get("text") or ""
    preview = text[:MESSAGE_PREVIEW_LENGTH]
    suffix = "..." if len(text) > MESSAGE_PREVIEW_LENGTH else ""
    reply_count = message.get("reply_count") or 0
    if reply_count > 0:
        return f"Thread: {preview}{suffix} ({reply_count} replies)"
    return f"{_user_name(user)} in #{channel.name or 'unknown'}: {preview}{suffix}"


def generate_thread_title(
    parent: dict[str, Any],
    channel: SlackChannel,
    user: Optional[SlackUser],
    reply_count: int,
) -> str:
    text = parent.get("text") or ""
    preview = text[:THREAD_PREVIEW_LENGTH] or "Discussion"
    suffix = "..." if len(text) > THREAD_PREVIEW_LENGTH else ""
    reply_suffix = f" ({reply_count} replies)" if reply_count else ""
    return f"{_user_name(user)} in #{channel.name or 'unknown'}: {preview}{suffix}{reply_suffix}"


def _mention_participants(
    texts: list[Optional[str]],
    users: dict[str, SlackUser],
    exclude: set[str],
) -> list[RawParticipant]:
    participants = []
    seen = set(exclude)
    for text in texts:
        for user_id in mentioned_user_ids(text):
            if user_id in seen:
                continue
            seen.add(user_id)
            user = users.get(user_id)
            participants.append(
                RawParticipant(
                    external_id=user_id,
                    role=ParticipantRole.MENTIONED,
                    name=user.name if user else None,
                    email=user.email if user else None,
                )
            )
    return participants


def message_to_raw(
    message: dict[str, Any],
    channel: SlackChannel,
    users: dict[str, SlackUser],
    permalink: Optional[str] = None,
    files: Optional[list[FileAttachment]] = None,
    channels: Optional[dict[str, str]] = None,
) -> RawContentItem:
    """Convert a single Slack message.

    Messages with replies are typed ``thread`` but keep only their own
    text; full thread transcripts come from ``aggregate_thread``.

    Args:
        message: Message payload from conversations.history
        channel: Channel the message belongs to
        users: Known workspace users by id
        permalink: Message permalink, if resolved
        files: Processed attachments; metadata-only copies are used when None
        channels: Channel names by id for mention resolution
    """
    author_id = message_author(message)
    user = users.get(author_id)
    ts = message.get("ts") or "0"
    reply_count = message.get("reply_count") or 0

    if files is None and message.get("files"):
        files = file_metadata_only(message["files"])

    edited = message.get("edited") or {}
    metadata = SlackMessageMetadata(
        channel_id=channel.id,
        channel_name=channel.name or "unknown",
        channel_type=channel.channel_type,
        message_ts=ts,
        thread_ts=message.get("thread_ts"),
        reactions=aggregate_reactions([message]),
        files=files or [],
        reply_count=reply_count,
        reply_users_count=message.get("reply_users_count") or 0,
        latest_reply=message.get("latest_reply"),
        permalink=permalink,
        edited={"user": edited["user"], "ts": edited["ts"]}
        if edited.get("user") and edited.get("ts")
        else None,
        blocks=message.get("blocks"),
    )

    participants: list[RawParticipant] = []
    if user is not None:
        participants.append(
            RawParticipant(
                external_id=user.id,
                role=ParticipantRole.AUTHOR,
                name=user.name,
                email=user.email,
            )
        )
    participants.extend(
        _mention_participants([message.get("text")], users, exclude={author_id})
    )

    return RawContentItem(
        external_id=ts,
        type=ContentItemType.THREAD if reply_count > 0 else ContentItemType.MESSAGE,
        title=generate_message_title(message, channel, user),
        content=_resolve_text(message.get("text"), users, channels),
        author_external=author_id,
        author_name=(user.name if user else None) or author_id,
        created_at_source=parse_slack_ts(ts),
        updated_at_source=parse_slack_ts(edited["ts"]) if edited.get("ts") else None,
        metadata=metadata,
        tags=[channel.name] if channel.name else [],
        participants=participants,
    )


def aggregate_thread(
    parent: dict[str, Any],
    replies: list[dict[str, Any]],
    channel: SlackChannel,
    users: dict[str, SlackUser],
    permalink: Optional[str] = None,
    files: Optional[list[FileAttachment]] = None,
    channels: Optional[dict[str, str]] = None,
) -> RawContentItem:
    """Fold a parent message and its replies into one ``thread`` item.

    Replies are ordered by timestamp, each rendered with a byline, and
    joined into a single transcript keyed by the parent's ``ts``.
    Reactions are summed per emoji across every message and attachments
    from every message are collected.

    Args:
        parent: Thread parent message
        replies: Reply messages, parent excluded, in any order
        channel: Channel the thread belongs to
        users: Known workspace users by id
        permalink: Permalink of the parent message
        files: Processed attachments of the whole thread
        channels: Channel names by id for mention resolution
    """
    parent_author = message_author(parent)
    ordered_replies = sorted(replies, key=lambda m: float(m.get("ts") or "0"))
    messages = [parent, *ordered_replies]

    parts = []
    for message in messages:
        name = _user_name(users.get(message_author(message)))
        time = parse_slack_ts(message.get("ts")).isoformat()
        text = _resolve_text(message.get("text"), users, channels) or ""
        parts.append(f"**{name}** ({time}):\n{text}")
    content = "\n\n---\n\n".join(parts)

    participant_ids = list(dict.fromkeys(message_author(m) for m in messages))
    participants = []
    for participant_id in participant_ids:
        user = users.get(participant_id)
        participants.append(
            RawParticipant(
                external_id=participant_id,
                role=ParticipantRole.AUTHOR
                if participant_id == parent_author
                else ParticipantRole.PARTICIPANT,
                name=_user_name(user),
                email=user.email if user else None,
            )
        )
    participants.extend(
        _mention_participants(
            [m.get("text") for m in messages], users, exclude=set(participant_ids)
        )
    )

    if files is None:
        all_files = [f for m in messages for f in (m.get("files") or [])]
        files = file_metadata_only(all_files)

    parent_ts = parent.get("ts") or "0"
    user = users.get(parent_author)
    metadata = SlackMessageMetadata(
        channel_id=channel.id,
        channel_name=channel.name or "unknown",
        channel_type=channel.channel_type,
        message_ts=parent_ts,
        thread_ts=parent_ts,
        reactions=aggregate_reactions(messages),
        files=files,
        reply_count=len(replies),
        reply_users_count=len({message_author(m) for m in ordered_replies}),
        latest_reply=messages[-1].get("ts"),
        permalink=permalink,
    )

    return RawContentItem(
        external_id=parent_ts,
        type=ContentItemType.THREAD,
        title=generate_thread_title(parent, channel, user, len(replies)),
        content=content,
        author_external=parent_author,
        author_name=(user.name if user else None) or parent_author,
        created_at_source=parse_slack_ts(parent_ts),
        updated_at_source=parse_slack_ts(messages[-1].get("ts")),
        metadata=metadata,
        tags=[channel.name] if channel.name else [],
        participants=participants,
    )
