"""Rendering of Notion blocks, rich text and properties as markdown-ish text."""

from datetime import datetime
from typing import Any, Optional

from content_sync.models import (
    ContentItemType,
    NotionDatabaseEntryMetadata,
    NotionPageMetadata,
    RawContentItem,
    RawReference,
    RelationshipType,
)

NESTED_INDENT = "  "


def rich_text_to_plain(rich_text: Optional[list[dict[str, Any]]]) -> str:
    """Concatenate rich text runs, keeping bold/italic/code/strike and links."""
    parts = []
    for run in rich_text or []:
        text = run.get("plain_text") or ""
        annotations = run.get("annotations") or {}
        if annotations.get("bold"):
            text = f"**{text}**"
        if annotations.get("italic"):
            text = f"_{text}_"
        if annotations.get("code"):
            text = f"`{text}`"
        if annotations.get("strikethrough"):
            text = f"~~{text}~~"
        if run.get("href"):
            text = f"[{text}]({run['href']})"
        parts.append(text)
    return "".join(parts)


def _file_url(payload: dict[str, Any]) -> str:
    if payload.get("type") == "external":
        return (payload.get("external") or {}).get("url") or ""
    return (payload.get("file") or {}).get("url") or ""


def convert_block(block: dict[str, Any]) -> str:
    """Render a single block, ignoring its children."""
    block_type = block.get("type")
    data = block.get(block_type) or {}
    text = rich_text_to_plain(data.get("rich_text"))

    if block_type in ("paragraph", "toggle"):
        return text
    if block_type == "heading_1":
        return f"# {text}"
    if block_type == "heading_2":
        return f"## {text}"
    if block_type == "heading_3":
        return f"### {text}"
    if block_type == "bulleted_list_item":
        return f"• {text}"
    if block_type == "numbered_list_item":
        return f"1. {text}"
    if block_type == "to_do":
        return f"{'[x]' if data.get('checked') else '[ ]'} {text}"
    if block_type == "code":
        return f"```{data.get('language') or ''}\n{text}\n```"
    if block_type == "quote":
        return f"> {text}"
    if block_type == "callout":
        icon = data.get("icon") or {}
        marker = icon.get("emoji") if icon.get("type") == "emoji" else "i"
        return f"[{marker}] {text}"
    if block_type == "divider":
        return "---"
    if block_type == "child_page":
        return f"[{data.get('title') or 'Page'}]"
    if block_type == "child_database":
        return f"[{data.get('title') or 'Database'}]"
    if block_type == "image":
        caption = rich_text_to_plain(data.get("caption")) or "Image"
        return f"[Image: {caption}]"
    if block_type == "bookmark":
        return f"[{data.get('url') or 'Bookmark'}]"
    if block_type == "link_preview":
        return f"[{data.get('url') or 'Link'}]"
    if block_type == "equation":
        return f"$${data.get('expression') or ''}$$"
    if block_type == "table_of_contents":
        return "[Table of Contents]"
    if block_type == "breadcrumb":
        return "[Breadcrumb]"
    if block_type == "file":
        return f"[{data.get('name') or 'File'}]({_file_url(data)})"
    if block_type == "pdf":
        caption = rich_text_to_plain(data.get("caption")) or "PDF"
        return f"[{caption}]({_file_url(data)})"
    if block_type == "video":
        return f"[video: {_file_url(data)}]"
    if block_type == "audio":
        return f"[audio: {_file_url(data)}]"
    if block_type == "embed":
        return f"[embed: {data.get('url') or ''}]"
    # column_list, column, synced_block, template and unknown types only
    # contribute their children
    return ""


def blocks_to_text(blocks: list[dict[str, Any]], depth: int = 0) -> str:
    """Render blocks and their nested ``children``.

    Top-level blocks are separated by blank lines; nested blocks are
    indented under their parent.
    """
    rendered = []
    indent = NESTED_INDENT * depth
    for block in blocks:
        text = convert_block(block)
        lines = [f"{indent}{line}" for line in text.split("\n")] if text else []
        children = block.get("children") or []
        if children:
            child_depth = depth + 1 if text else depth
            child_text = blocks_to_text(children, child_depth)
            if child_text:
                lines.append(child_text)
        if lines:
            rendered.append("\n".join(lines))
    separator = "\n\n" if depth == 0 else "\n"
    return separator.join(rendered)


def comments_to_text(comments: list[dict[str, Any]]) -> str:
    return "\n\n".join(f"> {rich_text_to_plain(c.get('rich_text'))}" for c in comments)


def extract_page_title(properties: dict[str, Any]) -> str:
    for prop in (properties or {}).values():
        if prop.get("type") == "title":
            return rich_text_to_plain(prop.get("title"))
    return "Untitled"


def extract_property_value(prop: dict[str, Any]) -> Any:
    """Flatten a database property to a plain JSON value."""
    prop_type = prop.get("type")
    value = prop.get(prop_type)
    if prop_type in ("title", "rich_text"):
        return rich_text_to_plain(value)
    if prop_type in ("number", "checkbox", "url", "email", "phone_number"):
        return value
    if prop_type in ("select", "status"):
        return (value or {}).get("name")
    if prop_type == "multi_select":
        return [option.get("name") for option in value or []]
    if prop_type == "date":
        return (value or {}).get("start")
    if prop_type == "people":
        return [person.get("name") or person.get("id") for person in value or []]
    if prop_type == "files":
        return [f.get("name") for f in value or []]
    if prop_type == "relation":
        return [r.get("id") for r in value or []]
    if prop_type == "formula":
        formula = value or {}
        if formula.get("type") == "date":
            return (formula.get("date") or {}).get("start")
        return formula.get(formula.get("type"))
    if prop_type == "rollup":
        rollup = value or {}
        if rollup.get("type") == "array":
            return [item.get("type") for item in rollup.get("array") or []]
        if rollup.get("type") == "number":
            return rollup.get("number")
        if rollup.get("type") == "date":
            return (rollup.get("date") or {}).get("start")
        return None
    if prop_type in ("created_time", "last_edited_time"):
        return value
    if prop_type in ("created_by", "last_edited_by"):
        return (value or {}).get("id")
    return None


def parent_info(parent: dict[str, Any]) -> tuple[str, Optional[str]]:
    """Normalize a Notion ``parent`` object to ``(parent_type, parent_id)``."""
    parent_type = (parent or {}).get("type")
    if parent_type in ("database_id", "data_source_id"):
        return "database", parent.get(parent_type)
    if parent_type in ("page_id", "block_id"):
        return "page", parent.get(parent_type)
    return "workspace", None


def _icon(page: dict[str, Any]) -> Optional[str]:
    icon = page.get("icon") or {}
    if icon.get("type") == "emoji":
        return icon.get("emoji")
    if icon.get("type") in ("external", "file"):
        return _file_url(icon)
    return None


def parse_notion_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def page_to_raw(
    page: dict[str, Any],
    content: str,
    breadcrumb: Optional[list[str]] = None,
    depth: int = 0,
) -> RawContentItem:
    """Convert a page with its rendered content.

    Pages under another page reference their parent as ``derived_from``.
    """
    parent_type, parent_id = parent_info(page.get("parent") or {})
    is_database_entry = parent_type == "database"
    created_by = (page.get("created_by") or {}).get("id")
    metadata = NotionPageMetadata(
        page_id=page["id"],
        parent_type=parent_type,
        parent_id=parent_id,
        icon=_icon(page),
        cover=_file_url(page["cover"]) if page.get("cover") else None,
        created_time=page.get("created_time"),
        last_edited_time=page.get("last_edited_time"),
        created_by=created_by,
        last_edited_by=(page.get("last_edited_by") or {}).get("id"),
        url=page.get("url"),
        breadcrumb=breadcrumb or [],
        depth=depth,
        is_database_entry=is_database_entry,
        database_id=parent_id if is_database_entry else None,
    )
    related = []
    if parent_type == "page" and parent_id:
        related.append(
            RawReference(external_id=parent_id, relationship_type=RelationshipType.DERIVED_FROM)
        )
    return RawContentItem(
        external_id=page["id"],
        type=ContentItemType.DOCUMENT,
        title=extract_page_title(page.get("properties") or {}),
        content=content,
        author_external=created_by,
        created_at_source=parse_notion_time(page.get("created_time")),
        updated_at_source=parse_notion_time(page.get("last_edited_time")),
        metadata=metadata,
        related_external_ids=related,
    )


def database_entry_to_raw(entry: dict[str, Any], database_title: str) -> RawContentItem:
    """Convert a database row into a ``key: value`` document."""
    properties: dict[str, Any] = {}
    title = ""
    for key, prop in (entry.get("properties") or {}).items():
        value = extract_property_value(prop)
        properties[key] = value
        if prop.get("type") == "title" and isinstance(value, str):
            title = value

    lines = []
    for key, value in properties.items():
        if value is None or value == "":
            continue
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        lines.append(f"{key}: {value}")

    _, database_id = parent_info(entry.get("parent") or {})
    created_by = (entry.get("created_by") or {}).get("id")
    metadata = NotionDatabaseEntryMetadata(
        page_id=entry["id"],
        parent_type="database",
        parent_id=database_id,
        created_time=entry.get("created_time"),
        last_edited_time=entry.get("last_edited_time"),
        created_by=created_by,
        last_edited_by=(entry.get("last_edited_by") or {}).get("id"),
        url=entry.get("url"),
        is_database_entry=True,
        database_id=database_id,
        properties=properties,
    )
    return RawContentItem(
        external_id=entry["id"],
        type=ContentItemType.DOCUMENT,
        title=title or f"{database_title} entry",
        content="\n".join(lines),
        author_external=created_by,
        created_at_source=parse_notion_time(entry.get("created_time")),
        updated_at_source=parse_notion_time(entry.get("last_edited_time")),
        metadata=metadata,
    )
