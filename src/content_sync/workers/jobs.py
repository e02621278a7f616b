"""Helpers for reading stream job payloads."""

from typing import Any
from uuid import UUID

from content_sync.core.errors import ValidationError


def job_uuid(job_data: dict[str, Any], key: str) -> UUID:
    """Required UUID field of a job.

    Raises:
        ValidationError: If the field is missing or not a UUID
    """
    value = job_data.get(key)
    if not value:
        raise ValidationError(key, "Missing from job payload")
    try:
        return UUID(str(value))
    except ValueError as e:
        raise ValidationError(key, f"Not a valid UUID: {value}") from e


def job_item_ids(job_data: dict[str, Any]) -> list[UUID]:
    """The ``item_ids`` list of a job; invalid entries are dropped."""
    raw = job_data.get("item_ids") or []
    if isinstance(raw, str):
        raw = [part for part in raw.split(",") if part.strip()]
    item_ids = []
    for value in raw:
        try:
            item_ids.append(UUID(str(value).strip()))
        except ValueError:
            continue
    return item_ids
