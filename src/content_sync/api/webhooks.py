"""Webhook ingress for push-capable sources.

Slack and GitHub deliveries are verified against their signing secrets
before the payload reaches the source's adapter. Ingestion runs as a
background task so the provider gets its acknowledgement quickly.
"""

import hashlib
import hmac
import json
import time
from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request

from content_sync.core.errors import (
    AppError,
    ContentSourceNotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from content_sync.models import ContentSource, ContentSourceType
from content_sync.processor import SyncOrchestrator
from content_sync.services import Services

logger = structlog.get_logger(__name__)

# Slack rejects requests older than five minutes to prevent replays.
SLACK_REPLAY_WINDOW_SECONDS = 60 * 5

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def verify_slack_signature(
    signing_secret: Optional[str],
    timestamp: Optional[str],
    body: bytes,
    signature: Optional[str],
    now: Optional[float] = None,
) -> None:
    """
    Verify a Slack request signature.

    The signature is ``v0=`` followed by the hex HMAC-SHA256 of
    ``v0:{timestamp}:{body}`` keyed with the app's signing secret.

    Raises:
        WebhookSignatureError: If the secret is unset, headers are missing,
            the timestamp is outside the replay window or the digest differs
    """
    if not signing_secret:
        raise WebhookSignatureError("slack", "signing secret not configured")
    if not timestamp or not signature:
        raise WebhookSignatureError("slack", "missing signature headers")
    try:
        sent_at = int(timestamp)
    except ValueError as e:
        raise WebhookSignatureError("slack", "invalid timestamp") from e

    current = time.time() if now is None else now
    if abs(current - sent_at) > SLACK_REPLAY_WINDOW_SECONDS:
        raise WebhookSignatureError("slack", "timestamp outside replay window")

    base = b"v0:" + timestamp.encode() + b":" + body
    expected = "v0=" + hmac.new(signing_secret.encode(), base, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise WebhookSignatureError("slack", "digest mismatch")


def verify_github_webhook_signature(
    secret: Optional[str],
    body: bytes,
    signature: Optional[str],
) -> None:
    """
    Verify an ``X-Hub-Signature-256`` header (``sha256=`` + hex HMAC of the body).

    Raises:
        WebhookSignatureError: If the secret is unset, the header is
            missing or the digest differs
    """
    if not secret:
        raise WebhookSignatureError("github", "webhook secret not configured")
    if not signature or not signature.startswith("sha256="):
        raise WebhookSignatureError("github", "missing signature header")
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise WebhookSignatureError("github", "digest mismatch")


def get_services(request: Request) -> Services:
    """Provide wired services from application state."""
    return request.app.state.services


def _parse_body(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("body", "Request body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise ValidationError("body", "Request body must be a JSON object")
    return payload


async def _load_source(
    services: Services, source_id: UUID, source_type: ContentSourceType
) -> ContentSource:
    source = await services.repository.get_source(source_id)
    if source.type != source_type:
        # Do not reveal sources of another type behind this endpoint
        raise ContentSourceNotFoundError(str(source_id))
    return source


async def ingest_event_in_background(
    orchestrator: SyncOrchestrator, source: ContentSource, event: dict[str, Any]
) -> None:
    """Run event ingestion, logging failures instead of raising."""
    try:
        await orchestrator.ingest_event(source, event)
    except AppError as e:
        logger.error(
            "webhook_ingest_failed",
            source_id=str(source.id),
            source_type=source.type.value,
            error=e.message,
            error_code=e.code.value,
        )


@router.post("/slack/{source_id}")
async def slack_webhook(
    source_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Receive a Slack Events API delivery."""
    body = await request.body()
    verify_slack_signature(
        services.settings.slack_signing_secret,
        request.headers.get("X-Slack-Request-Timestamp"),
        body,
        request.headers.get("X-Slack-Signature"),
    )
    payload = _parse_body(body)

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge", "")}

    source = await _load_source(services, source_id, ContentSourceType.SLACK)
    event = payload.get("event")
    if payload.get("type") != "event_callback" or not isinstance(event, dict):
        return {"ok": True, "accepted": False}

    logger.info(
        "slack_webhook_received",
        source_id=str(source.id),
        event_type=event.get("type"),
        retry_num=request.headers.get("X-Slack-Retry-Num"),
    )
    background_tasks.add_task(
        ingest_event_in_background, services.orchestrator, source, event
    )
    return {"ok": True, "accepted": True}


@router.post("/github/{source_id}")
async def github_webhook(
    source_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Receive a GitHub webhook delivery."""
    body = await request.body()
    verify_github_webhook_signature(
        services.settings.github_webhook_secret,
        body,
        request.headers.get("X-Hub-Signature-256"),
    )
    event_name = request.headers.get("X-GitHub-Event", "")
    if event_name == "ping":
        return {"ok": True, "accepted": False}

    payload = _parse_body(body)
    source = await _load_source(services, source_id, ContentSourceType.GITHUB)
    logger.info(
        "github_webhook_received",
        source_id=str(source.id),
        github_event=event_name,
        action=payload.get("action"),
        delivery=request.headers.get("X-GitHub-Delivery"),
    )
    background_tasks.add_task(
        ingest_event_in_background,
        services.orchestrator,
        source,
        {"event": event_name, "payload": payload},
    )
    return {"ok": True, "accepted": True}
