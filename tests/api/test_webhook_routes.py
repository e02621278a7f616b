"""Tests for webhook ingress and sync control endpoints."""

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from content_sync.api.app import create_app
from content_sync.api.webhooks import (
    ingest_event_in_background,
    verify_github_webhook_signature,
    verify_slack_signature,
)
from content_sync.core.errors import (
    ContentSourceNotFoundError,
    DatabaseError,
    WebhookSignatureError,
)
from content_sync.db.redis import SYNC_JOBS_STREAM
from content_sync.models import ContentSourceType, SyncProgress, SyncRunStatus

from factories import make_source

SLACK_SECRET = "slack-signing-secret"
GITHUB_SECRET = "github-webhook-secret"


def slack_headers(body: bytes, timestamp: int = None, secret: str = SLACK_SECRET) -> dict:
    timestamp = timestamp or int(time.time())
    base = f"v0:{timestamp}:".encode() + body
    digest = hmac.new(secret.encode(), base, hashlib.sha256).hexdigest()
    return {
        "X-Slack-Request-Timestamp": str(timestamp),
        "X-Slack-Signature": f"v0={digest}",
        "Content-Type": "application/json",
    }


def github_headers(body: bytes, event: str = "pull_request") -> dict:
    digest = hmac.new(GITHUB_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return {
        "X-Hub-Signature-256": f"sha256={digest}",
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": "delivery-1",
        "Content-Type": "application/json",
    }


class TestSignatures:
    """Tests for signature verification helpers."""

    def test_valid_slack_signature(self):
        body = b'{"type":"event_callback"}'
        headers = slack_headers(body, timestamp=1_700_000_000)

        verify_slack_signature(
            SLACK_SECRET,
            headers["X-Slack-Request-Timestamp"],
            body,
            headers["X-Slack-Signature"],
            now=1_700_000_060,
        )

    def test_slack_replay_rejected(self):
        body = b"{}"
        headers = slack_headers(body, timestamp=1_700_000_000)

        with pytest.raises(WebhookSignatureError) as exc_info:
            verify_slack_signature(
                SLACK_SECRET,
                headers["X-Slack-Request-Timestamp"],
                body,
                headers["X-Slack-Signature"],
                now=1_700_000_000 + 301,
            )
        assert "replay window" in exc_info.value.message

    @pytest.mark.parametrize(
        "secret,timestamp,signature",
        [
            (None, "1700000000", "v0=abc"),
            (SLACK_SECRET, None, "v0=abc"),
            (SLACK_SECRET, "soon", "v0=abc"),
            (SLACK_SECRET, "1700000000", "v0=abc"),
        ],
    )
    def test_bad_slack_requests(self, secret, timestamp, signature):
        with pytest.raises(WebhookSignatureError) as exc_info:
            verify_slack_signature(secret, timestamp, b"{}", signature, now=1_700_000_000)
        assert exc_info.value.status == 401

    def test_github_signature(self):
        body = b'{"action":"opened"}'
        verify_github_webhook_signature(
            GITHUB_SECRET, body, github_headers(body)["X-Hub-Signature-256"]
        )

        with pytest.raises(WebhookSignatureError):
            verify_github_webhook_signature(GITHUB_SECRET, body + b" ", "sha256=" + "0" * 64)
        with pytest.raises(WebhookSignatureError):
            verify_github_webhook_signature(GITHUB_SECRET, body, "sha1=abc")
        with pytest.raises(WebhookSignatureError):
            verify_github_webhook_signature(None, body, "sha256=abc")


@pytest.fixture
def slack_source():
    return make_source(ContentSourceType.SLACK)


@pytest.fixture
def services(slack_source):
    services = MagicMock()
    services.settings.slack_signing_secret = SLACK_SECRET
    services.settings.github_webhook_secret = GITHUB_SECRET
    services.repository.get_source = AsyncMock(return_value=slack_source)
    services.orchestrator.ingest_event = AsyncMock(return_value=[])
    services.orchestrator.get_sync_progress = AsyncMock(return_value=None)
    services.redis.publish_job = AsyncMock(return_value="1700000000000-0")
    return services


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as client:
        yield client


class TestSlackWebhook:
    """Tests for POST /api/v1/webhooks/slack/{source_id}."""

    def test_url_verification(self, client, slack_source):
        body = json.dumps({"type": "url_verification", "challenge": "abc123"}).encode()

        response = client.post(
            f"/api/v1/webhooks/slack/{slack_source.id}", content=body, headers=slack_headers(body)
        )

        assert response.status_code == 200
        assert response.json() == {"challenge": "abc123"}

    def test_event_ingested(self, client, services, slack_source):
        event = {"type": "message", "channel": "C1", "ts": "1700000000.000100"}
        body = json.dumps({"type": "event_callback", "event": event}).encode()

        response = client.post(
            f"/api/v1/webhooks/slack/{slack_source.id}", content=body, headers=slack_headers(body)
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "accepted": True}
        services.orchestrator.ingest_event.assert_awaited_once_with(slack_source, event)

    def test_bad_signature(self, client, services, slack_source):
        body = b'{"type":"event_callback","event":{}}'

        response = client.post(
            f"/api/v1/webhooks/slack/{slack_source.id}",
            content=body,
            headers=slack_headers(body, secret="wrong"),
        )

        assert response.status_code == 401
        assert response.json()["title"] == "Invalid Signature"
        services.orchestrator.ingest_event.assert_not_called()

    def test_invalid_json(self, client, slack_source):
        body = b"not json"

        response = client.post(
            f"/api/v1/webhooks/slack/{slack_source.id}", content=body, headers=slack_headers(body)
        )

        assert response.status_code == 400

    def test_other_payload_types_ignored(self, client, services, slack_source):
        body = json.dumps({"type": "app_rate_limited"}).encode()

        response = client.post(
            f"/api/v1/webhooks/slack/{slack_source.id}", content=body, headers=slack_headers(body)
        )

        assert response.json() == {"ok": True, "accepted": False}
        services.orchestrator.ingest_event.assert_not_called()

    def test_source_of_other_type_hidden(self, client, services):
        """A GitHub source is not reachable through the Slack endpoint."""
        services.repository.get_source = AsyncMock(
            return_value=make_source(ContentSourceType.GITHUB)
        )
        body = json.dumps({"type": "event_callback", "event": {"type": "message"}}).encode()

        response = client.post(
            f"/api/v1/webhooks/slack/{uuid4()}", content=body, headers=slack_headers(body)
        )

        assert response.status_code == 404


class TestGitHubWebhook:
    """Tests for POST /api/v1/webhooks/github/{source_id}."""

    @pytest.fixture
    def github_source(self, services):
        source = make_source(ContentSourceType.GITHUB)
        services.repository.get_source = AsyncMock(return_value=source)
        return source

    def test_event_ingested(self, client, services, github_source):
        payload = {"action": "opened", "pull_request": {"number": 7}}
        body = json.dumps(payload).encode()

        response = client.post(
            f"/api/v1/webhooks/github/{github_source.id}", content=body, headers=github_headers(body)
        )

        assert response.json() == {"ok": True, "accepted": True}
        services.orchestrator.ingest_event.assert_awaited_once_with(
            github_source, {"event": "pull_request", "payload": payload}
        )

    def test_ping(self, client, services, github_source):
        body = b'{"zen":"Keep it logically awesome."}'

        response = client.post(
            f"/api/v1/webhooks/github/{github_source.id}",
            content=body,
            headers=github_headers(body, event="ping"),
        )

        assert response.json() == {"ok": True, "accepted": False}
        services.repository.get_source.assert_not_called()

    def test_missing_source(self, client, services):
        services.repository.get_source = AsyncMock(
            side_effect=ContentSourceNotFoundError("missing")
        )
        body = b'{"action":"opened"}'

        response = client.post(
            f"/api/v1/webhooks/github/{uuid4()}", content=body, headers=github_headers(body)
        )

        assert response.status_code == 404


class TestBackgroundIngestion:
    """Tests for the background ingestion task."""

    @pytest.mark.asyncio
    async def test_failures_are_logged(self, slack_source):
        orchestrator = MagicMock()
        orchestrator.ingest_event = AsyncMock(side_effect=DatabaseError("upsert_item", "down"))

        await ingest_event_in_background(orchestrator, slack_source, {"type": "message"})

        orchestrator.ingest_event.assert_awaited_once()


class TestSyncEndpoints:
    """Tests for /api/v1/sources/{source_id}/sync."""

    def test_trigger_sync(self, client, services, slack_source):
        response = client.post(f"/api/v1/sources/{slack_source.id}/sync?full=true")

        assert response.status_code == 202
        assert response.json() == {
            "source_id": str(slack_source.id),
            "job_id": "1700000000000-0",
            "full": True,
        }
        stream, job = services.redis.publish_job.call_args.args
        assert stream == SYNC_JOBS_STREAM
        assert job == {"source_id": slack_source.id, "reason": "manual", "full": True}

    def test_progress(self, client, services, slack_source):
        progress = SyncProgress(
            source_id=str(slack_source.id), status=SyncRunStatus.COMPLETED, items_processed=3
        )
        services.orchestrator.get_sync_progress = AsyncMock(return_value=progress)

        response = client.get(f"/api/v1/sources/{slack_source.id}/sync")

        data = response.json()
        assert data["sync_status"] == "idle"
        assert data["progress"]["status"] == "completed"
        assert data["progress"]["items_processed"] == 3

    def test_no_progress(self, client, slack_source):
        response = client.get(f"/api/v1/sources/{slack_source.id}/sync")
        assert response.json()["progress"] is None
