"""Base adapter contract for external content sources.

Every adapter converts source-native records into ``RawContentItem``
objects behind the same capability set, so the sync orchestrator never
sees a source's own pagination or cursor dialect.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Iterable, Optional, TypeVar

import httpx
import structlog

from content_sync.core.errors import ContentSourceAuthError, ContentSourceSyncError
from content_sync.credentials import CredentialCipher
from content_sync.models import (
    ContentSource,
    ContentSourceType,
    FetchOptions,
    FetchResult,
    RawContentItem,
)

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_FANOUT_CONCURRENCY = 10

T = TypeVar("T")


class ContentSourceAdapter(ABC):
    """Abstract base class for source adapters.

    Adapters are stateless with respect to a particular source: one
    instance serves every source of its type and receives the
    ``ContentSource`` on each call.

    Example:
        class MyAdapter(ContentSourceAdapter):
            @property
            def source_type(self) -> ContentSourceType:
                return ContentSourceType.LINEAR

            async def _check_credentials(self, source) -> None:
                ...

            async def fetch_content(self, source, options) -> FetchResult:
                ...

            async def fetch_item(self, source, external_id):
                ...
    """

    def __init__(
        self,
        credential_cipher: Optional[CredentialCipher] = None,
        fanout_concurrency: int = DEFAULT_FANOUT_CONCURRENCY,
    ) -> None:
        """Initialize the adapter.

        Args:
            credential_cipher: Opens encrypted credential envelopes
            fanout_concurrency: Cap on in-flight requests across all
                sub-fetches of this adapter
        """
        self._cipher = credential_cipher
        self._fanout_concurrency = fanout_concurrency
        self._request_slots = asyncio.Semaphore(fanout_concurrency)

    @property
    @abstractmethod
    def source_type(self) -> ContentSourceType:
        """Return the type of source this adapter handles."""
        ...

    def _logger_for(self, source: ContentSource) -> Any:
        return logger.bind(
            source_type=self.source_type.value,
            source_id=str(source.id),
        )

    def _credentials(self, source: ContentSource) -> dict[str, Any]:
        """Decrypted credentials of a source."""
        if self._cipher is None:
            return dict(source.credentials or {})
        return self._cipher.decrypt(source.credentials)

    @abstractmethod
    async def _check_credentials(self, source: ContentSource) -> None:
        """Perform a lightweight authenticated call; raise on failure."""
        ...

    async def validate_credentials(self, source: ContentSource) -> bool:
        """Check that the source's credentials work.

        Returns:
            True if credentials are valid, False on any failure
        """
        try:
            await self._check_credentials(source)
            return True
        except Exception as e:
            self._logger_for(source).warning(
                "connection_validation_failed",
                error=str(e),
                error_type=e.__class__.__name__,
            )
            return False

    @abstractmethod
    async def fetch_content(
        self, source: ContentSource, options: FetchOptions
    ) -> FetchResult:
        """Fetch one page of content.

        Calling this again with the same cursor is safe; the orchestrator
        deduplicates by external id.

        Args:
            source: Source to pull from
            options: Cursor, time window, page size and filters

        Returns:
            FetchResult with items, has_more and next_cursor
        """
        ...

    @abstractmethod
    async def fetch_item(
        self, source: ContentSource, external_id: str
    ) -> Optional[RawContentItem]:
        """Fetch a single record by its source-native id."""
        ...

    async def refresh_auth(self, source: ContentSource) -> dict[str, Any]:
        """Renew credentials.

        Static token schemes return the current credentials unchanged.
        """
        return self._credentials(source)

    async def handle_event(
        self, source: ContentSource, event: dict[str, Any]
    ) -> list[RawContentItem]:
        """Translate a verified webhook event into items to ingest."""
        return []

    async def close(self) -> None:
        """Release network resources."""
        return None

    async def _gather(self, awaitables: Iterable[Awaitable[T]]) -> list[T]:
        """Run sub-fetches concurrently, keeping order.

        Nested fan-out stays bounded because every HTTP call takes a slot
        from the adapter-wide ``_request_slots`` semaphore.
        """
        return list(await asyncio.gather(*awaitables))


class HttpSourceAdapter(ContentSourceAdapter):
    """Adapter talking to a JSON HTTP API through a shared httpx client.

    Maps transport failures onto the error taxonomy: 401/403 become
    ``ContentSourceAuthError``, timeouts, connection errors, 429 and 5xx
    become retryable ``ContentSourceSyncError``, other 4xx become
    non-retryable ``ContentSourceSyncError``. A 200 response whose body is
    not JSON is a retryable ``ContentSourceSyncError``.
    """

    base_url: str = ""

    def __init__(
        self,
        credential_cipher: Optional[CredentialCipher] = None,
        fanout_concurrency: int = DEFAULT_FANOUT_CONCURRENCY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(credential_cipher, fanout_concurrency)
        self._timeout_seconds = timeout_seconds
        self._client = client

    def _default_headers(self) -> dict[str, str]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self._timeout_seconds,
            )
        return self._client

    async def _request(
        self,
        source: ContentSource,
        method: str,
        url: str,
        operation: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and translate failures into typed errors."""
        client = await self._get_client()
        source_id = str(source.id)
        try:
            async with self._request_slots:
                response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            self._logger_for(source).warning(
                "source_request_failed",
                operation=operation,
                status_code=status_code,
            )
            if status_code in (401, 403):
                raise ContentSourceAuthError(
                    source_id, operation, f"HTTP {status_code}"
                ) from e
            retryable = status_code == 429 or status_code >= 500
            raise ContentSourceSyncError(
                source_id,
                operation,
                f"HTTP {status_code}",
                retryable=retryable,
                status_code=status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise ContentSourceSyncError(source_id, operation, "request timed out") from e
        except httpx.RequestError as e:
            raise ContentSourceSyncError(source_id, operation, str(e)) from e

    def _json(self, source: ContentSource, response: httpx.Response, operation: str) -> Any:
        """Decode a JSON body; a malformed body is a retryable sync error."""
        try:
            return response.json()
        except ValueError as e:
            self._logger_for(source).warning(
                "source_response_malformed",
                operation=operation,
                content_type=response.headers.get("content-type"),
            )
            raise ContentSourceSyncError(
                str(source.id), operation, f"Malformed response body: {e}"
            ) from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
