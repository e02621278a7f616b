"""AI enrichment of stored content items: search text, summaries and embeddings."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from uuid import UUID

import openai
import structlog
from openai import AsyncOpenAI
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from content_sync.core.errors import AppError, ContentProcessingError
from content_sync.db.repository import ContentRepository
from content_sync.models import (
    EMBEDDING_DIMENSION,
    BatchProcessResult,
    ContentItem,
    ProcessingStatus,
)

logger = structlog.get_logger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_SUMMARY_MODEL = "gpt-4o-mini"
DEFAULT_BATCH_CONCURRENCY = 5

MAX_EMBEDDING_INPUT_CHARS = 8000
MAX_SEARCH_TEXT_CHARS = 10000
MAX_SUMMARY_INPUT_CHARS = 12000
# Shorter content is its own summary.
MIN_SUMMARY_CONTENT_CHARS = 100
EMBEDDING_FALLBACK_TEXT = "Untitled content"

SENTIMENTS = {"positive", "neutral", "negative", "mixed"}

# Transient OpenAI failures worth retrying
RETRYABLE_OPENAI_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
)

SUMMARY_PROMPT = """Summarize the following content from a team knowledge base.

Output your response as a valid JSON object with this exact structure:
{{
  "summary": "2-4 sentence summary",
  "key_points": ["short key point", "..."],
  "sentiment": "positive|neutral|negative|mixed"
}}

Guidelines:
- Keep the summary factual; do not add information that is not in the content
- Extract at most 5 key points, each under 20 words
- Sentiment describes the overall tone of the discussion

Content:
{content}

Respond only with the JSON object, no additional text."""


def _log_retry(event: str) -> Any:
    def before_sleep(retry_state: Any) -> None:
        logger.warning(
            event,
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )

    return before_sleep


def build_search_text(item: ContentItem) -> str:
    """Title, content, author and tags joined for full-text indexing."""
    parts = [item.title, item.content, item.author_name, *item.tags]
    return " ".join(p for p in parts if p)[:MAX_SEARCH_TEXT_CHARS]


@dataclass
class ContentSummary:
    """Structured summary returned by the model."""

    summary: str
    key_points: list[str] = field(default_factory=list)
    sentiment: Optional[str] = None


def parse_summary_response(response: str) -> ContentSummary:
    """Parse the model's JSON reply; a non-JSON reply is used as plain summary text."""
    try:
        data = json.loads(response)
    except json.JSONDecodeError:
        return ContentSummary(summary=response.strip())
    if not isinstance(data, dict):
        return ContentSummary(summary=str(data))

    sentiment = str(data.get("sentiment") or "").lower() or None
    key_points = [str(p).strip() for p in data.get("key_points") or [] if str(p).strip()]
    return ContentSummary(
        summary=str(data.get("summary") or "").strip(),
        key_points=key_points[:5],
        sentiment=sentiment if sentiment in SENTIMENTS else None,
    )


class EmbeddingGenerator:
    """OpenAI embeddings for content items (1536 dimensions)."""

    def __init__(self, client: AsyncOpenAI, model: str = DEFAULT_EMBEDDING_MODEL) -> None:
        self.client = client
        self.model = model
        logger.info("embedding_generator_initialized", model=model)

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential_jitter(initial=1, max=60),
        retry=retry_if_exception_type(RETRYABLE_OPENAI_ERRORS),
        reraise=True,
        before_sleep=_log_retry("embedding_retry"),
    )
    async def _embed(self, text: str) -> list[float]:
        response = await self.client.embeddings.create(model=self.model, input=[text])
        return response.data[0].embedding

    async def generate_embedding(self, text: str) -> list[float]:
        """
        Embed a single text, truncated to the model's input budget.

        Returns:
            Embedding vector; a zero vector for blank text

        Raises:
            openai.OpenAIError: If the request fails after retries
        """
        if not text or not text.strip():
            return [0.0] * EMBEDDING_DIMENSION
        if len(text) > MAX_EMBEDDING_INPUT_CHARS:
            logger.debug(
                "text_truncated",
                original_length=len(text),
                truncated_to=MAX_EMBEDDING_INPUT_CHARS,
            )
            text = text[:MAX_EMBEDDING_INPUT_CHARS]
        return await self._embed(text)


class SummaryGenerator:
    """Chat-completion summaries with key points and sentiment."""

    def __init__(self, client: AsyncOpenAI, model: str = DEFAULT_SUMMARY_MODEL) -> None:
        self.client = client
        self.model = model
        logger.info("summary_generator_initialized", model=model)

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential_jitter(initial=1, max=60),
        retry=retry_if_exception_type(RETRYABLE_OPENAI_ERRORS),
        reraise=True,
        before_sleep=_log_retry("summary_retry"),
    )
    async def _call_llm(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": "You are a concise summarization assistant that outputs only valid JSON.",
                },
                {"role": "user", "content": prompt},
            ],
            temperature=0.2,
            max_tokens=800,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""

    async def summarize(self, content: str) -> ContentSummary:
        """
        Summarize content.

        Raises:
            openai.OpenAIError: If the request fails after retries
        """
        prompt = SUMMARY_PROMPT.format(content=content[:MAX_SUMMARY_INPUT_CHARS])
        return parse_summary_response(await self._call_llm(prompt))


class ContentEnricher:
    """
    Enriches stored items after sync.

    Summaries and embeddings are optional: a model failure is logged and
    the item still completes with its search text. Only store failures
    mark an item as failed.
    """

    def __init__(
        self,
        repository: ContentRepository,
        embeddings: Optional[EmbeddingGenerator] = None,
        summarizer: Optional[SummaryGenerator] = None,
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    ) -> None:
        self._repository = repository
        self._embeddings = embeddings
        self._summarizer = summarizer
        self._concurrency = concurrency

    async def _summarize(self, item: ContentItem) -> dict[str, Any]:
        if self._summarizer is None or not item.content:
            return {}
        if len(item.content) <= MIN_SUMMARY_CONTENT_CHARS:
            return {}
        try:
            result = await self._summarizer.summarize(item.content)
        except openai.OpenAIError as e:
            logger.warning("summary_failed", item_id=str(item.id), error=str(e))
            return {}
        updates: dict[str, Any] = {"key_points": result.key_points}
        if result.summary:
            updates["summary"] = result.summary
        if result.sentiment:
            updates["sentiment"] = result.sentiment
        return updates

    async def _embed(self, item: ContentItem, search_text: str) -> Optional[list[float]]:
        if self._embeddings is None:
            return None
        try:
            return await self._embeddings.generate_embedding(
                search_text or item.title or EMBEDDING_FALLBACK_TEXT
            )
        except openai.OpenAIError as e:
            logger.warning("embedding_failed", item_id=str(item.id), error=str(e))
            return None

    async def process_item(self, item_id: UUID) -> ContentItem:
        """
        Enrich one item and mark it completed.

        Args:
            item_id: Item to enrich

        Returns:
            The updated item

        Raises:
            ContentProcessingError: If the item is missing or cannot be updated
        """
        try:
            item = await self._repository.get_item_option(item_id)
        except AppError as e:
            raise ContentProcessingError(str(item_id), "extracting", e.message) from e
        if item is None:
            raise ContentProcessingError(
                str(item_id), "extracting", f"Content item not found: {item_id}"
            )

        try:
            await self._repository.update_item(
                item_id,
                {"processing_status": ProcessingStatus.PROCESSING, "processing_error": None},
            )
            search_text = build_search_text(item)
            updates = await self._summarize(item)
            embedding = await self._embed(item, search_text)
            if embedding is not None:
                updates["embedding"] = embedding
            updates.update(
                {
                    "search_text": search_text,
                    "processing_status": ProcessingStatus.COMPLETED,
                    "processing_error": None,
                    "processed_at": datetime.now(timezone.utc),
                }
            )
            updated = await self._repository.update_item(item_id, updates)
        except AppError as e:
            await self._mark_failed(item_id, e.message)
            raise ContentProcessingError(str(item_id), "processing", e.message) from e

        logger.info(
            "content_item_enriched",
            item_id=str(item_id),
            has_summary=bool(updated.summary),
            has_embedding=updated.embedding is not None,
        )
        return updated

    async def _mark_failed(self, item_id: UUID, message: str) -> None:
        try:
            await self._repository.update_item(
                item_id,
                {"processing_status": ProcessingStatus.FAILED, "processing_error": message},
            )
        except AppError as e:
            logger.warning("processing_status_update_failed", item_id=str(item_id), error=e.message)

    async def process_items_batch(
        self,
        item_ids: Sequence[UUID],
        concurrency: Optional[int] = None,
    ) -> BatchProcessResult:
        """Enrich several items concurrently; one failure never stops the others."""
        semaphore = asyncio.Semaphore(concurrency or self._concurrency)
        result = BatchProcessResult()

        async def run(item_id: UUID) -> None:
            async with semaphore:
                try:
                    await self.process_item(item_id)
                except ContentProcessingError as e:
                    result.failed += 1
                    result.errors.append({"item_id": str(item_id), "error": e.message})
                else:
                    result.processed += 1

        await asyncio.gather(*(run(i) for i in item_ids))
        logger.info(
            "content_batch_enriched",
            processed=result.processed,
            failed=result.failed,
        )
        return result
