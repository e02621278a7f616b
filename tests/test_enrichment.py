"""Tests for content enrichment."""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import openai
import pytest

from content_sync.core.errors import ContentProcessingError, DatabaseError
from content_sync.enrichment import (
    MAX_EMBEDDING_INPUT_CHARS,
    ContentEnricher,
    ContentSummary,
    EmbeddingGenerator,
    SummaryGenerator,
    build_search_text,
    parse_summary_response,
)
from content_sync.models import EMBEDDING_DIMENSION, ProcessingStatus

from factories import make_item

LONG_CONTENT = "The deploy failed because the migration locked the users table. " * 3


def embedding_response(vector):
    item = MagicMock()
    item.embedding = vector
    response = MagicMock()
    response.data = [item]
    return response


def chat_response(content):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


class TestSummaryParsing:
    """Tests for parsing model replies."""

    def test_json_reply(self):
        result = parse_summary_response(
            '{"summary": " Deploy failed. ", "key_points": ["lock", " ", "retry"],'
            ' "sentiment": "Negative"}'
        )
        assert result.summary == "Deploy failed."
        assert result.key_points == ["lock", "retry"]
        assert result.sentiment == "negative"

    def test_unknown_sentiment_dropped(self):
        assert parse_summary_response('{"summary": "x", "sentiment": "angry"}').sentiment is None

    def test_key_points_capped(self):
        reply = '{"summary": "x", "key_points": ["1", "2", "3", "4", "5", "6"]}'
        assert len(parse_summary_response(reply).key_points) == 5

    def test_plain_text_reply(self):
        """Non-JSON replies are kept as the summary."""
        assert parse_summary_response("Just a summary.\n").summary == "Just a summary."

    def test_search_text(self):
        item = make_item(title="Outage", content="DB down", author_name="Alice", tags=["ops"])
        assert build_search_text(item) == "Outage DB down Alice ops"


class TestEmbeddingGenerator:
    """Tests for EmbeddingGenerator."""

    @pytest.fixture
    def mock_openai_client(self):
        client = AsyncMock()
        client.embeddings.create = AsyncMock(
            return_value=embedding_response([0.1] * EMBEDDING_DIMENSION)
        )
        return client

    @pytest.mark.asyncio
    async def test_generate_embedding(self, mock_openai_client):
        generator = EmbeddingGenerator(mock_openai_client, model="text-embedding-3-small")

        result = await generator.generate_embedding("Hello world")

        assert len(result) == EMBEDDING_DIMENSION
        kwargs = mock_openai_client.embeddings.create.call_args.kwargs
        assert kwargs == {"model": "text-embedding-3-small", "input": ["Hello world"]}

    @pytest.mark.asyncio
    async def test_blank_text_is_zero_vector(self, mock_openai_client):
        result = await EmbeddingGenerator(mock_openai_client).generate_embedding("   ")

        assert result == [0.0] * EMBEDDING_DIMENSION
        mock_openai_client.embeddings.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_long_text_truncated(self, mock_openai_client):
        await EmbeddingGenerator(mock_openai_client).generate_embedding("x" * 20000)

        sent = mock_openai_client.embeddings.create.call_args.kwargs["input"][0]
        assert len(sent) == MAX_EMBEDDING_INPUT_CHARS


class TestSummaryGenerator:
    """Tests for SummaryGenerator."""

    @pytest.mark.asyncio
    async def test_summarize(self):
        client = AsyncMock()
        client.chat.completions.create = AsyncMock(
            return_value=chat_response('{"summary": "Short.", "key_points": ["a"]}')
        )

        result = await SummaryGenerator(client).summarize(LONG_CONTENT)

        assert result == ContentSummary(summary="Short.", key_points=["a"], sentiment=None)
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert LONG_CONTENT in kwargs["messages"][1]["content"]


class TestContentEnricher:
    """Tests for ContentEnricher."""

    @pytest.fixture
    def item(self):
        return make_item(title="Deploy failure", content=LONG_CONTENT)

    @pytest.fixture
    def repository(self, item):
        repository = MagicMock()
        repository.get_item_option = AsyncMock(return_value=item)
        repository.update_item = AsyncMock(return_value=item)
        return repository

    @pytest.fixture
    def embeddings(self):
        embeddings = MagicMock()
        embeddings.generate_embedding = AsyncMock(return_value=[0.2] * EMBEDDING_DIMENSION)
        return embeddings

    @pytest.fixture
    def summarizer(self):
        summarizer = MagicMock()
        summarizer.summarize = AsyncMock(
            return_value=ContentSummary(
                summary="Migration lock broke the deploy.",
                key_points=["users table locked"],
                sentiment="negative",
            )
        )
        return summarizer

    @pytest.fixture
    def enricher(self, repository, embeddings, summarizer):
        return ContentEnricher(repository, embeddings=embeddings, summarizer=summarizer)

    @pytest.mark.asyncio
    async def test_process_item(self, enricher, repository, item):
        """Items move through processing to completed with AI fields set."""
        await enricher.process_item(item.id)

        first, final = (c.args[1] for c in repository.update_item.call_args_list)
        assert first["processing_status"] == ProcessingStatus.PROCESSING
        assert final["processing_status"] == ProcessingStatus.COMPLETED
        assert final["summary"] == "Migration lock broke the deploy."
        assert final["key_points"] == ["users table locked"]
        assert final["sentiment"] == "negative"
        assert len(final["embedding"]) == EMBEDDING_DIMENSION
        assert final["search_text"].startswith("Deploy failure")
        assert final["processed_at"] is not None

    @pytest.mark.asyncio
    async def test_short_content_not_summarized(self, enricher, repository, summarizer):
        repository.get_item_option = AsyncMock(return_value=make_item(content="LGTM"))

        await enricher.process_item(uuid4())

        summarizer.summarize.assert_not_called()

    @pytest.mark.asyncio
    async def test_model_failures_are_not_fatal(
        self, enricher, repository, embeddings, summarizer, item
    ):
        """The item completes with its search text when both models fail."""
        summarizer.summarize = AsyncMock(side_effect=openai.OpenAIError("quota"))
        embeddings.generate_embedding = AsyncMock(side_effect=openai.OpenAIError("quota"))

        await enricher.process_item(item.id)

        final = repository.update_item.call_args.args[1]
        assert final["processing_status"] == ProcessingStatus.COMPLETED
        assert "summary" not in final
        assert "embedding" not in final

    @pytest.mark.asyncio
    async def test_without_models(self, repository, item):
        await ContentEnricher(repository).process_item(item.id)

        final = repository.update_item.call_args.args[1]
        assert final["processing_status"] == ProcessingStatus.COMPLETED
        assert "embedding" not in final

    @pytest.mark.asyncio
    async def test_missing_item(self, enricher, repository):
        repository.get_item_option = AsyncMock(return_value=None)

        with pytest.raises(ContentProcessingError) as exc_info:
            await enricher.process_item(uuid4())
        assert "not found" in exc_info.value.message
        repository.update_item.assert_not_called()

    @pytest.mark.asyncio
    async def test_store_failure_marks_failed(self, enricher, repository, item):
        repository.update_item = AsyncMock(
            side_effect=[item, DatabaseError("update_item", "disk full"), item]
        )

        with pytest.raises(ContentProcessingError):
            await enricher.process_item(item.id)

        failed = repository.update_item.call_args.args[1]
        assert failed["processing_status"] == ProcessingStatus.FAILED
        assert "disk full" in failed["processing_error"]

    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self, enricher, repository, item):
        """One bad item does not stop the batch."""
        missing = uuid4()
        repository.get_item_option = AsyncMock(
            side_effect=lambda item_id: None if item_id == missing else item
        )

        result = await enricher.process_items_batch([item.id, missing, item.id], concurrency=2)

        assert result.processed == 2
        assert result.failed == 1
        assert result.errors[0]["item_id"] == str(missing)
