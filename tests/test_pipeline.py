import openai
import pytest
import structlog
from structlog.testing import capture_logs

from conftest import FakeEmbeddingClient, FakeStorage, make_embedder, make_pdf, new_document
from deckrag.core.config import PipelineConfig
from deckrag.core.errors import (
    DocumentStateError,
    DownloadError,
    EmbeddingServiceError,
    EmptyDocumentError,
    InvalidFormatError,
    PersistenceError,
)
from deckrag.core.models import ChunkStrategy, DocumentStatus, DocumentType
from deckrag.core.pipeline import DocumentPipeline, choose_strategy, create_pipeline
from deckrag.core.embed import Embedder
from deckrag.core.repository import InMemoryDocumentRepository, PostgresDocumentRepository
from deckrag.core.storage import HttpDocumentStorage

URL = "https://files.example.com/deck.pdf"

REPORT_TEXT = (
    "# Overview\nAcme sells reporting software.\n\n"
    "# Revenue\nRevenue doubled last year.\n\n"
    "# Outlook\nWe expect steady growth."
)


async def add_document(repository, document_type=DocumentType.PITCH_DECK):
    document = new_document(document_type=document_type, file_url=URL)
    await repository.create_document(document)
    return document


class TestChooseStrategy:
    def test_pitch_deck_uses_pages(self):
        assert choose_strategy(DocumentType.PITCH_DECK) == ChunkStrategy.PAGE

    @pytest.mark.parametrize("document_type", [DocumentType.FINANCIAL, DocumentType.LEGAL, DocumentType.OTHER])
    def test_other_types_use_sections(self, document_type):
        assert choose_strategy(document_type) == ChunkStrategy.SEMANTIC

    def test_override_wins(self):
        assert choose_strategy(DocumentType.PITCH_DECK, ChunkStrategy.FIXED) == ChunkStrategy.FIXED


class TestProcess:
    @pytest.mark.anyio
    async def test_pitch_deck_becomes_ready(self, pipeline, storage, repository, deck_pdf):
        storage.files[URL] = deck_pdf
        document = await add_document(repository)

        result = await pipeline.process(document)

        assert result.status == DocumentStatus.READY
        assert result.strategy == ChunkStrategy.PAGE
        assert result.page_count == 3
        assert result.chunk_count == 2

        stored = await repository.get_document(document.id)
        assert stored.status == DocumentStatus.READY
        assert stored.error_message is None
        assert stored.page_count == 3
        assert stored.metadata["title"] == "Seed Deck"

        chunks = await repository.get_chunks(document.id)
        assert [chunk.index for chunk in chunks] == [0, 1]
        assert [chunk.page_number for chunk in chunks] == [1, 3]
        assert all(len(chunk.embedding) == 8 for chunk in chunks)

    @pytest.mark.anyio
    async def test_report_is_chunked_by_section(self, pipeline, storage, repository):
        storage.files[URL] = make_pdf([REPORT_TEXT])
        document = await add_document(repository, DocumentType.FINANCIAL)

        result = await pipeline.process(document)

        assert result.strategy == ChunkStrategy.SEMANTIC
        chunks = await repository.get_chunks(document.id)
        assert [chunk.section for chunk in chunks] == ["Overview", "Revenue", "Outlook"]

    @pytest.mark.anyio
    async def test_strategy_override(self, pipeline, storage, repository, deck_pdf):
        storage.files[URL] = deck_pdf
        document = await add_document(repository)

        result = await pipeline.process(document, strategy=ChunkStrategy.FIXED)

        assert result.strategy == ChunkStrategy.FIXED

    @pytest.mark.anyio
    async def test_success_is_audited(self, pipeline, storage, repository, deck_pdf):
        storage.files[URL] = deck_pdf
        document = await add_document(repository)

        with capture_logs() as logs:
            await pipeline.process(document)

        events = [log for log in logs if log["event"] == "document_ingested"]
        assert len(events) == 1
        assert events[0]["chunks_created"] == 2
        assert events[0]["embedding_model"] == "text-embedding-3-small"

    @pytest.mark.anyio
    async def test_document_not_processing_is_rejected(self, pipeline, repository):
        document = await add_document(repository)
        ready = document.model_copy(update={"status": DocumentStatus.READY})

        with pytest.raises(DocumentStateError):
            await pipeline.process(ready)

        assert (await repository.get_document(document.id)).status == DocumentStatus.PROCESSING


class TestFailures:
    @pytest.mark.anyio
    async def test_download_failure(self, pipeline, repository):
        document = await add_document(repository)

        with pytest.raises(DownloadError):
            await pipeline.process(document)

        stored = await repository.get_document(document.id)
        assert stored.status == DocumentStatus.FAILED
        assert "HTTP 404" in stored.error_message

    @pytest.mark.anyio
    async def test_invalid_format(self, pipeline, storage, repository):
        storage.files[URL] = b"<html>not a pdf</html>"
        document = await add_document(repository)

        with pytest.raises(InvalidFormatError):
            await pipeline.process(document)

        stored = await repository.get_document(document.id)
        assert stored.status == DocumentStatus.FAILED
        assert "valid PDF" in stored.error_message

    @pytest.mark.anyio
    async def test_blank_document(self, pipeline, storage, repository):
        storage.files[URL] = make_pdf(["", ""])
        document = await add_document(repository)

        with pytest.raises(EmptyDocumentError):
            await pipeline.process(document)

        stored = await repository.get_document(document.id)
        assert stored.status == DocumentStatus.FAILED
        assert stored.page_count == 2
        assert await repository.get_chunks(document.id) == []

    @pytest.mark.anyio
    async def test_embedding_failure_leaves_no_chunks(self, storage, repository, deck_pdf):
        storage.files[URL] = deck_pdf
        document = await add_document(repository)
        pipeline = DocumentPipeline(
            storage=storage,
            repository=repository,
            embedder=make_embedder(FakeEmbeddingClient(errors=[openai.OpenAIError("quota exceeded")])),
            config=PipelineConfig(),
        )

        with capture_logs() as logs:
            with pytest.raises(EmbeddingServiceError):
                await pipeline.process(document)

        stored = await repository.get_document(document.id)
        assert stored.status == DocumentStatus.FAILED
        assert "quota exceeded" in stored.error_message
        assert await repository.get_chunks(document.id) == []

        failures = [log for log in logs if log["event"] == "document_ingestion_failed"]
        assert failures[0]["step"] == "embed"
        assert failures[0]["error_type"] == "EmbeddingServiceError"

    @pytest.mark.anyio
    async def test_store_failure_cleans_up_partial_write(self, storage, embedding_client, deck_pdf):
        class PartialWriteRepository(InMemoryDocumentRepository):
            async def store_chunks(self, document_id, chunks):
                await super().store_chunks(document_id, chunks[:1])
                raise PersistenceError("Failed to store chunks: disk full")

        repository = PartialWriteRepository()
        storage.files[URL] = deck_pdf
        document = await add_document(repository)
        pipeline = DocumentPipeline(storage, repository, make_embedder(embedding_client), config=PipelineConfig())

        with pytest.raises(PersistenceError):
            await pipeline.process(document)

        assert await repository.get_chunks(document.id) == []
        assert (await repository.get_document(document.id)).status == DocumentStatus.FAILED

    @pytest.mark.anyio
    async def test_unexpected_store_error_becomes_persistence_error(self, storage, embedding_client, deck_pdf):
        class BrokenRepository(InMemoryDocumentRepository):
            async def store_chunks(self, document_id, chunks):
                raise OSError("socket closed")

        repository = BrokenRepository()
        storage.files[URL] = deck_pdf
        document = await add_document(repository)
        pipeline = DocumentPipeline(storage, repository, make_embedder(embedding_client), config=PipelineConfig())

        with pytest.raises(PersistenceError) as exc_info:
            await pipeline.process(document)

        assert isinstance(exc_info.value.cause, OSError)

    @pytest.mark.anyio
    async def test_failed_ready_write_removes_stored_chunks(self, storage, embedding_client, deck_pdf):
        class ReadyWriteFailsRepository(InMemoryDocumentRepository):
            async def update_status(self, document_id, status, error_message=None):
                if status == DocumentStatus.READY:
                    raise OSError("connection reset")
                await super().update_status(document_id, status, error_message)

        repository = ReadyWriteFailsRepository()
        storage.files[URL] = deck_pdf
        document = await add_document(repository)
        pipeline = DocumentPipeline(storage, repository, make_embedder(embedding_client), config=PipelineConfig())

        with pytest.raises(OSError):
            await pipeline.process(document)

        stored = await repository.get_document(document.id)
        assert stored.status == DocumentStatus.FAILED
        assert stored.error_message == "Unexpected error during finalize: connection reset"
        assert await repository.get_chunks(document.id) == []

    @pytest.mark.anyio
    async def test_unexpected_error_is_recorded_and_reraised(self, repository, embedding_client):
        class ExplodingStorage(FakeStorage):
            async def download(self, url):
                raise RuntimeError("bucket client crashed")

        document = await add_document(repository)
        pipeline = DocumentPipeline(ExplodingStorage(), repository, make_embedder(embedding_client), config=PipelineConfig())

        with pytest.raises(RuntimeError):
            await pipeline.process(document)

        stored = await repository.get_document(document.id)
        assert stored.status == DocumentStatus.FAILED
        assert stored.error_message == "Unexpected error during download: bucket client crashed"


class TestReprocess:
    @pytest.mark.anyio
    async def test_reprocess_does_not_duplicate_chunks(self, pipeline, storage, repository, deck_pdf):
        storage.files[URL] = deck_pdf
        document = await add_document(repository)
        first = await pipeline.process(document)

        ready = await repository.get_document(document.id)
        second = await pipeline.reprocess(ready)

        chunks = await repository.get_chunks(document.id)
        assert second.chunk_count == first.chunk_count
        assert [chunk.index for chunk in chunks] == list(range(first.chunk_count))
        assert (await repository.get_document(document.id)).status == DocumentStatus.READY

    @pytest.mark.anyio
    async def test_reprocess_recovers_failed_document(self, pipeline, storage, repository, deck_pdf):
        document = await add_document(repository)
        with pytest.raises(DownloadError):
            await pipeline.process(document)

        storage.files[URL] = deck_pdf
        failed = await repository.get_document(document.id)
        result = await pipeline.reprocess(failed)

        stored = await repository.get_document(document.id)
        assert result.status == DocumentStatus.READY
        assert stored.status == DocumentStatus.READY
        assert stored.error_message is None


class TestSearch:
    @pytest.mark.anyio
    async def test_query_matching_a_chunk_ranks_it_first(self, pipeline, storage, repository, deck_pdf):
        storage.files[URL] = deck_pdf
        document = await add_document(repository)
        await pipeline.process(document)
        chunks = await repository.get_chunks(document.id)

        hits = await pipeline.search(document.id, chunks[1].content, top_k=1, threshold=0.99)

        assert len(hits) == 1
        assert hits[0].chunk.index == 1
        assert hits[0].similarity == pytest.approx(1.0)

    @pytest.mark.anyio
    async def test_document_without_chunks(self, pipeline, repository, embedding_client):
        assert await pipeline.search("missing", "revenue") == []
        assert embedding_client.calls == []

    @pytest.mark.anyio
    async def test_keyword_search(self, pipeline, storage, repository, deck_pdf, embedding_client):
        storage.files[URL] = deck_pdf
        document = await add_document(repository)
        await pipeline.process(document)
        calls_after_ingest = len(embedding_client.calls)

        hits = await pipeline.search_text(document.id, "automated REPORTING")

        assert [hit.page_number for hit in hits] == [3]
        assert len(embedding_client.calls) == calls_after_ingest
        assert await pipeline.search_text(document.id, "unicorn") == []


def test_create_pipeline_wires_production_collaborators(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    config = PipelineConfig(
        database_url="postgresql://example/deckrag",
        download_timeout=12.0,
        log_level="DEBUG",
        json_logs=False,
    )

    try:
        pipeline = create_pipeline(config)

        assert structlog.is_configured()
        assert isinstance(pipeline.storage, HttpDocumentStorage)
        assert pipeline.storage.timeout == 12.0
        assert isinstance(pipeline.repository, PostgresDocumentRepository)
        assert pipeline.repository.db_url == "postgresql://example/deckrag"
        assert isinstance(pipeline.embedder, Embedder)
    finally:
        structlog.reset_defaults()
