"""Document pipeline: download -> validate -> extract -> chunk -> embed -> store -> ready."""

import logging
import time
from typing import List, Optional, Sequence

from .chunk import chunk_document
from .config import PipelineConfig, get_pipeline_config
from .embed import DEFAULT_SIMILARITY_THRESHOLD, DEFAULT_TOP_K, Embedder, create_embedding_client, rank_chunks
from .errors import (
    DeckRagError,
    DocumentStateError,
    EmptyDocumentError,
    InvalidFormatError,
    PersistenceError,
)
from .extract import PDFTextExtractor, is_valid_format
from .logging_config import configure_logging, get_audit_logger, log_ingestion_event, log_pipeline_failure
from .models import (
    ChunkOptions,
    ChunkStrategy,
    DocumentStatus,
    DocumentType,
    EmbeddedChunk,
    PipelineResult,
    ScoredChunk,
    UploadedDocument,
)
from .repository import DocumentRepository, PostgresDocumentRepository
from .storage import DocumentStorage, HttpDocumentStorage

logger = logging.getLogger(__name__)


def choose_strategy(document_type: DocumentType, override: Optional[ChunkStrategy] = None) -> ChunkStrategy:
    """Pitch decks chunk one slide per chunk; everything else is chunked by section."""
    if override is not None:
        return override
    if document_type == DocumentType.PITCH_DECK:
        return ChunkStrategy.PAGE
    return ChunkStrategy.SEMANTIC


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class DocumentPipeline:
    """
    Drives one uploaded document from raw file to searchable chunks.

    Runs are not locked; callers must not process the same document concurrently.
    """

    def __init__(
        self,
        storage: DocumentStorage,
        repository: DocumentRepository,
        embedder: Embedder,
        extractor: Optional[PDFTextExtractor] = None,
        config: Optional[PipelineConfig] = None
    ):
        self.storage = storage
        self.repository = repository
        self.embedder = embedder
        self.extractor = extractor or PDFTextExtractor()
        self.config = config or get_pipeline_config()
        self.audit_logger = get_audit_logger("pipeline")

    async def process(
        self,
        document: UploadedDocument,
        strategy: Optional[ChunkStrategy] = None
    ) -> PipelineResult:
        """
        Process an uploaded document end to end.

        Args:
            document: Upload record, must be in ``processing`` status
            strategy: Optional chunking strategy override

        Returns:
            PipelineResult for the document, now ``ready``

        Raises:
            DocumentStateError: document is not in ``processing`` status
            DeckRagError: any step failed; the document is left ``failed``
        """
        if document.status != DocumentStatus.PROCESSING:
            raise DocumentStateError(
                f"Document {document.id} is {document.status.value}, expected processing"
            )

        started = time.perf_counter()
        chosen = choose_strategy(document.type, strategy)
        step = "download"
        logger.info(f"Processing document {document.id} ({document.type.value}) with {chosen.value} strategy")

        try:
            buffer = await self.storage.download(document.file_url)

            step = "validate"
            if not is_valid_format(buffer):
                raise InvalidFormatError("File does not appear to be a valid PDF (missing PDF header)")

            step = "extract"
            extracted = self.extractor.extract(buffer)
            await self.repository.update_metadata(document.id, extracted.metadata, extracted.page_count)

            step = "chunk"
            options = ChunkOptions(
                strategy=chosen,
                max_tokens=self.config.max_tokens,
                overlap_tokens=self.config.overlap_tokens,
            )
            chunks = chunk_document(extracted.full_text, extracted.pages, options)
            if not chunks:
                raise EmptyDocumentError("No text content could be extracted from the document")

            step = "embed"
            embedded = await self.embedder.embed_chunks(chunks, document_id=document.id)

            step = "store"
            await self._store_chunks(document.id, embedded)

            step = "finalize"
            await self.repository.update_status(document.id, DocumentStatus.READY)
        except Exception as e:
            await self._mark_failed(document.id, step, e, started)
            raise

        duration_ms = _elapsed_ms(started)
        log_ingestion_event(
            self.audit_logger,
            document_id=document.id,
            strategy=chosen.value,
            pages=extracted.page_count,
            chunks_created=len(embedded),
            embedding_model=self.embedder.model,
            processing_time_ms=duration_ms,
        )
        logger.info(f"Document {document.id} ready: {len(embedded)} chunks in {duration_ms}ms")

        return PipelineResult(
            document_id=document.id,
            status=DocumentStatus.READY,
            strategy=chosen,
            page_count=extracted.page_count,
            chunk_count=len(embedded),
            duration_ms=duration_ms,
        )

    async def reprocess(
        self,
        document: UploadedDocument,
        strategy: Optional[ChunkStrategy] = None
    ) -> PipelineResult:
        """Drop a document's chunks, reset it to processing and run it again."""
        deleted = await self.repository.delete_chunks(document.id)
        await self.repository.update_status(document.id, DocumentStatus.PROCESSING)
        logger.info(f"Reprocessing document {document.id}; removed {deleted} existing chunks")

        reset = document.model_copy(update={"status": DocumentStatus.PROCESSING, "error_message": None})
        return await self.process(reset, strategy)

    async def search(
        self,
        document_id: str,
        query: str,
        top_k: int = DEFAULT_TOP_K,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    ) -> List[ScoredChunk]:
        """Rank a document's stored chunks against a query."""
        chunks = await self.repository.get_chunks(document_id)
        if not chunks:
            logger.info(f"No chunks stored for document {document_id}")
            return []

        query_embedding = await self.embedder.embed_query(query)
        results = rank_chunks(query_embedding, chunks, top_k=top_k, threshold=threshold)
        logger.info(f"Search over {len(chunks)} chunks of {document_id} returned {len(results)} results")
        return results

    async def search_text(self, document_id: str, query: str, limit: int = 10) -> List[EmbeddedChunk]:
        """Keyword fallback when embedding search is unavailable or returns nothing."""
        return await self.repository.search_chunks_by_text(document_id, query, limit)

    async def _store_chunks(self, document_id: str, chunks: Sequence[EmbeddedChunk]) -> None:
        try:
            await self.repository.store_chunks(document_id, chunks)
        except Exception as e:
            logger.error(f"Failed to store chunks for {document_id}, removing partial writes: {e}")
            await self._discard_chunks(document_id)
            if isinstance(e, DeckRagError):
                raise
            raise PersistenceError(f"Failed to store chunks: {e}", e) from e

    async def _discard_chunks(self, document_id: str) -> None:
        try:
            await self.repository.delete_chunks(document_id)
        except Exception as cleanup_error:
            logger.error(f"Chunk cleanup for {document_id} failed: {cleanup_error}")

    async def _mark_failed(self, document_id: str, step: str, error: Exception, started: float) -> None:
        if isinstance(error, DeckRagError):
            message = error.message
        else:
            message = f"Unexpected error during {step}: {error}"

        log_pipeline_failure(
            self.audit_logger,
            document_id=document_id,
            step=step,
            error_type=type(error).__name__,
            error_message=message,
            processing_time_ms=_elapsed_ms(started),
        )

        # Stored chunks must not outlive a document that never reached ready
        if step == "finalize":
            await self._discard_chunks(document_id)

        try:
            await self.repository.update_status(document_id, DocumentStatus.FAILED, message)
        except Exception as status_error:
            # Caller re-raises the pipeline error
            logger.error(f"Could not mark document {document_id} as failed: {status_error}")


def create_pipeline(config: Optional[PipelineConfig] = None) -> DocumentPipeline:
    """Wire the HTTP storage, PostgreSQL repository and OpenAI embedder from the environment."""
    config = config or get_pipeline_config()
    configure_logging(config.log_level, config.json_logs)
    return DocumentPipeline(
        storage=HttpDocumentStorage(timeout=config.download_timeout),
        repository=PostgresDocumentRepository(config.database_url),
        embedder=Embedder(create_embedding_client()),
        config=config,
    )
