"""Document and chunk persistence: interface, in-memory store and PostgreSQL store."""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from .errors import PersistenceError
from .models import (
    ChunkMetadata,
    DocumentMetadata,
    DocumentStatus,
    DocumentType,
    EmbeddedChunk,
    UploadedDocument,
)

logger = logging.getLogger(__name__)


def metadata_to_dict(metadata: DocumentMetadata) -> Dict[str, Any]:
    """JSON-safe form of DocumentMetadata with unset fields dropped."""
    return metadata.model_dump(mode="json", exclude_none=True)


class DocumentRepository(ABC):
    """
    Interface for uploaded document rows and their chunks.

    Every call is treated as atomic by the pipeline; any raised error fails the run.
    """

    @abstractmethod
    async def create_document(self, document: UploadedDocument) -> UploadedDocument:
        """Insert a document record (normally done by the upload layer)."""

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional[UploadedDocument]:
        """Get a document by ID, or None."""

    @abstractmethod
    async def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None
    ) -> None:
        """Set the document status; error_message is cleared unless given."""

    @abstractmethod
    async def update_metadata(self, document_id: str, metadata: DocumentMetadata, page_count: int) -> None:
        """Persist extracted metadata and page count."""

    @abstractmethod
    async def store_chunks(self, document_id: str, chunks: Sequence[EmbeddedChunk]) -> None:
        """Insert all chunks of a document as one unit."""

    @abstractmethod
    async def delete_chunks(self, document_id: str) -> int:
        """Delete every chunk of a document; returns the number removed."""

    @abstractmethod
    async def get_chunks(self, document_id: str) -> List[EmbeddedChunk]:
        """Chunks of a document ordered by index."""

    @abstractmethod
    async def search_chunks_by_text(self, document_id: str, query: str, limit: int = 10) -> List[EmbeddedChunk]:
        """Keyword search over a document's chunk content; matches come back in chunk order."""


class InMemoryDocumentRepository(DocumentRepository):
    """Dict-backed repository for tests and single-process use."""

    def __init__(self):
        self.documents: Dict[str, UploadedDocument] = {}
        self.chunks: Dict[str, List[EmbeddedChunk]] = {}

    def _require(self, document_id: str) -> UploadedDocument:
        document = self.documents.get(document_id)
        if document is None:
            raise PersistenceError(f"Document not found: {document_id}")
        return document

    async def create_document(self, document: UploadedDocument) -> UploadedDocument:
        self.documents[document.id] = document.model_copy(deep=True)
        return document

    async def get_document(self, document_id: str) -> Optional[UploadedDocument]:
        document = self.documents.get(document_id)
        return document.model_copy(deep=True) if document else None

    async def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None
    ) -> None:
        document = self._require(document_id)
        self.documents[document_id] = document.model_copy(
            update={"status": status, "error_message": error_message}
        )

    async def update_metadata(self, document_id: str, metadata: DocumentMetadata, page_count: int) -> None:
        document = self._require(document_id)
        self.documents[document_id] = document.model_copy(
            update={"metadata": metadata_to_dict(metadata), "page_count": page_count}
        )

    async def store_chunks(self, document_id: str, chunks: Sequence[EmbeddedChunk]) -> None:
        self._require(document_id)
        stored = self.chunks.get(document_id, []) + [chunk.model_copy(deep=True) for chunk in chunks]
        self.chunks[document_id] = stored

    async def delete_chunks(self, document_id: str) -> int:
        return len(self.chunks.pop(document_id, []))

    async def get_chunks(self, document_id: str) -> List[EmbeddedChunk]:
        return sorted(self.chunks.get(document_id, []), key=lambda chunk: chunk.index)

    async def search_chunks_by_text(self, document_id: str, query: str, limit: int = 10) -> List[EmbeddedChunk]:
        terms = query.lower().split()
        if not terms:
            return []
        matches = [
            chunk for chunk in await self.get_chunks(document_id)
            if all(term in chunk.content.lower() for term in terms)
        ]
        return matches[:limit]


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS uploaded_documents (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL DEFAULT 'other',
    file_url TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'processing',
    error_message TEXT,
    page_count INTEGER,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ DEFAULT now(),
    updated_at TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS document_chunks (
    id BIGSERIAL PRIMARY KEY,
    document_id TEXT NOT NULL REFERENCES uploaded_documents(id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    content TEXT NOT NULL,
    embedding REAL[],
    page_number INTEGER,
    section TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ DEFAULT now(),
    UNIQUE (document_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS document_chunks_content_search
    ON document_chunks USING GIN (to_tsvector('english', content));
"""


class PostgresDocumentRepository(DocumentRepository):
    """PostgreSQL repository; one connection and one transaction per call."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    @asynccontextmanager
    async def _cursor(self, action: str) -> AsyncIterator[Any]:
        try:
            async with await psycopg.AsyncConnection.connect(self.db_url) as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    yield cur
                await conn.commit()
        except psycopg.Error as e:
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}: {e}", e) from e

    async def ensure_schema(self) -> None:
        """Create the document and chunk tables if they do not exist."""
        async with self._cursor("create schema") as cur:
            await cur.execute(SCHEMA_SQL)

    async def create_document(self, document: UploadedDocument) -> UploadedDocument:
        async with self._cursor("create document") as cur:
            await cur.execute("""
                INSERT INTO uploaded_documents (
                    id, user_id, name, type, file_url, status, error_message, page_count, metadata
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                document.id,
                document.user_id,
                document.name,
                document.type.value,
                document.file_url,
                document.status.value,
                document.error_message,
                document.page_count,
                Jsonb(document.metadata)
            ))
        return document

    async def get_document(self, document_id: str) -> Optional[UploadedDocument]:
        async with self._cursor("get document") as cur:
            await cur.execute("""
                SELECT id, user_id, name, type, file_url, status, error_message, page_count, metadata
                FROM uploaded_documents
                WHERE id = %s
            """, (document_id,))
            row = await cur.fetchone()

        if row is None:
            return None
        return UploadedDocument(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"] or "",
            type=DocumentType(row["type"]),
            file_url=row["file_url"],
            status=DocumentStatus(row["status"]),
            error_message=row["error_message"],
            page_count=row["page_count"],
            metadata=row["metadata"] or {},
        )

    async def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None
    ) -> None:
        async with self._cursor("update document status") as cur:
            await cur.execute("""
                UPDATE uploaded_documents
                SET status = %s, error_message = %s, updated_at = now()
                WHERE id = %s
            """, (status.value, error_message, document_id))
            if cur.rowcount == 0:
                raise PersistenceError(f"Document not found: {document_id}")

    async def update_metadata(self, document_id: str, metadata: DocumentMetadata, page_count: int) -> None:
        async with self._cursor("update document metadata") as cur:
            await cur.execute("""
                UPDATE uploaded_documents
                SET metadata = %s, page_count = %s, updated_at = now()
                WHERE id = %s
            """, (Jsonb(metadata_to_dict(metadata)), page_count, document_id))
            if cur.rowcount == 0:
                raise PersistenceError(f"Document not found: {document_id}")

    async def store_chunks(self, document_id: str, chunks: Sequence[EmbeddedChunk]) -> None:
        if not chunks:
            return

        async with self._cursor("store chunks") as cur:
            await cur.executemany("""
                INSERT INTO document_chunks (
                    document_id, chunk_index, content, embedding, page_number, section, metadata
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            """, [
                (
                    document_id,
                    chunk.index,
                    chunk.content,
                    chunk.embedding,
                    chunk.page_number,
                    chunk.section,
                    Jsonb(chunk.metadata.model_dump())
                )
                for chunk in chunks
            ])
        logger.info(f"Stored {len(chunks)} chunks for document {document_id}")

    async def delete_chunks(self, document_id: str) -> int:
        async with self._cursor("delete chunks") as cur:
            await cur.execute("DELETE FROM document_chunks WHERE document_id = %s", (document_id,))
            deleted = cur.rowcount
        logger.info(f"Deleted {deleted} chunks for document {document_id}")
        return deleted

    async def get_chunks(self, document_id: str) -> List[EmbeddedChunk]:
        async with self._cursor("get chunks") as cur:
            await cur.execute("""
                SELECT chunk_index, content, embedding, page_number, section, metadata
                FROM document_chunks
                WHERE document_id = %s
                ORDER BY chunk_index
            """, (document_id,))
            rows = await cur.fetchall()

        return [_row_to_chunk(row) for row in rows]

    async def search_chunks_by_text(self, document_id: str, query: str, limit: int = 10) -> List[EmbeddedChunk]:
        if not query.strip():
            return []

        async with self._cursor("search chunks") as cur:
            await cur.execute("""
                SELECT chunk_index, content, embedding, page_number, section, metadata
                FROM document_chunks
                WHERE document_id = %s
                  AND to_tsvector('english', content) @@ plainto_tsquery('english', %s)
                ORDER BY chunk_index
                LIMIT %s
            """, (document_id, query, limit))
            rows = await cur.fetchall()

        return [_row_to_chunk(row) for row in rows]


def _row_to_chunk(row: Dict[str, Any]) -> EmbeddedChunk:
    metadata = ChunkMetadata(**row["metadata"])
    return EmbeddedChunk(
        index=row["chunk_index"],
        content=row["content"],
        page_number=row["page_number"],
        section=row["section"],
        token_count=metadata.token_count,
        metadata=metadata,
        embedding=list(row["embedding"] or []),
    )
