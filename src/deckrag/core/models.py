"""Pydantic models shared by the extractor, chunker, embedder and pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DocumentStatus(str, Enum):
    """Lifecycle of an uploaded document."""
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class DocumentType(str, Enum):
    """Upload categories; only pitch decks change pipeline behaviour."""
    PITCH_DECK = "pitch_deck"
    FINANCIAL = "financial"
    STRATEGY = "strategy"
    LEGAL = "legal"
    OTHER = "other"


class ChunkStrategy(str, Enum):
    PAGE = "page"
    FIXED = "fixed"
    SEMANTIC = "semantic"


class ExtractedPage(BaseModel):
    """Text of a single PDF page."""
    model_config = ConfigDict(frozen=True)

    page_number: int = Field(ge=1)
    content: str
    char_count: int = Field(ge=0)


class DocumentMetadata(BaseModel):
    """Descriptive PDF metadata; every field is optional."""
    model_config = ConfigDict(frozen=True)

    title: Optional[str] = None
    author: Optional[str] = None
    subject: Optional[str] = None
    keywords: Optional[str] = None
    creator: Optional[str] = None
    producer: Optional[str] = None
    creation_date: Optional[datetime] = None
    modification_date: Optional[datetime] = None


class ExtractedDocument(BaseModel):
    """Result of text extraction, consumed by the chunker."""
    model_config = ConfigDict(frozen=True)

    full_text: str
    pages: List[ExtractedPage]
    metadata: DocumentMetadata
    page_count: int = Field(ge=0)


class ChunkOptions(BaseModel):
    strategy: ChunkStrategy = ChunkStrategy.SEMANTIC
    max_tokens: int = Field(default=500, gt=0)
    overlap_tokens: int = Field(default=50, ge=0)


class ChunkMetadata(BaseModel):
    """Absolute character offsets of a chunk inside the extracted full text."""
    start_char: int
    end_char: int
    token_count: int


class Chunk(BaseModel):
    """A bounded fragment of document text; the unit of embedding and retrieval."""
    index: int = Field(ge=0)
    content: str = Field(min_length=1)
    page_number: Optional[int] = None
    section: Optional[str] = None
    token_count: int
    metadata: ChunkMetadata


class EmbeddedChunk(Chunk):
    """A chunk paired with its embedding vector."""
    embedding: List[float]


class ScoredChunk(BaseModel):
    """A retrieval hit."""
    chunk: EmbeddedChunk
    similarity: float


class UploadedDocument(BaseModel):
    """Persisted upload record owned by the surrounding application."""
    id: str
    user_id: str
    name: str = ""
    file_url: str
    type: DocumentType = DocumentType.OTHER
    status: DocumentStatus = DocumentStatus.PROCESSING
    error_message: Optional[str] = None
    page_count: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PipelineResult(BaseModel):
    """Summary of a successful pipeline run."""
    document_id: str
    status: DocumentStatus
    strategy: ChunkStrategy
    page_count: int
    chunk_count: int
    duration_ms: float
