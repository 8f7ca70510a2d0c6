"""Error taxonomy for the ingestion and retrieval pipeline."""

from typing import Optional


class DeckRagError(Exception):
    """Base class for every pipeline error; carries a human-readable message."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return self.message


class FormatError(DeckRagError):
    """Input bytes do not carry the expected file signature."""


class InvalidFormatError(FormatError):
    """Raised before extraction when a downloaded buffer is not a PDF."""


class ExtractionError(DeckRagError):
    """The PDF parser failed (password protection, encryption, corrupt data)."""


class EmptyDocumentError(DeckRagError):
    """Chunking produced no retrievable content."""


class EmbeddingServiceError(DeckRagError):
    """The embedding service failed or returned malformed data."""


class DimensionMismatchError(DeckRagError):
    """Two vectors of different lengths were compared."""


class DownloadError(DeckRagError):
    """The raw file could not be fetched from storage."""


class PersistenceError(DeckRagError):
    """A call into the document/chunk store failed."""


class DocumentStateError(DeckRagError):
    """A document was handed to the pipeline in the wrong lifecycle state."""


class ChunkBoundaryError(DeckRagError):
    """A section-relative chunk offset fell outside its section."""
