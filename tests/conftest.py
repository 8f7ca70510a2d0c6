"""Shared fixtures: fake embedding client, in-memory storage and PDF builders."""

from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence

import fitz  # PyMuPDF
import pytest

from deckrag.core.config import PipelineConfig
from deckrag.core.embed import EmbeddingConfig, Embedder
from deckrag.core.errors import DownloadError
from deckrag.core.extract import ParsedPdf, PdfParser
from deckrag.core.models import DocumentType, UploadedDocument
from deckrag.core.pipeline import DocumentPipeline
from deckrag.core.repository import InMemoryDocumentRepository
from deckrag.core.storage import DocumentStorage

TEST_DIMENSIONS = 8


def letter_vector(text: str, dimensions: int = TEST_DIMENSIONS) -> List[float]:
    """Deterministic bag-of-characters vector; identical texts get identical vectors."""
    vector = [0.0] * dimensions
    for ch in text.lower():
        if ch.isalnum():
            vector[ord(ch) % dimensions] += 1.0
    return vector


class FakeEmbeddingClient:
    """Mimics ``AsyncOpenAI().embeddings``; returns items in reverse order like a shuffled response."""

    def __init__(self, dimensions: int = TEST_DIMENSIONS, errors: Optional[Sequence[Exception]] = None):
        self.dimensions = dimensions
        self.errors = list(errors or [])
        self.calls: List[Dict] = []
        self.embeddings = self

    async def create(self, **request):
        self.calls.append(request)
        if self.errors:
            raise self.errors.pop(0)

        data = [
            SimpleNamespace(index=i, embedding=letter_vector(text, self.dimensions))
            for i, text in enumerate(request["input"])
        ]
        return SimpleNamespace(data=list(reversed(data)))


class FakeStorage(DocumentStorage):
    def __init__(self, files: Optional[Dict[str, bytes]] = None):
        self.files = dict(files or {})

    async def download(self, url: str) -> bytes:
        if url not in self.files:
            raise DownloadError(f"Failed to fetch {url}: HTTP 404 Not Found")
        return self.files[url]


class StaticParser(PdfParser):
    """PdfParser returning a fixed ParsedPdf, for exercising the page fallback tiers."""

    def __init__(self, parsed: Optional[ParsedPdf] = None, error: Optional[Exception] = None):
        self.parsed = parsed
        self.error = error

    def parse(self, buffer: bytes) -> ParsedPdf:
        if self.error:
            raise self.error
        return self.parsed

    def read_info(self, buffer: bytes):
        if self.error:
            raise self.error
        return self.parsed.info, self.parsed.page_count


def make_pdf(pages: Sequence[str], metadata: Optional[Dict[str, str]] = None, password: Optional[str] = None) -> bytes:
    """Build a real PDF with one page per entry; empty strings give blank pages."""
    doc = fitz.open()
    try:
        for text in pages:
            page = doc.new_page()
            if text:
                page.insert_text((72, 72), text, fontsize=11)
        if metadata:
            doc.set_metadata(metadata)
        if password:
            return doc.tobytes(
                encryption=fitz.PDF_ENCRYPT_AES_256,
                owner_pw=password + "-owner",
                user_pw=password,
            )
        return doc.tobytes()
    finally:
        doc.close()


def make_embedder(client: FakeEmbeddingClient, batch_size: int = 100, max_tokens: int = 8191) -> Embedder:
    config = EmbeddingConfig(
        model="text-embedding-3-small",
        dimensions=client.dimensions,
        batch_size=batch_size,
        max_tokens=max_tokens,
        retry_attempts=3,
        retry_min_wait=0,
        retry_max_wait=0,
    )
    return Embedder(client, config)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def embedding_client():
    return FakeEmbeddingClient()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def repository():
    return InMemoryDocumentRepository()


@pytest.fixture
def pipeline(storage, repository, embedding_client):
    return DocumentPipeline(
        storage=storage,
        repository=repository,
        embedder=make_embedder(embedding_client),
        config=PipelineConfig(max_tokens=500, overlap_tokens=50),
    )


@pytest.fixture
def deck_pdf():
    return make_pdf(
        [
            "Problem\nFounders waste hours on investor updates.",
            "",
            "Solution\nAutomated reporting from your existing tools.",
        ],
        metadata={"title": "Seed Deck", "author": "Acme Inc", "creationDate": "D:20240131120000Z"},
    )


def new_document(
    document_id: str = "doc-1",
    document_type: DocumentType = DocumentType.PITCH_DECK,
    file_url: str = "https://files.example.com/deck.pdf",
) -> UploadedDocument:
    return UploadedDocument(
        id=document_id,
        user_id="user-1",
        name="deck.pdf",
        file_url=file_url,
        type=document_type,
    )
