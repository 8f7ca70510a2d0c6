"""OpenAI embedding helpers; batch; restore service ordering; cosine similarity and linear-scan ranking."""

import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import openai
from dotenv import load_dotenv
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import DimensionMismatchError, EmbeddingServiceError
from .logging_config import get_audit_logger, log_embedding_batch
from .models import Chunk, EmbeddedChunk, ScoredChunk

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "... [truncated]"
DEFAULT_TOP_K = 5
DEFAULT_SIMILARITY_THRESHOLD = 0.7

MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

# Retried per batch; everything else fails the call immediately
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding generation."""
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 100
    max_tokens: int = 8191  # Max tokens for text-embedding-3-small
    retry_attempts: int = 3
    retry_min_wait: float = 4.0
    retry_max_wait: float = 10.0


def get_embedding_config() -> EmbeddingConfig:
    """Get embedding configuration from environment."""
    model = os.getenv("EMBED_MODEL", "text-embedding-3-small")

    return EmbeddingConfig(
        model=model,
        dimensions=MODEL_DIMENSIONS.get(model, 1536),
        batch_size=int(os.getenv("EMBED_BATCH_SIZE", "100")),
        max_tokens=8191,
        retry_attempts=int(os.getenv("EMBED_RETRY_ATTEMPTS", "3")),
    )


def get_embedding_model() -> str:
    """Identifier of the embedding model vectors are generated with."""
    return get_embedding_config().model


def get_embedding_dimensions() -> int:
    """Length of every embedding vector produced by the configured model."""
    return get_embedding_config().dimensions


def create_embedding_client(api_key: Optional[str] = None) -> openai.AsyncOpenAI:
    """Create the embedding client once at startup; pass it to every Embedder."""
    api_key = api_key or os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ValueError("OpenAI API key not found in environment variables")
    return openai.AsyncOpenAI(api_key=api_key)


def truncate_for_embedding(text: str, max_tokens: int) -> str:
    """Cut text to the model's approximate character budget, marking the cut."""
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    return text[:max(max_chars - len(TRUNCATION_MARKER), 0)] + TRUNCATION_MARKER


class Embedder:
    """Batched embedding calls against an OpenAI-compatible client."""

    def __init__(self, client: Any, config: Optional[EmbeddingConfig] = None):
        self.client = client
        self.config = config or get_embedding_config()
        self.audit_logger = get_audit_logger("embedder")

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def dimensions(self) -> int:
        return self.config.dimensions

    async def embed(self, texts: Sequence[str], document_id: Optional[str] = None) -> List[List[float]]:
        """
        Generate one embedding per text, in input order.

        Args:
            texts: Texts to embed
            document_id: Optional id used only for audit logging

        Returns:
            List of embedding vectors aligned with ``texts``

        Raises:
            EmbeddingServiceError: any batch failed or returned malformed data
        """
        if not texts:
            return []

        vectors: List[List[float]] = []
        batch_size = max(self.config.batch_size, 1)

        for batch_number, offset in enumerate(range(0, len(texts), batch_size), start=1):
            batch = texts[offset:offset + batch_size]
            prepared = [truncate_for_embedding(text, self.config.max_tokens) for text in batch]
            truncated = sum(1 for original, sent in zip(batch, prepared) if len(original) != len(sent))
            if truncated:
                logger.warning(f"Truncated {truncated} texts in batch {batch_number} to fit the model input limit")

            logger.info(f"Processing embedding batch {batch_number}: {len(batch)} texts")
            vectors.extend(await self._embed_batch(prepared))

            log_embedding_batch(
                self.audit_logger,
                batch_number=batch_number,
                batch_size=len(batch),
                model=self.config.model,
                truncated=truncated,
                document_id=document_id,
            )

        logger.info(f"Generated {len(vectors)} embeddings using {self.config.model}")
        return vectors

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single search query."""
        return (await self.embed([text]))[0]

    async def embed_chunks(self, chunks: Sequence[Chunk], document_id: Optional[str] = None) -> List[EmbeddedChunk]:
        """Pair every chunk with its embedding."""
        vectors = await self.embed([chunk.content for chunk in chunks], document_id=document_id)
        return [
            EmbeddedChunk(**chunk.model_dump(), embedding=vector)
            for chunk, vector in zip(chunks, vectors)
        ]

    async def _embed_batch(self, inputs: List[str]) -> List[List[float]]:
        request: Dict[str, Any] = {"model": self.config.model, "input": inputs}
        if self.config.model.startswith("text-embedding-3"):
            request["dimensions"] = self.config.dimensions

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(self.config.retry_attempts, 1)),
                wait=wait_exponential(
                    multiplier=1,
                    min=self.config.retry_min_wait,
                    max=self.config.retry_max_wait,
                ),
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    response = await self.client.embeddings.create(**request)
        except openai.OpenAIError as e:
            logger.error(f"Failed to generate embeddings: {e}")
            raise EmbeddingServiceError(f"Embedding service request failed: {e}", e) from e

        return self._ordered_vectors(response, len(inputs))

    def _ordered_vectors(self, response: Any, expected: int) -> List[List[float]]:
        """Sort response items by their batch index and validate them."""
        data = getattr(response, "data", None)
        if data is None or len(data) != expected:
            received = 0 if data is None else len(data)
            raise EmbeddingServiceError(
                f"Embedding service returned {received} embeddings for {expected} inputs"
            )

        items = sorted(data, key=lambda item: item.index)
        if [item.index for item in items] != list(range(expected)):
            raise EmbeddingServiceError("Embedding service returned inconsistent item indices")

        vectors = []
        for item in items:
            vector = [float(value) for value in item.embedding]
            if len(vector) != self.config.dimensions:
                raise EmbeddingServiceError(
                    f"Embedding has {len(vector)} dimensions, expected {self.config.dimensions}"
                )
            vectors.append(vector)
        return vectors


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector is all zeros."""
    if len(a) != len(b):
        raise DimensionMismatchError(f"Cannot compare vectors of length {len(a)} and {len(b)}")

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


def rank_chunks(
    query_embedding: Sequence[float],
    chunks: Sequence[EmbeddedChunk],
    top_k: int = DEFAULT_TOP_K,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> List[ScoredChunk]:
    """
    Linear-scan retrieval over a document's chunks.

    O(N) per query; meant for per-document chunk sets, not corpus search.
    """
    scored = [
        ScoredChunk(chunk=chunk, similarity=cosine_similarity(query_embedding, chunk.embedding))
        for chunk in chunks
    ]
    hits = [hit for hit in scored if hit.similarity >= threshold]
    hits.sort(key=lambda hit: hit.similarity, reverse=True)
    return hits[:top_k]
