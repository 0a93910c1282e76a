"""In-memory vector index for semantic search.

Handles:
- Embedding of inserted chunks and of queries
- Dimension detection from the first inserted vector
- Candidate search over a FAISS inner-product index
- Cosine rescoring in float64 with insertion-order tie-break
- Thread-safe access to the id -> document mapping
"""
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import faiss
import numpy as np
import structlog

from personachat.errors import EmbeddingError, EmbeddingMalformed, IngestionFailed
from personachat.rag.chunker import Chunk
from personachat.rag.embeddings import EmbeddingProvider, get_embedding_provider

logger = structlog.get_logger()

# Scores are rounded so that floating-point noise cannot break ties
SCORE_DECIMALS = 12


@dataclass(frozen=True)
class ChunkMetadata:
    """Source context attached to a stored chunk."""

    source: str
    uploaded_at: datetime
    chunk_index: int
    score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "source": self.source,
            "uploaded_at": self.uploaded_at.isoformat(),
            "chunk_index": self.chunk_index,
        }
        if self.score is not None:
            data["score"] = self.score
        return data


@dataclass(frozen=True)
class IndexedDocument:
    """A chunk stored in the index together with its embedding."""

    id: str
    embedding: np.ndarray
    text: str
    metadata: ChunkMetadata


@dataclass(frozen=True)
class RetrievalResult:
    """A stored document scored against one query."""

    id: str
    text: str
    metadata: ChunkMetadata

    @property
    def score(self) -> float:
        return self.metadata.score

    @property
    def source(self) -> str:
        return self.metadata.source


def generate_document_id() -> str:
    """Time-based id with a random suffix."""
    return f"doc_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _unit_vector(vector: np.ndarray) -> np.ndarray:
    """Scale a float64 vector to unit length.

    Dividing by the largest component first keeps very small and very large
    magnitudes from underflowing or overflowing in the norm. Zero vectors stay
    zero so their score is 0.
    """
    peak = np.max(np.abs(vector))
    if peak == 0.0:
        return np.zeros_like(vector)
    scaled = vector / peak
    return scaled / np.linalg.norm(scaled)


def _cosine(query_unit: np.ndarray, embedding: np.ndarray) -> float:
    score = float(np.dot(query_unit, _unit_vector(embedding)))
    # Parallel vectors of different magnitude must tie exactly
    return round(min(1.0, max(-1.0, score)), SCORE_DECIMALS)


def _as_vector(embedding: Sequence[float], what: str) -> np.ndarray:
    vector = np.asarray(embedding, dtype=np.float64)
    if vector.ndim != 1 or vector.size == 0 or not np.isfinite(vector).all():
        raise EmbeddingMalformed(f"{what} embedding is not a finite vector")
    return vector


class VectorIndex:
    """Exact cosine-similarity index held in process memory."""

    def __init__(self, embedding_provider: Optional[EmbeddingProvider] = None):
        """Initialize an empty index.

        Args:
            embedding_provider: Provider used for chunks and queries
                (default: the shared provider)
        """
        self.embedding_provider = embedding_provider or get_embedding_provider()

        self._lock = threading.Lock()
        self._index: Optional[faiss.Index] = None
        self._documents: Dict[str, IndexedDocument] = {}
        # FAISS row number -> document id, in insertion order
        self._row_ids: List[str] = []
        self.dimension: Optional[int] = None

    async def insert(self, chunks: Sequence[Chunk]) -> List[str]:
        """Embed and store chunks in order.

        Args:
            chunks: Chunks to store

        Returns:
            Generated document ids, one per chunk

        Raises:
            IngestionFailed: If any embedding fails. Chunks stored before the
                failing one stay in the index; the rest are skipped.
        """
        batch_size = len(chunks)
        doc_ids = []

        for position, chunk in enumerate(chunks):
            try:
                embedding = await self.embedding_provider.embed(chunk.text)
                doc_id = self._store(chunk, embedding)

            except EmbeddingError as e:
                logger.error(
                    "chunk_embedding_failed",
                    source=chunk.source,
                    chunk_index=chunk.chunk_index,
                    inserted=position,
                    batch_size=batch_size,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise IngestionFailed(
                    f"Embedding failed after {position} of {batch_size} chunks",
                    inserted=position,
                    batch_size=batch_size,
                ) from e

            doc_ids.append(doc_id)

        logger.info(
            "chunks_inserted",
            count=len(doc_ids),
            total_documents=self.count(),
        )

        return doc_ids

    def _store(self, chunk: Chunk, embedding: List[float]) -> str:
        vector = _as_vector(embedding, "Chunk")
        doc_id = generate_document_id()

        with self._lock:
            if self._index is None:
                self.dimension = vector.shape[0]
                self._index = faiss.IndexFlatIP(self.dimension)
                logger.info("vector_index_initialized", dimension=self.dimension)

            elif vector.shape[0] != self.dimension:
                raise EmbeddingMalformed(
                    "Embedding dimension mismatch",
                    {"expected": self.dimension, "got": vector.shape[0]},
                )

            unit = _unit_vector(vector).astype(np.float32)
            self._index.add(unit.reshape(1, -1))
            self._documents[doc_id] = IndexedDocument(
                id=doc_id,
                embedding=vector,
                text=chunk.text,
                metadata=ChunkMetadata(
                    source=chunk.source,
                    uploaded_at=chunk.uploaded_at,
                    chunk_index=chunk.chunk_index,
                ),
            )
            self._row_ids.append(doc_id)

        return doc_id

    async def query(self, text: str, k: int) -> List[RetrievalResult]:
        """Rank stored documents against a query text.

        Args:
            text: Query text (always embedded, even if the index is empty)
            k: Maximum number of results

        Returns:
            At most min(k, count()) results, best first. Equal scores keep
            insertion order.

        Raises:
            EmbeddingUnavailable: If the query embedding call fails
            EmbeddingMalformed: If the query embedding cannot be used
        """
        embedding = await self.embedding_provider.embed(text)

        if k <= 0:
            return []

        query_vector = _as_vector(embedding, "Query")

        with self._lock:
            total = len(self._row_ids)
            if total == 0:
                logger.info("query_against_empty_index")
                return []

            if query_vector.shape[0] != self.dimension:
                raise EmbeddingMalformed(
                    "Query dimension mismatch",
                    {"expected": self.dimension, "got": query_vector.shape[0]},
                )

            query_unit = _unit_vector(query_vector)
            _, candidates = self._index.search(
                query_unit.astype(np.float32).reshape(1, -1), total
            )
            # FAISS pads with -1 when it returns fewer rows than asked for
            rows = np.array([row for row in candidates[0] if row >= 0], dtype=np.int64)
            docs = [self._documents[self._row_ids[row]] for row in rows]
            scores = np.array([_cosine(query_unit, doc.embedding) for doc in docs])

            # lexsort sorts by the last key first: score desc, then row asc
            ranked = np.lexsort((rows, -scores))[:k]

            results = []
            for i in ranked:
                doc = docs[i]
                results.append(
                    RetrievalResult(
                        id=doc.id,
                        text=doc.text,
                        metadata=replace(doc.metadata, score=float(scores[i])),
                    )
                )

        logger.info(
            "vector_search_completed",
            top_k=k,
            results_found=len(results),
            top_score=results[0].score if results else None,
        )

        return results

    def count(self) -> int:
        """Number of stored documents."""
        return len(self._row_ids)

    def clear(self) -> None:
        """Discard all stored documents and forget the dimension."""
        with self._lock:
            removed = len(self._row_ids)
            self._index = None
            self._documents = {}
            self._row_ids = []
            self.dimension = None

        logger.warning("vector_index_cleared", removed=removed)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the index.

        Returns:
            Dictionary with index statistics
        """
        return {
            "document_count": self.count(),
            "dimension": self.dimension,
            "embedding_model": self.embedding_provider.model,
        }


# Singleton instance shared by all request handlers
_index_instance: Optional[VectorIndex] = None
_index_lock = threading.Lock()


def get_vector_index() -> VectorIndex:
    """Get or lazily create the process-wide vector index.

    Returns:
        VectorIndex instance
    """
    global _index_instance
    if _index_instance is None:
        with _index_lock:
            if _index_instance is None:
                _index_instance = VectorIndex()
    return _index_instance
