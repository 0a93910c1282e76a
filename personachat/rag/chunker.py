"""Fixed-size text chunking for the RAG pipeline.

Chunks are consecutive, non-overlapping character slices. There is no sentence
or word boundary detection: joining the chunks back gives the original text.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
import structlog

from personachat import config

logger = structlog.get_logger()


@dataclass(frozen=True)
class Chunk:
    """A bounded slice of an uploaded document."""

    text: str
    source: str
    chunk_index: int
    uploaded_at: datetime


class TextChunker:
    """Character-based chunker without overlap."""

    def __init__(self, chunk_size: int = None):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum chunk length in characters (default from config)

        Raises:
            ValueError: If chunk_size is less than 1
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size

        if self.chunk_size < 1:
            raise ValueError(f"Chunk size must be at least 1, got {self.chunk_size}")

    def chunk(
        self, text: str, source: str, uploaded_at: Optional[datetime] = None
    ) -> List[Chunk]:
        """Split text into chunks of at most chunk_size characters.

        Args:
            text: Text to chunk (may be empty)
            source: Identifier of the originating document
            uploaded_at: Timestamp shared by all chunks (default: now, UTC)

        Returns:
            List of Chunk objects in original order
        """
        if not text:
            return []

        uploaded_at = uploaded_at or datetime.now(timezone.utc)
        size = self.chunk_size

        chunks = [
            Chunk(
                text=text[start : start + size],
                source=source,
                chunk_index=start // size,
                uploaded_at=uploaded_at,
            )
            for start in range(0, len(text), size)
        ]

        logger.info(
            "text_chunked",
            source=source,
            text_length=len(text),
            chunk_size=size,
            chunk_count=len(chunks),
        )

        return chunks

    def get_chunk_stats(self, chunks: List[Chunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of Chunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.text) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
        }


def chunk_text(
    text: str,
    source: str,
    chunk_size: int = None,
    uploaded_at: Optional[datetime] = None,
) -> List[Chunk]:
    """Chunk text with a one-off chunker (convenience function).

    Args:
        text: Text to chunk
        source: Identifier of the originating document
        chunk_size: Maximum chunk length (default from config)
        uploaded_at: Timestamp shared by all chunks

    Returns:
        List of Chunk objects
    """
    return TextChunker(chunk_size).chunk(text, source, uploaded_at=uploaded_at)
