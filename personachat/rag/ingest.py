"""Ingest pipeline for uploaded documents.

Orchestrates:
- Content type validation (plain text and lightweight markup only)
- Decoding of uploaded bytes
- Text chunking
- Vector index insertion
"""
from dataclasses import dataclass
from pathlib import PurePath
from typing import Optional
import structlog

from personachat import config
from personachat.errors import EmptyContent, UnsupportedFormat
from personachat.rag.chunker import TextChunker
from personachat.rag.store import VectorIndex, get_vector_index

logger = structlog.get_logger()

SUPPORTED_CONTENT_TYPES = {
    "text/plain",
    "text/markdown",
    "text/x-markdown",
}

# Declared types that say nothing about the content
GENERIC_CONTENT_TYPES = {"application/octet-stream"}

EXTENSION_CONTENT_TYPES = {
    ".txt": "text/plain",
    ".text": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
}


@dataclass
class IngestReport:
    """Outcome of one successful ingestion."""

    source: str
    chunk_count: int
    total_documents: int


def resolve_content_type(file_name: str, content_type: Optional[str] = None) -> str:
    """Work out the content type of an upload.

    A declared MIME type is authoritative: a supported one is used as is and
    any other specific type is rejected. Only a missing type or the generic
    application/octet-stream (which browsers send for .md) defers to the file
    extension.

    Args:
        file_name: Name of the uploaded file
        content_type: MIME type declared by the client, if any

    Returns:
        A supported content type

    Raises:
        UnsupportedFormat: If the declared type is unsupported, or the type is
            generic and the extension is unsupported
    """
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if mime in SUPPORTED_CONTENT_TYPES:
        return mime

    if mime and mime not in GENERIC_CONTENT_TYPES:
        raise UnsupportedFormat(
            f"Unsupported file type for '{file_name}'. Only TXT and MD files are accepted.",
            content_type=mime,
        )

    extension = PurePath(file_name).suffix.lower()
    if extension in EXTENSION_CONTENT_TYPES:
        return EXTENSION_CONTENT_TYPES[extension]

    raise UnsupportedFormat(
        f"Unsupported file type for '{file_name}'. Only TXT and MD files are accepted.",
        content_type=content_type or extension or None,
    )


class IngestPipeline:
    """Pipeline for ingesting uploaded text into the vector index."""

    def __init__(
        self,
        vector_index: Optional[VectorIndex] = None,
        chunk_size: int = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            vector_index: Target index (default: the process-wide index)
            chunk_size: Default chunk size in characters (default from config)
        """
        self.vector_index = vector_index or get_vector_index()
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size

    async def ingest(
        self,
        source_text: str,
        source: str,
        chunk_size: int = None,
        content_type: str = "text/plain",
    ) -> IngestReport:
        """Chunk a decoded document and insert it into the index.

        Args:
            source_text: Decoded document text
            source: Document identifier (usually the file name)
            chunk_size: Chunk size override
            content_type: MIME type of the content

        Returns:
            IngestReport with chunk and index counts

        Raises:
            UnsupportedFormat: If content_type is not text or markup
            EmptyContent: If the text is blank
            IngestionFailed: If an embedding fails mid-batch
        """
        if content_type not in SUPPORTED_CONTENT_TYPES:
            raise UnsupportedFormat(
                f"Unsupported content type: {content_type}", content_type=content_type
            )

        if not source_text.strip():
            raise EmptyContent("Document has no readable content", {"source": source})

        chunker = TextChunker(self.chunk_size if chunk_size is None else chunk_size)
        chunks = chunker.chunk(source_text, source)

        logger.info("ingesting_document", source=source, **chunker.get_chunk_stats(chunks))

        await self.vector_index.insert(chunks)

        report = IngestReport(
            source=source,
            chunk_count=len(chunks),
            total_documents=self.vector_index.count(),
        )

        logger.info(
            "document_ingested",
            source=source,
            chunk_count=report.chunk_count,
            total_documents=report.total_documents,
        )

        return report

    async def ingest_upload(
        self,
        file_name: str,
        raw_bytes: bytes,
        content_type: Optional[str] = None,
        chunk_size: int = None,
    ) -> IngestReport:
        """Validate, decode and ingest an uploaded file.

        Args:
            file_name: Name of the uploaded file
            raw_bytes: File contents
            content_type: MIME type declared by the client
            chunk_size: Chunk size override

        Returns:
            IngestReport

        Raises:
            UnsupportedFormat: Unsupported type or undecodable bytes
            EmptyContent: Blank file
            IngestionFailed: Embedding failure mid-batch
        """
        resolved = resolve_content_type(file_name, content_type)

        try:
            text = raw_bytes.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise UnsupportedFormat(
                f"'{file_name}' is not valid UTF-8 text", content_type=resolved
            ) from e

        return await self.ingest(
            text, file_name, chunk_size=chunk_size, content_type=resolved
        )

