"""Exception hierarchy for the retrieval subsystem.

Every error raised by embedding, ingestion or retrieval derives from
RetrievalError, so the chat flow can degrade to an un-augmented prompt by
catching a single type.
"""
from typing import Any, Dict, Optional


class RetrievalError(Exception):
    """Base exception for all retrieval subsystem errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Initialize with a message and optional debugging context.

        Args:
            message: Human-readable error message
            details: Optional dictionary of additional context
        """
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class EmbeddingError(RetrievalError):
    """Raised when the embedding provider cannot produce a vector."""


class EmbeddingUnavailable(EmbeddingError):
    """The upstream call could not be completed (network, status, credential, timeout).

    Transient: callers may retry with backoff.
    """


class EmbeddingMalformed(EmbeddingError):
    """The upstream response could not be parsed into a vector."""


class IngestionFailed(RetrievalError):
    """An embedding failed part-way through a batch insert.

    Documents stored before the failure stay in the index.
    """

    def __init__(self, message: str, inserted: int, batch_size: int) -> None:
        self.inserted = inserted
        self.batch_size = batch_size
        super().__init__(message, {"inserted": inserted, "batch_size": batch_size})


class EmptyContent(RetrievalError):
    """Uploaded content is empty after trimming whitespace."""


class UnsupportedFormat(RetrievalError):
    """Uploaded content is not plain text or lightweight markup."""

    def __init__(self, message: str, content_type: Optional[str] = None) -> None:
        details = {"content_type": content_type} if content_type else None
        super().__init__(message, details)
