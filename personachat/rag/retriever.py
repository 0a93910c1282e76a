"""Retrieval-augmented prompt assembly.

Handles:
- Ranking stored chunks against the user query
- Building the context block and the augmented prompt
- Graceful fallback to the plain query when retrieval is unavailable
"""
from dataclasses import dataclass, field
from typing import List, Optional
import structlog

from personachat import config
from personachat.errors import RetrievalError
from personachat.rag.store import RetrievalResult, VectorIndex, get_vector_index

logger = structlog.get_logger()

PROMPT_TEMPLATE = """Use the following reference material to answer the question.

Reference material:
{context}

Question: {query}

If the reference material does not cover part of the question, answer that part from your general knowledge."""


@dataclass
class AugmentedPrompt:
    """Prompt to send to the chat model plus what retrieval contributed."""

    augmented_prompt: str
    used: bool
    result_count: int
    results: List[RetrievalResult] = field(default_factory=list)


def build_augmented_prompt(query: str, results: List[RetrievalResult]) -> str:
    """Combine ranked chunks and the question into one prompt.

    Args:
        query: Original user question
        results: Ranked retrieval results (best first)

    Returns:
        Augmented prompt text
    """
    context = "\n\n".join(result.text for result in results)
    return PROMPT_TEMPLATE.format(context=context, query=query)


class Retriever:
    """Read-only RAG augmenter over a vector index."""

    def __init__(
        self,
        vector_index: Optional[VectorIndex] = None,
        top_k: int = None,
    ):
        """Initialize the retriever.

        Args:
            vector_index: Index to search (default: the process-wide index)
            top_k: Default number of chunks to retrieve (default from config)
        """
        self.vector_index = vector_index or get_vector_index()
        self.top_k = config.RETRIEVAL_TOP_K if top_k is None else top_k

    async def augment(self, query: str, k: Optional[int] = None) -> AugmentedPrompt:
        """Augment a query with the best matching chunks.

        Args:
            query: User query text
            k: Number of chunks to retrieve (overrides default)

        Returns:
            AugmentedPrompt; the query is returned unchanged when nothing matched

        Raises:
            EmbeddingUnavailable: If the query embedding call fails
            EmbeddingMalformed: If the query embedding cannot be used
        """
        k = self.top_k if k is None else k

        results = await self.vector_index.query(query, k)

        if not results:
            logger.info("no_relevant_context_found", top_k=k)
            return AugmentedPrompt(augmented_prompt=query, used=False, result_count=0)

        prompt = build_augmented_prompt(query, results)

        logger.info(
            "query_augmented",
            result_count=len(results),
            top_score=results[0].score,
            prompt_length=len(prompt),
        )

        return AugmentedPrompt(
            augmented_prompt=prompt,
            used=True,
            result_count=len(results),
            results=results,
        )

    async def augment_or_passthrough(
        self, query: str, use_rag: bool, k: Optional[int] = None
    ) -> AugmentedPrompt:
        """Augment when requested, falling back to the plain query on failure.

        Retrieval is best-effort: any RetrievalError is logged and the chat
        turn continues with the un-augmented query.

        Args:
            query: User query text
            use_rag: Whether retrieval was requested
            k: Number of chunks to retrieve

        Returns:
            AugmentedPrompt
        """
        if not use_rag:
            return AugmentedPrompt(augmented_prompt=query, used=False, result_count=0)

        try:
            return await self.augment(query, k=k)
        except RetrievalError as e:
            logger.error(
                "rag_retrieval_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return AugmentedPrompt(augmented_prompt=query, used=False, result_count=0)

