"""Embedding provider: turns text into a fixed-length vector via the hosted API."""
import asyncio
import math
from typing import List, Optional

import httpx
import structlog

from personachat import config
from personachat.errors import EmbeddingMalformed, EmbeddingUnavailable
from personachat.llm_client import MissingAPIKeyError, OpenAIClient, openai_client

logger = structlog.get_logger()


class EmbeddingProvider:
    """Wraps the embeddings endpoint. Stateless: no retry and no caching."""

    def __init__(
        self,
        client: Optional[OpenAIClient] = None,
        model: str = None,
        timeout: float = None,
    ):
        """Initialize the provider.

        Args:
            client: API client (default: the shared module client)
            model: Embedding model name (default from config)
            timeout: Upper bound in seconds for one embedding call
        """
        self.client = client or openai_client
        self.model = model or config.EMBEDDING_MODEL
        self.timeout = timeout or config.EMBEDDING_TIMEOUT

    async def embed(self, text: str) -> List[float]:
        """Embed a single text.

        Args:
            text: Text to embed

        Returns:
            Embedding vector

        Raises:
            EmbeddingUnavailable: Network failure, non-success status,
                missing credential or timeout
            EmbeddingMalformed: Response cannot be parsed into a vector
        """
        try:
            async with asyncio.timeout(self.timeout):
                data = await self.client.embeddings(text, model=self.model)

        except MissingAPIKeyError as e:
            raise EmbeddingUnavailable(str(e), {"model": self.model}) from e

        except TimeoutError as e:
            logger.error("embedding_timeout", model=self.model, timeout=self.timeout)
            raise EmbeddingUnavailable(
                f"Embedding call timed out after {self.timeout}s",
                {"model": self.model},
            ) from e

        except httpx.HTTPStatusError as e:
            raise EmbeddingUnavailable(
                f"Embedding endpoint returned {e.response.status_code}",
                {"model": self.model, "status_code": e.response.status_code},
            ) from e

        except httpx.HTTPError as e:
            raise EmbeddingUnavailable(
                f"Embedding request failed: {e}",
                {"model": self.model, "error_type": type(e).__name__},
            ) from e

        except ValueError as e:
            raise EmbeddingMalformed(
                f"Embedding response is not valid JSON: {e}", {"model": self.model}
            ) from e

        return self._parse_vector(data)

    def _parse_vector(self, data) -> List[float]:
        try:
            raw = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingMalformed(
                "Embedding response has no data[0].embedding", {"model": self.model}
            ) from e

        if not isinstance(raw, list) or not raw:
            raise EmbeddingMalformed(
                "Embedding is not a non-empty list", {"model": self.model}
            )

        vector = []
        for value in raw:
            # bool is an int subclass but never a valid component
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise EmbeddingMalformed(
                    f"Embedding contains a non-numeric value: {value!r}",
                    {"model": self.model},
                )
            if not math.isfinite(value):
                raise EmbeddingMalformed(
                    "Embedding contains a non-finite value", {"model": self.model}
                )
            vector.append(float(value))

        logger.debug("text_embedded", model=self.model, dimension=len(vector))
        return vector


# Singleton instance for convenience
_provider_instance: Optional[EmbeddingProvider] = None


def get_embedding_provider() -> EmbeddingProvider:
    """Get a singleton embedding provider with default config."""
    global _provider_instance
    if _provider_instance is None:
        _provider_instance = EmbeddingProvider()
    return _provider_instance
