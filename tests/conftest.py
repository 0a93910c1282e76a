"""Shared fixtures: a deterministic in-memory embedding provider and indexes."""
import string
from typing import Dict, List, Optional

import pytest

from personachat.rag.store import VectorIndex


class FakeEmbeddingProvider:
    """Embedding provider stand-in that never touches the network.

    Texts listed in `vectors` get that vector; anything else gets a
    letter-frequency vector (26 dimensions). Texts listed in `failures`
    raise the given exception instead.
    """

    model = "fake-embedding"

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None):
        self.vectors = dict(vectors or {})
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if text in self.failures:
            raise self.failures[text]
        if text in self.vectors:
            return list(self.vectors[text])
        lowered = text.lower()
        return [float(lowered.count(letter)) for letter in string.ascii_lowercase]


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    """Provide a provider with three orthogonal-ish reference vectors."""
    return FakeEmbeddingProvider(
        vectors={
            "alpha": [1.0, 0.0, 0.0],
            "beta": [0.8, 0.6, 0.0],
            "gamma": [0.0, 0.0, 1.0],
            "query-alpha": [1.0, 0.0, 0.0],
            "zero": [0.0, 0.0, 0.0],
        }
    )


@pytest.fixture
def vector_index(fake_provider: FakeEmbeddingProvider) -> VectorIndex:
    """Provide an empty index backed by the fake provider."""
    return VectorIndex(embedding_provider=fake_provider)


@pytest.fixture
def letter_index() -> VectorIndex:
    """Provide an empty index using letter-frequency embeddings only."""
    return VectorIndex(embedding_provider=FakeEmbeddingProvider())
