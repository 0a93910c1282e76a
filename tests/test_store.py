"""Tests for the in-memory vector index."""
import asyncio
import json
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import httpx
import pytest

from conftest import FakeEmbeddingProvider
from personachat.errors import EmbeddingMalformed, EmbeddingUnavailable, IngestionFailed
from personachat.llm_client import OpenAIClient
from personachat.rag import store
from personachat.rag.chunker import Chunk, chunk_text
from personachat.rag.embeddings import EmbeddingProvider
from personachat.rag.store import VectorIndex, generate_document_id, get_vector_index

STAMP = datetime(2026, 3, 1, tzinfo=timezone.utc)


def make_chunks(*texts: str, source: str = "doc.txt"):
    return [
        Chunk(text=text, source=source, chunk_index=i, uploaded_at=STAMP)
        for i, text in enumerate(texts)
    ]


class TestInsert:
    """Test suite for VectorIndex.insert."""

    @pytest.mark.asyncio
    async def test_insert_increases_count_by_batch_size(self, vector_index):
        ids = await vector_index.insert(make_chunks("alpha", "beta", "gamma"))

        assert vector_index.count() == 3
        assert len(set(ids)) == 3
        assert vector_index.dimension == 3

    @pytest.mark.asyncio
    async def test_insert_embeds_chunks_in_order(self, vector_index, fake_provider):
        await vector_index.insert(make_chunks("gamma", "alpha", "beta"))

        assert fake_provider.calls == ["gamma", "alpha", "beta"]

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_earlier_chunks(self, vector_index, fake_provider):
        fake_provider.failures["beta"] = EmbeddingUnavailable("service down")
        await vector_index.insert(make_chunks("gamma"))

        with pytest.raises(IngestionFailed) as exc_info:
            await vector_index.insert(make_chunks("alpha", "beta", "gamma"))

        assert exc_info.value.inserted == 1
        assert exc_info.value.batch_size == 3
        assert isinstance(exc_info.value.__cause__, EmbeddingUnavailable)
        assert vector_index.count() == 2
        # The chunk after the failure is never embedded
        assert fake_provider.calls == ["gamma", "alpha", "beta"]

    @pytest.mark.asyncio
    async def test_dimension_mismatch_fails_the_batch(self, vector_index, fake_provider):
        fake_provider.vectors["wide"] = [1.0, 0.0, 0.0, 0.0]
        await vector_index.insert(make_chunks("alpha"))

        with pytest.raises(IngestionFailed) as exc_info:
            await vector_index.insert(make_chunks("wide"))

        assert isinstance(exc_info.value.__cause__, EmbeddingMalformed)
        assert vector_index.count() == 1

    @pytest.mark.asyncio
    async def test_empty_batch_is_a_no_op(self, vector_index, fake_provider):
        assert await vector_index.insert([]) == []
        assert vector_index.count() == 0
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_inserts_all_land(self, letter_index):
        batches = [chunk_text(f"document number {i} " * 20, f"doc{i}.txt", 50) for i in range(5)]

        await asyncio.gather(*(letter_index.insert(batch) for batch in batches))

        assert letter_index.count() == sum(len(b) for b in batches)

    def test_inserts_from_threads_all_land(self, letter_index):
        batches = [chunk_text(f"thread text {i} " * 30, f"t{i}.txt", 40) for i in range(8)]

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda batch: asyncio.run(letter_index.insert(batch)), batches))

        assert letter_index.count() == sum(len(b) for b in batches)


class TestQuery:
    """Test suite for VectorIndex.query."""

    @pytest.mark.asyncio
    async def test_ranks_by_descending_cosine_similarity(self, vector_index):
        await vector_index.insert(make_chunks("gamma", "beta", "alpha"))

        results = await vector_index.query("query-alpha", k=3)

        assert [r.text for r in results] == ["alpha", "beta", "gamma"]
        assert results[0].score == pytest.approx(1.0, abs=1e-6)
        assert results[1].score == pytest.approx(0.8, abs=1e-6)
        assert results[2].score == pytest.approx(0.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_identical_embedding_scores_one_and_ranks_first(self, vector_index):
        await vector_index.insert(make_chunks("beta", "alpha"))

        results = await vector_index.query("alpha", k=1)

        assert results[0].text == "alpha"
        assert results[0].score == pytest.approx(1.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_ties_keep_insertion_order(self, fake_provider):
        fake_provider.vectors.update({"first": [0.0, 1.0, 0.0], "second": [0.0, 2.0, 0.0]})
        index = VectorIndex(embedding_provider=fake_provider)
        await index.insert(make_chunks("second", "first", "alpha"))

        results = await index.query("first", k=3)

        assert [r.text for r in results] == ["second", "first", "alpha"]
        assert results[0].score == results[1].score

    @pytest.mark.asyncio
    async def test_repeated_queries_are_identical(self, letter_index):
        await letter_index.insert(make_chunks("apples and pears", "banana bread", "cherry pie"))

        first = await letter_index.query("apple pie", k=3)
        second = await letter_index.query("apple pie", k=3)

        assert [(r.id, r.score) for r in first] == [(r.id, r.score) for r in second]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("k", [0, 1, 2, 3, 10])
    async def test_result_count_is_capped(self, vector_index, k):
        await vector_index.insert(make_chunks("alpha", "beta", "gamma"))

        results = await vector_index.query("query-alpha", k=k)

        assert len(results) == min(k, vector_index.count())

    @pytest.mark.asyncio
    async def test_empty_index_returns_nothing_but_still_embeds(self, vector_index, fake_provider):
        assert await vector_index.query("query-alpha", k=3) == []
        assert fake_provider.calls == ["query-alpha"]

    @pytest.mark.asyncio
    async def test_cleared_index_returns_nothing(self, vector_index):
        await vector_index.insert(make_chunks("alpha", "beta"))
        vector_index.clear()

        assert vector_index.count() == 0
        assert vector_index.dimension is None
        assert await vector_index.query("query-alpha", k=3) == []

    @pytest.mark.asyncio
    async def test_clear_allows_a_new_dimension(self, vector_index, fake_provider):
        fake_provider.vectors["wide"] = [1.0, 0.0, 0.0, 0.0]
        await vector_index.insert(make_chunks("alpha"))
        vector_index.clear()

        await vector_index.insert(make_chunks("wide"))

        assert vector_index.dimension == 4

    @pytest.mark.asyncio
    async def test_zero_vectors_score_zero(self, vector_index):
        await vector_index.insert(make_chunks("zero", "alpha"))

        by_text = {r.text: r.score for r in await vector_index.query("query-alpha", k=2)}
        zero_query = await vector_index.query("zero", k=2)

        assert by_text["zero"] == 0.0
        assert [r.score for r in zero_query] == [0.0, 0.0]
        assert [r.text for r in zero_query] == ["zero", "alpha"]

    @pytest.mark.asyncio
    async def test_results_carry_metadata(self, vector_index):
        await vector_index.insert(make_chunks("alpha", "beta", source="notes.md"))

        result = (await vector_index.query("query-alpha", k=1))[0]

        assert result.source == "notes.md"
        assert result.metadata.chunk_index == 0
        assert result.metadata.uploaded_at == STAMP
        assert result.metadata.to_dict() == {
            "source": "notes.md",
            "uploaded_at": STAMP.isoformat(),
            "chunk_index": 0,
            "score": result.score,
        }

    @pytest.mark.asyncio
    async def test_query_provider_errors_propagate_unchanged(self, vector_index, fake_provider):
        await vector_index.insert(make_chunks("alpha"))
        error = EmbeddingUnavailable("timeout")
        fake_provider.failures["query-alpha"] = error

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            await vector_index.query("query-alpha", k=1)

        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_query_dimension_mismatch_is_malformed(self, vector_index, fake_provider):
        fake_provider.vectors["wide"] = [1.0, 0.0, 0.0, 0.0]
        await vector_index.insert(make_chunks("alpha"))

        with pytest.raises(EmbeddingMalformed):
            await vector_index.query("wide", k=1)

    @pytest.mark.asyncio
    async def test_parallel_vectors_tie_in_insertion_order(self, fake_provider):
        fake_provider.vectors.update({"short": [1.0, 12.0, 3.0], "long": [7.3, 87.6, 21.9]})

        for order in (["long", "short"], ["short", "long"]):
            index = VectorIndex(embedding_provider=fake_provider)
            await index.insert(make_chunks(*order))

            results = await index.query("short", k=2)

            assert [r.text for r in results] == order
            assert [r.score for r in results] == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_scaled_copies_always_tie(self, fake_provider):
        fake_provider.vectors["base"] = [1.0, 0.0, 0.0]

        for a in range(1, 30):
            for b in range(1, 30):
                fake_provider.vectors["first"] = [float(a), 0.0, 0.0]
                fake_provider.vectors["second"] = [float(b), 0.0, 0.0]
                index = VectorIndex(embedding_provider=fake_provider)
                await index.insert(make_chunks("first", "second"))

                results = await index.query("base", k=2)

                assert [r.text for r in results] == ["first", "second"], (a, b)
                assert results[0].score == results[1].score == 1.0

    @pytest.mark.asyncio
    async def test_identical_vector_scores_exactly_one(self, fake_provider):
        fake_provider.vectors.update({"odd": [4.0, 2.0, 3.0, 0.1], "other": [1.0, 0.0, 0.0, 0.0]})
        index = VectorIndex(embedding_provider=fake_provider)
        await index.insert(make_chunks("other", "odd"))

        results = await index.query("odd", k=2)

        assert results[0].text == "odd"
        assert results[0].score == 1.0

    @pytest.mark.asyncio
    async def test_tiny_and_huge_magnitudes_score_by_direction(self, vector_index, fake_provider):
        fake_provider.vectors.update({"tiny": [1e-25, 0.0, 0.0], "huge": [1e39, 0.0, 0.0]})
        await vector_index.insert(make_chunks("tiny", "huge", "alpha"))

        results = await vector_index.query("query-alpha", k=3)

        assert [r.text for r in results] == ["tiny", "huge", "alpha"]
        assert [r.score for r in results] == [1.0, 1.0, 1.0]
        assert len({r.id for r in results}) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [[float("inf"), 0.0, 0.0], [float("nan"), 1.0, 0.0]])
    async def test_non_finite_chunk_embedding_is_rejected(self, vector_index, fake_provider, bad):
        fake_provider.vectors["bad"] = bad
        await vector_index.insert(make_chunks("alpha"))

        with pytest.raises(IngestionFailed) as exc_info:
            await vector_index.insert(make_chunks("bad"))

        assert isinstance(exc_info.value.__cause__, EmbeddingMalformed)
        assert vector_index.count() == 1

    @pytest.mark.asyncio
    async def test_non_finite_query_embedding_is_malformed(self, vector_index, fake_provider):
        fake_provider.vectors["bad"] = [float("-inf"), 0.0, 0.0]
        await vector_index.insert(make_chunks("alpha"))

        with pytest.raises(EmbeddingMalformed):
            await vector_index.query("bad", k=1)


class YieldingEmbeddingProvider(FakeEmbeddingProvider):
    """Fake provider that gives control back to the event loop on every call."""

    async def embed(self, text: str):
        await asyncio.sleep(0)
        return await super().embed(text)


class TestConcurrency:
    """Readers and writers sharing one index."""

    @pytest.mark.asyncio
    async def test_queries_during_inserts_see_whole_documents(self):
        index = VectorIndex(embedding_provider=YieldingEmbeddingProvider())
        batches = [chunk_text(f"shared text {i} " * 20, f"doc{i}.txt", 30) for i in range(6)]

        outcomes = await asyncio.gather(
            *(index.insert(batch) for batch in batches),
            *(index.query(f"text {i}", k=50) for i in range(20)),
        )

        total = sum(len(b) for b in batches)
        assert index.count() == total
        for results in outcomes[len(batches):]:
            ids = [r.id for r in results]
            assert len(ids) == len(set(ids))
            assert len(ids) <= total
            assert all(r.text for r in results)

    def test_queries_from_threads_during_inserts(self, letter_index):
        batches = [chunk_text(f"thread text {i} " * 30, f"t{i}.txt", 40) for i in range(6)]

        def work(i):
            if i % 2 == 0:
                return asyncio.run(letter_index.insert(batches[i // 2]))
            return asyncio.run(letter_index.query("thread text", k=100))

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(work, range(12)))

        assert letter_index.count() == sum(len(b) for b in batches)
        for results in outcomes[1::2]:
            assert len({r.id for r in results}) == len(results)


class TestEmbeddingTimeout:
    """A real provider whose embedding call outlives its bound."""

    @staticmethod
    def make_index(slow_inputs, timeout: float = 0.05) -> VectorIndex:
        async def handler(request: httpx.Request) -> httpx.Response:
            text = json.loads(request.content)["input"]
            if text in slow_inputs:
                await asyncio.sleep(1)
            return httpx.Response(200, json={"data": [{"embedding": [1.0, float(len(text)), 0.0]}]})

        client = OpenAIClient(
            base_url="https://api.test/v1",
            api_key="sk-test",
            transport=httpx.MockTransport(handler),
        )
        provider = EmbeddingProvider(client=client, model="embed-small", timeout=timeout)
        return VectorIndex(embedding_provider=provider)

    @pytest.mark.asyncio
    async def test_timed_out_insert_leaves_index_unchanged(self):
        index = self.make_index({"slow"})
        await index.insert(make_chunks("fast"))

        with pytest.raises(IngestionFailed) as exc_info:
            await index.insert(make_chunks("slow"))

        assert isinstance(exc_info.value.__cause__, EmbeddingUnavailable)
        assert exc_info.value.inserted == 0
        assert index.count() == 1
        assert [r.text for r in await index.query("fast", k=5)] == ["fast"]

    @pytest.mark.asyncio
    async def test_timeout_mid_batch_keeps_only_finished_chunks(self):
        index = self.make_index({"slow"})

        with pytest.raises(IngestionFailed) as exc_info:
            await index.insert(make_chunks("one", "slow", "three"))

        assert (exc_info.value.inserted, exc_info.value.batch_size) == (1, 3)
        assert index.count() == 1

    @pytest.mark.asyncio
    async def test_timed_out_query_raises_unavailable(self):
        index = self.make_index({"slow"})
        await index.insert(make_chunks("fast"))

        with pytest.raises(EmbeddingUnavailable):
            await index.query("slow", k=1)


def test_document_ids_are_unique_and_time_based():
    ids = {generate_document_id() for _ in range(1000)}

    assert len(ids) == 1000
    assert all(re.fullmatch(r"doc_\d+_[0-9a-f]{9}", doc_id) for doc_id in ids)


def test_stats_report_size_and_model(vector_index):
    assert vector_index.get_stats() == {
        "document_count": 0,
        "dimension": None,
        "embedding_model": "fake-embedding",
    }


def test_shared_index_is_created_once(monkeypatch):
    monkeypatch.setattr(store, "_index_instance", None)
    monkeypatch.setattr(store, "get_embedding_provider", lambda: FakeEmbeddingProvider())

    with ThreadPoolExecutor(max_workers=8) as pool:
        instances = list(pool.map(lambda _: get_vector_index(), range(32)))

    assert len({id(instance) for instance in instances}) == 1
