"""Tests for the retrieval engine."""

from __future__ import annotations

import pytest

from cinerag.errors import EmbeddingFailure
from cinerag.ingestion.pipeline import IngestionPipeline
from cinerag.ingestion.sources import StaticRecordSource
from cinerag.rag.embedding_provider import MockEmbeddingProvider
from cinerag.rag.search import RetrievalEngine


class CountingProvider(MockEmbeddingProvider):
    def __init__(self):
        super().__init__(dim=64)
        self.calls = 0

    def embed(self, texts):
        self.calls += 1
        return super().embed(texts)


@pytest.fixture
def loaded(records, provider, store):
    IngestionPipeline(StaticRecordSource(records), store, provider).ingest_all()
    return RetrievalEngine(store, provider)


class TestRetrievalEngine:
    def test_round_trip_self_similarity(self, loaded, records):
        target = records[3]
        results = loaded.retrieve(target.content, k=1)
        assert len(results) == 1
        assert results[0].document.id == target.id
        assert results[0].similarity == pytest.approx(1.0, abs=1e-5)

    def test_sorted_and_bounded(self, loaded):
        results = loaded.retrieve("TV Dramas", k=3)
        assert len(results) == 3
        sims = [r.similarity for r in results]
        assert sims == sorted(sims, reverse=True)
        assert all(-1.0 <= s <= 1.0 for s in sims)

    def test_unbounded_returns_everything(self, loaded, records):
        assert len(loaded.retrieve("anything", k=None)) == len(records)

    def test_deterministic(self, loaded):
        first = [(r.document.id, r.similarity) for r in loaded.retrieve("crime adventure", k=None)]
        second = [(r.document.id, r.similarity) for r in loaded.retrieve("crime adventure", k=None)]
        assert first == second

    def test_empty_store(self, memory_store, provider):
        assert RetrievalEngine(memory_store, provider).retrieve("anything", k=5) == []

    def test_non_positive_k_skips_embedding(self, memory_store):
        provider = CountingProvider()
        engine = RetrievalEngine(memory_store, provider)
        assert engine.retrieve("anything", k=0) == []
        assert engine.retrieve("anything", k=-1) == []
        assert provider.calls == 0

    def test_model_mismatch(self, loaded):
        other = RetrievalEngine(loaded.store, MockEmbeddingProvider(dim=64, model_name="other-hash"))
        with pytest.raises(EmbeddingFailure, match="mock-hash"):
            other.retrieve("anything", k=1)

    def test_accessors(self, memory_store, provider):
        engine = RetrievalEngine(memory_store, provider)
        assert engine.store is memory_store
        assert engine.embedding_provider is provider
