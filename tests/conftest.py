"""
Shared test fixtures and pytest configuration.

Markers:
    @pytest.mark.integration: requires a PostgreSQL server with pgvector (CINERAG_TEST_PG_DSN)
    @pytest.mark.embedding  : requires sentence-transformers model downloadable

Run stringent tests:
    pytest -m embedding               # only real embedding model tests
    CINERAG_TEST_PG_DSN=... pytest -m integration
    pytest -m "not integration and not embedding"   # fast CI
"""

import os
from typing import Optional

import pytest

from cinerag.errors import EmbeddingFailure
from cinerag.rag.document_store import InMemoryDocumentStore, SQLiteDocumentStore
from cinerag.rag.embedding_provider import MockEmbeddingProvider
from cinerag.rag.types import SourceRecord


def _embedding_model_available() -> bool:
    """Check if all-MiniLM-L6-v2 can be loaded (already cached or downloadable)."""
    try:
        from sentence_transformers import SentenceTransformer

        model = SentenceTransformer("sentence-transformers/all-MiniLM-L6-v2")
        vec = model.encode(["test"])
        return vec.shape[1] == 384
    except Exception:
        return False


# Cache the check at module level so it runs once per session
_EMBEDDING_OK: Optional[bool] = None


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: requires PostgreSQL with pgvector (CINERAG_TEST_PG_DSN)")
    config.addinivalue_line("markers", "embedding: requires sentence-transformers model available")


def pytest_collection_modifyitems(config, items):
    """Auto-skip tests whose infrastructure requirements are not met."""
    global _EMBEDDING_OK

    skip_pg = pytest.mark.skip(reason="CINERAG_TEST_PG_DSN not set")
    skip_embedding = pytest.mark.skip(reason="Embedding model not available (all-MiniLM-L6-v2)")

    for item in items:
        if "integration" in item.keywords and not os.environ.get("CINERAG_TEST_PG_DSN"):
            item.add_marker(skip_pg)
        if "embedding" in item.keywords:
            # Only load the model when a test actually needs it
            if _EMBEDDING_OK is None:
                _EMBEDDING_OK = _embedding_model_available()
            if not _EMBEDDING_OK:
                item.add_marker(skip_embedding)


class FlakyEmbeddingProvider(MockEmbeddingProvider):
    """Mock provider that fails on any text containing one of ``poison``."""

    def __init__(self, poison=("BROKEN",), dim: int = 64):
        super().__init__(dim=dim)
        self._poison = tuple(poison)
        self.batch_calls = 0

    def embed(self, texts):
        self.batch_calls += 1
        for text in texts:
            if any(p in text for p in self._poison):
                raise EmbeddingFailure(f"cannot embed {text!r}")
        return super().embed(texts)


@pytest.fixture
def provider():
    return MockEmbeddingProvider(dim=64)


@pytest.fixture
def memory_store():
    return InMemoryDocumentStore()


@pytest.fixture
def sqlite_store(tmp_path):
    store = SQLiteDocumentStore(tmp_path / "docs.db")
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Every exact-scan backend that runs without external services."""
    if request.param == "memory":
        yield InMemoryDocumentStore()
        return
    s = SQLiteDocumentStore(tmp_path / "param.db")
    yield s
    s.close()


@pytest.fixture
def records():
    return [
        SourceRecord(id="s1", title="Dick Johnson Is Dead", tags=("Documentaries",)),
        SourceRecord(id="s2", title="Blood & Water", tags=("International TV Shows", "TV Dramas", "TV Mysteries")),
        SourceRecord(id="s3", title="Ganglands", tags=("Crime TV Shows", "International TV Shows", "TV Action & Adventure")),
        SourceRecord(id="s4", title="Midnight Mass", tags=("TV Dramas", "TV Horror", "TV Mysteries")),
    ]


@pytest.fixture
def flaky_provider():
    return FlakyEmbeddingProvider()
