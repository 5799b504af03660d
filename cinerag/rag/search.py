"""
Retrieval engine: embed a query and rank stored documents against it.

Query vectors go through the same provider (and so the same mean-pool +
L2-normalize policy) that built the document store. Nothing is cached
between calls; an unchanged store gives the same ranking every time.
"""

from __future__ import annotations

import logging
from typing import Optional

from cinerag.errors import EmbeddingFailure
from cinerag.rag.document_store import DocumentStore
from cinerag.rag.embedding_provider import EmbeddingProvider
from cinerag.rag.types import EmbeddingVector, RankedResult

LOG = logging.getLogger("rag.search")


class RetrievalEngine:
    """
    Embedding + document-store retrieval coordinator.

    Usage::

        engine = RetrievalEngine(store, provider)
        results = engine.retrieve("feel-good comedies", k=5)
    """

    def __init__(self, store: DocumentStore, embedding_provider: EmbeddingProvider) -> None:
        self._store = store
        self._embed = embedding_provider

    @property
    def store(self) -> DocumentStore:
        return self._store

    @property
    def embedding_provider(self) -> EmbeddingProvider:
        return self._embed

    def retrieve(self, query: str, k: Optional[int] = None) -> list[RankedResult]:
        """
        Rank stored documents by similarity to *query*.

        ``k=None`` ranks the whole store; ``k <= 0`` returns ``[]`` without
        embedding anything. An empty store also returns ``[]``.
        """
        if k is not None and k <= 0:
            return []
        results = self.rank(self.embed_query(query), k)
        LOG.debug("Retrieved %d results (k=%s) for query %r", len(results), k, query[:80])
        return results

    def embed_query(self, query: str) -> EmbeddingVector:
        """Embed *query* after checking the store was built with the same model."""
        stored_model = self._store.stored_model()
        if stored_model is not None and stored_model != self._embed.model_name:
            raise EmbeddingFailure(
                f"Store was built with {stored_model!r} but queries use {self._embed.model_name!r}"
            )
        return self._embed.embed_one(query)

    def rank(self, query_vec: EmbeddingVector, k: Optional[int] = None) -> list[RankedResult]:
        """Rank stored documents against an already-embedded query."""
        if k is not None and k <= 0:
            return []
        return self._store.query_top_k(query_vec, k)
