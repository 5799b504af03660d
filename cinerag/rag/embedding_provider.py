"""
Embedding provider abstraction with local sentence-transformers backend.

Pooling policy is fixed for every provider: mean-pool token vectors, then
L2-normalize. Stored document vectors and query vectors must be produced
the same way or their cosine similarities are meaningless.

The local model is a process-wide resource: ``get_shared_provider`` loads it
once under a lock and every inference call is serialized.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from cinerag.errors import EmbeddingFailure
from cinerag.rag.types import EmbeddingVector

LOG = logging.getLogger("rag.embedding_provider")

_TOKEN_RE = re.compile(r"\w+")


def normalize_vector(vec: np.ndarray) -> np.ndarray:
    """
    L2-normalize a vector to unit length.

    A zero-norm (or non-finite) vector maps to the uniform unit vector, so
    every provider output satisfies ``|v| == 1`` and ranks deterministically.
    """
    vec = np.asarray(vec, dtype=np.float32)
    norm = float(np.linalg.norm(vec))
    if not np.isfinite(norm) or norm == 0.0:
        dim = vec.shape[0]
        return np.full(dim, 1.0 / np.sqrt(dim), dtype=np.float32)
    return (vec / norm).astype(np.float32)


class EmbeddingProvider(ABC):
    """Abstract interface for text -> embedding vector conversion."""

    @abstractmethod
    def embed(self, texts: list[str]) -> list[EmbeddingVector]:
        """
        Convert a batch of texts into unit-length embedding vectors.

        Returns a list of float vectors, one per input text.
        """
        ...

    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimensionality."""
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Identifier of the model that produced the vectors."""
        ...

    def embed_one(self, text: str) -> EmbeddingVector:
        vectors = self.embed([text])
        if len(vectors) != 1:
            raise EmbeddingFailure(f"Provider returned {len(vectors)} vectors for one text")
        return vectors[0]

    def _check_dimension(self, vectors: list[EmbeddingVector]) -> None:
        dim = self.dimension()
        for vec in vectors:
            if len(vec) != dim:
                raise EmbeddingFailure(f"Model {self.model_name} returned dimension {len(vec)}, expected {dim}")


class LocalEmbeddingProvider(EmbeddingProvider):
    """
    Local embedding via sentence-transformers.

    The model is assembled from explicit modules (Transformer -> mean Pooling
    -> Normalize) so the pooling policy does not depend on whatever pooling
    config ships with the checkpoint.

    Default model: all-MiniLM-L6-v2 (384 dimensions).
    """

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        expected_dim: Optional[int] = None,
    ) -> None:
        self._model_name = model_name
        self._lock = threading.Lock()
        LOG.info("Loading embedding model: %s", model_name)
        try:
            from sentence_transformers import SentenceTransformer, models

            word = models.Transformer(model_name)
            pooling = models.Pooling(word.get_word_embedding_dimension(), pooling_mode="mean")
            self._model = SentenceTransformer(modules=[word, pooling, models.Normalize()])
        except Exception as exc:
            raise EmbeddingFailure(f"Embedding model {model_name!r} unavailable") from exc

        self._dim = self._model.get_sentence_embedding_dimension()
        if expected_dim is not None and self._dim != expected_dim:
            raise EmbeddingFailure(
                f"Model {model_name} produces {self._dim}-dim vectors but EMBED_DIM is {expected_dim}"
            )

    @property
    def model_name(self) -> str:
        return self._model_name

    def embed(self, texts: list[str]) -> list[EmbeddingVector]:
        if not texts:
            return []
        try:
            with self._lock:
                raw = self._model.encode(texts, show_progress_bar=False, convert_to_numpy=True)
        except Exception as exc:
            raise EmbeddingFailure(f"Embedding inference failed for batch of {len(texts)}") from exc
        vectors = [normalize_vector(row).tolist() for row in np.atleast_2d(raw)]
        self._check_dimension(vectors)
        return vectors

    def dimension(self) -> int:
        return self._dim


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic embedding provider for tests and offline runs.

    Each token is hashed to a signed one-hot vector; token vectors are
    mean-pooled and L2-normalized, the same policy as the local model.
    Texts sharing tokens therefore have positive similarity.
    """

    def __init__(self, dim: int = 384, model_name: str = "mock-hash") -> None:
        self._dim = dim
        self._model_name = model_name

    @property
    def model_name(self) -> str:
        return self._model_name

    def _token_vector(self, token: str) -> np.ndarray:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        bucket = int.from_bytes(digest[:4], "little") % self._dim
        sign = 1.0 if digest[4] & 1 else -1.0
        vec = np.zeros(self._dim, dtype=np.float32)
        vec[bucket] = sign
        return vec

    def embed(self, texts: list[str]) -> list[EmbeddingVector]:
        out: list[EmbeddingVector] = []
        for text in texts:
            tokens = _TOKEN_RE.findall(text.lower())
            if tokens:
                pooled = np.mean([self._token_vector(t) for t in tokens], axis=0)
            else:
                pooled = np.zeros(self._dim, dtype=np.float32)
            out.append(normalize_vector(pooled).tolist())
        return out

    def dimension(self) -> int:
        return self._dim


_PROVIDER_LOCK = threading.Lock()
_shared_providers: dict[str, EmbeddingProvider] = {}


def get_shared_provider(
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
    expected_dim: Optional[int] = None,
) -> EmbeddingProvider:
    """
    Return the process-wide ``LocalEmbeddingProvider`` for *model_name*.

    The model is loaded at most once per process; concurrent first calls
    block on the lock instead of loading twice.
    """
    provider = _shared_providers.get(model_name)
    if provider is None:
        with _PROVIDER_LOCK:
            provider = _shared_providers.get(model_name)
            if provider is None:
                provider = LocalEmbeddingProvider(model_name, expected_dim=expected_dim)
                _shared_providers[model_name] = provider
    if expected_dim is not None and provider.dimension() != expected_dim:
        raise EmbeddingFailure(
            f"Model {model_name} produces {provider.dimension()}-dim vectors but EMBED_DIM is {expected_dim}"
        )
    return provider


def build_embedding_provider(
    provider: str = "local",
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
    embed_dim: Optional[int] = None,
) -> EmbeddingProvider:
    """
    Factory: create an EmbeddingProvider of the requested type.

    Raises:
        ValueError: Unknown provider
    """
    if provider == "local":
        return get_shared_provider(model_name, expected_dim=embed_dim)
    if provider == "mock":
        return MockEmbeddingProvider(dim=embed_dim or 384)
    raise ValueError(f"Unknown embedding provider: {provider!r}. Supported: 'local', 'mock'")
