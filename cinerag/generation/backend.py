"""
Abstract generation backend.

Defines the GenerationBackend ABC, the shared HTTP plumbing for remote
backends, and MockGenerationBackend for testing. The cloud and local
backends live in separate modules (cloud_llm.py, local_llm.py); which one
is wired in is a deployment-time choice (``build_generation_backend``).

Every backend honours one call contract::

    answer = await backend.generate(context, query, schema=None)

With a ``SchemaDescriptor`` the raw answer is validated and returned as
normalized JSON; a malformed answer raises ``SchemaViolation`` instead of
reaching the caller.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from cinerag.errors import GenerationRejected, GenerationUnavailable
from cinerag.generation.schema import SchemaDescriptor

LOG = logging.getLogger("generation.backend")

PROMPT_TEMPLATE = """You are a movie assistant specialist.

data: {context}

question: {query}
"""

# 429 and 5xx are treated as transient; any other 4xx is a rejection of this input
_TRANSIENT_STATUS = frozenset({408, 429, 500, 502, 503, 504})


def build_prompt(context: str, query: str) -> str:
    """Single-message prompt for backends without a system role."""
    return PROMPT_TEMPLATE.format(context=context, query=query)


class GenerationBackend(abc.ABC):
    """Abstract base class for text generation backends."""

    name: str = "base"

    async def generate(self, context: str, query: str, schema: Optional[SchemaDescriptor] = None) -> str:
        """
        Produce an answer to *query* grounded in *context*.

        Raises:
            GenerationUnavailable: backend unreachable or timed out
            GenerationRejected: backend declined or returned nothing usable
            SchemaViolation: *schema* given and the answer does not satisfy it
        """
        raw = await self._complete(context, query, schema)
        if not raw or not raw.strip():
            raise GenerationRejected(f"{self.name} returned an empty answer")
        if schema is None:
            return raw.strip()
        return schema.validate_json(raw)

    @abc.abstractmethod
    async def _complete(self, context: str, query: str, schema: Optional[SchemaDescriptor]) -> str:
        """Return the backend's raw answer text."""
        ...

    async def close(self) -> None:
        """Clean up resources (e.g., HTTP clients). Override if needed."""
        pass


class HTTPGenerationBackend(GenerationBackend):
    """Shared httpx client, retry and error classification for remote backends."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        max_retries: int = 3,
        backoff_s: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url
        self._max_retries = max(1, max_retries)
        self._backoff_s = backoff_s
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def _post_json(self, path: str, body: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Any:
        """POST *body* and return the decoded JSON response, retrying transient failures."""
        last_exc: Optional[Exception] = None
        for attempt in range(self._max_retries):
            try:
                resp = await self._client.post(path, json=body, headers=headers)
            except httpx.TransportError as exc:
                last_exc = exc
                LOG.warning(
                    "%s unreachable (attempt %d/%d): %s",
                    self.name,
                    attempt + 1,
                    self._max_retries,
                    type(exc).__name__,
                )
            else:
                if resp.status_code < 400:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise GenerationRejected(f"{self.name} returned a non-JSON response body") from exc
                if resp.status_code not in _TRANSIENT_STATUS:
                    raise GenerationRejected(f"{self.name} rejected the request (HTTP {resp.status_code})")
                last_exc = httpx.HTTPStatusError(
                    f"HTTP {resp.status_code}", request=resp.request, response=resp
                )
                LOG.warning(
                    "%s returned HTTP %d (attempt %d/%d)",
                    self.name,
                    resp.status_code,
                    attempt + 1,
                    self._max_retries,
                )
            if attempt < self._max_retries - 1 and self._backoff_s > 0:
                await asyncio.sleep(self._backoff_s * 2**attempt)
        raise GenerationUnavailable(f"{self.name} unavailable after {self._max_retries} attempts") from last_exc

    async def close(self) -> None:
        await self._client.aclose()


class MockGenerationBackend(GenerationBackend):
    """
    Mock generation backend for testing.

    Returns canned responses in order, cycling if needed, and records every
    call. ``error`` makes every call raise that exception instead.
    """

    name = "mock"

    def __init__(self, responses: Optional[List[str]] = None, error: Optional[Exception] = None) -> None:
        self._responses = responses or []
        self._error = error
        self._calls: List[Dict[str, Any]] = []

    async def _complete(self, context: str, query: str, schema: Optional[SchemaDescriptor]) -> str:
        self._calls.append({"context": context, "query": query, "schema": schema.name if schema else None})
        if self._error is not None:
            raise self._error
        if self._responses:
            return self._responses[(len(self._calls) - 1) % len(self._responses)]
        first = context.splitlines()[0] if context else "nothing relevant"
        return f"Based on the catalogue, try: {first}"

    @property
    def call_count(self) -> int:
        return len(self._calls)

    @property
    def calls(self) -> List[Dict[str, Any]]:
        return list(self._calls)


def build_generation_backend(backend: str = "mock", **kwargs: Any) -> GenerationBackend:
    """
    Factory: create a GenerationBackend of the requested type.

    Args:
        backend: "gemini", "ollama" or "mock"
        **kwargs: Backend-specific configuration

    Raises:
        ValueError: Unknown backend
    """
    if backend == "gemini":
        from cinerag.generation.cloud_llm import GeminiGenerationBackend

        return GeminiGenerationBackend(**kwargs)
    if backend == "ollama":
        from cinerag.generation.local_llm import OllamaGenerationBackend

        return OllamaGenerationBackend(**kwargs)
    if backend == "mock":
        return MockGenerationBackend(**kwargs)
    raise ValueError(f"Unknown generation backend: {backend!r}. Supported: 'gemini', 'ollama', 'mock'")
