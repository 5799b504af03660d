from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

from cinerag.config import AppConfig
from cinerag.errors import (
    DimensionMismatch,
    EmbeddingFailure,
    GenerationRejected,
    GenerationUnavailable,
    InvalidRequest,
    RecordRejected,
    SchemaViolation,
    SourceUnreachable,
    StoreUnavailable,
)
from cinerag.generation.backend import GenerationBackend, build_generation_backend
from cinerag.generation.schema import SchemaDescriptor, get_schema
from cinerag.ingestion.pipeline import IngestionPipeline
from cinerag.ingestion.sources import RecordSource, build_record_source
from cinerag.models import AnswerResponse, ErrorResponse, IngestFailureModel, IngestResponse, SearchHit
from cinerag.rag.context import ContextAssembler
from cinerag.rag.document_store import DocumentStore, build_document_store
from cinerag.rag.embedding_provider import EmbeddingProvider, build_embedding_provider
from cinerag.rag.search import RetrievalEngine
from cinerag.rag.types import RankedResult

LOG = logging.getLogger("cinerag.tools")

T = TypeVar("T")

# (status, message) per error kind; first isinstance match wins, so subclasses come first
_ERROR_STATUS: Tuple[Tuple[Type[BaseException], int, str], ...] = (
    (InvalidRequest, 400, "Invalid request"),
    (SchemaViolation, 422, "Generated answer did not match the required output schema"),
    (GenerationRejected, 502, "Generation backend rejected the request"),
    (GenerationUnavailable, 504, "Generation backend is unavailable"),
    (DimensionMismatch, 409, "Embedding dimension does not match the document store"),
    (EmbeddingFailure, 503, "Embedding model is unavailable"),
    (StoreUnavailable, 503, "Document store is unavailable"),
    (RecordRejected, 500, "Document store rejected a record"),
    (SourceUnreachable, 500, "Record source is unreachable"),
)


def error_payload(exc: BaseException) -> Tuple[int, Dict[str, str]]:
    """
    Map an exception to ``(status, {"error": message})``.

    Messages are fixed per error kind; exception text never reaches the
    caller, except the validation message of an ``InvalidRequest``.
    """
    for exc_type, status, message in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            if exc_type is InvalidRequest and str(exc):
                message = f"{message}: {exc}"
            return status, ErrorResponse(error=message).model_dump()
    LOG.error("Unhandled error at the boundary", exc_info=exc)
    return 500, ErrorResponse(error="Internal error").model_dump()


@dataclass
class RagService:
    """Wired components behind the boundary operations."""

    config: AppConfig
    embedding_provider: EmbeddingProvider
    store: DocumentStore
    source: RecordSource
    generator: GenerationBackend
    schema: Optional[SchemaDescriptor] = None

    def __post_init__(self) -> None:
        self.engine = RetrievalEngine(self.store, self.embedding_provider)
        self.assembler = ContextAssembler(
            max_documents=self.config.retrieval.max_context_docs,
            max_chars=self.config.retrieval.max_context_chars,
        )

    @classmethod
    def from_config(cls, config: AppConfig) -> "RagService":
        emb = config.embedding
        return cls(
            config=config,
            embedding_provider=build_embedding_provider(emb.provider, emb.model_name, emb.embed_dim),
            store=build_document_store(config.store.backend, **config.store.backend_kwargs()),
            source=build_record_source(config.source.backend, **config.source.backend_kwargs()),
            generator=build_generation_backend(config.generation.backend, **config.generation.backend_kwargs()),
            schema=get_schema(config.generation.schema),
        )

    def pipeline(self) -> IngestionPipeline:
        return IngestionPipeline(
            self.source,
            self.store,
            self.embedding_provider,
            batch_size=self.config.embedding.batch_size,
        )

    async def close(self) -> None:
        await self.generator.close()
        self.store.close()


_SERVICE_LOCK = threading.Lock()
_service: Optional[RagService] = None


def get_service() -> RagService:
    """Return the process-wide service, building it from the environment on first use."""
    global _service
    if _service is None:
        with _SERVICE_LOCK:
            if _service is None:
                _service = RagService.from_config(AppConfig.from_env())
    return _service


async def _resolve(service: Optional[RagService]) -> RagService:
    """The given service, or the process-wide one built off the event loop."""
    if service is not None:
        return service
    return await asyncio.to_thread(get_service)


def set_service(service: Optional[RagService]) -> None:
    """Install (or clear, with None) the process-wide service."""
    global _service
    with _SERVICE_LOCK:
        _service = service


async def _run_stage(
    func: Callable[..., T],
    *args: Any,
    timeout: Optional[float],
    on_timeout: Type[Exception],
    stage: str,
) -> T:
    """Run blocking *func* off the event loop; a timeout raises *on_timeout*."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise on_timeout(f"{stage} timed out after {timeout}s") from exc


def _hits(results: list[RankedResult]) -> list[SearchHit]:
    return [SearchHit(**r.to_dict()) for r in results]


def _require_query(query: Optional[str]) -> str:
    if query is None or not isinstance(query, str) or not query.strip():
        raise InvalidRequest("query must be a non-empty string")
    return query.strip()


def _check_k(k: Optional[int]) -> Optional[int]:
    if k is not None and (isinstance(k, bool) or not isinstance(k, int)):
        raise InvalidRequest("k must be an integer")
    return k


async def _retrieve(service: RagService, query: str, k: Optional[int]) -> list[RankedResult]:
    if k is not None and k <= 0:
        return []
    vector = await _run_stage(
        service.engine.embed_query,
        query,
        timeout=service.config.embedding.timeout_s,
        on_timeout=EmbeddingFailure,
        stage="embedding",
    )
    return await _run_stage(
        service.engine.rank,
        vector,
        k,
        timeout=service.config.store.timeout_s,
        on_timeout=StoreUnavailable,
        stage="document store query",
    )


async def ingest_documents(service: Optional[RagService] = None) -> IngestResponse:
    """Re-ingest the whole record source into the document store."""
    service = await _resolve(service)
    report = await asyncio.to_thread(service.pipeline().ingest_all)
    return IngestResponse(
        succeeded=report.succeeded,
        failed=[IngestFailureModel(id=f.id, reason=f.reason) for f in report.failed],
        durationMs=report.duration_ms,
    )


async def search_documents(
    query: Optional[str], k: Optional[int] = None, service: Optional[RagService] = None
) -> list[SearchHit]:
    """
    Rank stored documents against *query*.

    ``k=None`` uses the configured search depth (5 unless ``RAG_TOP_K`` says
    otherwise; ``RAG_TOP_K=all`` returns the whole store ranked).
    """
    query = _require_query(query)
    k = _check_k(k)
    service = await _resolve(service)
    if k is None:
        k = service.config.retrieval.top_k
    results = await _retrieve(service, query, k)
    LOG.info("search k=%s returned %d hits", k, len(results))
    return _hits(results)


async def answer_query(
    query: Optional[str] = None, k: Optional[int] = None, service: Optional[RagService] = None
) -> AnswerResponse:
    """
    Retrieve context for *query* and generate an answer with the configured backend.

    ``query=None`` uses the configured default query, or the backend's
    built-in question when none is configured; ``k=None`` uses the
    configured answer depth (unbounded unless set), and the context
    assembler caps what reaches the backend.
    """
    service = await _resolve(service)
    if query is None:
        query = service.config.generation.resolved_default_query()
    query = _require_query(query)
    k = _check_k(k)
    if k is None:
        k = service.config.retrieval.answer_top_k

    results = await _retrieve(service, query, k)
    context, used = service.assembler.assemble_with_count(results)
    timeout = service.config.generation.timeout_s
    try:
        answer = await asyncio.wait_for(
            service.generator.generate(context, query, schema=service.schema), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        raise GenerationUnavailable(f"generation timed out after {timeout}s") from exc

    LOG.info(
        "answer via %s from %d retrieved documents (%d context chars)",
        service.generator.name,
        len(results),
        len(context),
    )
    return AnswerResponse(
        query=query,
        answer=answer,
        backend=service.generator.name,
        schemaName=service.schema.name if service.schema else None,
        sources=_hits(results[:used]),
    )
