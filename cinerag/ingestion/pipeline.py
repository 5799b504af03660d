"""
Ingestion pipeline: source records -> embeddings -> document store.

Records are embedded in batches. When a batch fails, its records are
re-embedded one at a time so a single bad record only costs itself. Upserts
are keyed by id, so re-running the pipeline overwrites rather than
duplicates.

No lock is held across a run: queries issued while ingestion is in progress
may see some of the new rows and not others.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from cinerag.errors import DimensionMismatch, EmbeddingFailure, RecordRejected
from cinerag.ingestion.sources import RecordSource
from cinerag.rag.document_store import DocumentStore
from cinerag.rag.embedding_provider import EmbeddingProvider
from cinerag.rag.types import Document, EmbeddingVector, SourceRecord

LOG = logging.getLogger("ingestion.pipeline")


@dataclass(frozen=True)
class IngestFailure:
    """One record that could not be stored, and why."""

    id: str
    reason: str


@dataclass
class IngestReport:
    """Outcome of an ingestion run."""

    succeeded: int = 0
    failed: list[IngestFailure] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def total(self) -> int:
        return self.succeeded + len(self.failed)


def _batched(records: Iterable[SourceRecord], size: int) -> Iterator[list[SourceRecord]]:
    batch: list[SourceRecord] = []
    for record in records:
        batch.append(record)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def _invalid_reason(record: SourceRecord) -> Optional[str]:
    if not record.id:
        return "invalid record: missing id"
    if not record.title:
        return "invalid record: missing title"
    return None


class IngestionPipeline:
    """
    Batch loader from a RecordSource into a DocumentStore.

    Per-record problems (embedding failure, dimension mismatch, a row the
    store refuses, an invalid record) are collected in the report.
    ``StoreUnavailable`` aborts the run.
    """

    def __init__(
        self,
        source: RecordSource,
        store: DocumentStore,
        embedding_provider: EmbeddingProvider,
        batch_size: int = 32,
        log_every: int = 500,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._source = source
        self._store = store
        self._embed = embedding_provider
        self._batch_size = batch_size
        self._log_every = max(1, log_every)

    def ingest_all(self) -> IngestReport:
        """
        Read every source record, embed it and upsert it.

        Raises:
            SourceUnreachable: the source cannot be read
            StoreUnavailable: the store failed mid-run
            EmbeddingFailure: the store was built with a different model
        """
        start = time.perf_counter()
        report = IngestReport()
        self._store.bind_model(self._embed.model_name)

        processed = 0
        next_log = self._log_every
        for batch in _batched(self._source.fetch(), self._batch_size):
            valid: list[SourceRecord] = []
            for record in batch:
                reason = _invalid_reason(record)
                if reason:
                    self._fail(report, record.id, reason)
                else:
                    valid.append(record)

            for record, vector in self._embed_batch(valid, report):
                try:
                    self._store.upsert(Document.from_record(record, vector))
                except (DimensionMismatch, RecordRejected) as exc:
                    self._fail(report, record.id, str(exc))
                    continue
                report.succeeded += 1

            processed += len(batch)
            if processed >= next_log:
                LOG.info("Ingestion progress: %d records processed (%d stored)", processed, report.succeeded)
                next_log += self._log_every

        report.duration_ms = int((time.perf_counter() - start) * 1000)
        LOG.info(
            "Ingestion from %s finished: %d stored, %d failed in %d ms",
            self._source.describe(),
            report.succeeded,
            len(report.failed),
            report.duration_ms,
        )
        return report

    def _embed_batch(
        self, records: list[SourceRecord], report: IngestReport
    ) -> list[tuple[SourceRecord, EmbeddingVector]]:
        if not records:
            return []
        try:
            vectors = self._embed.embed([r.content for r in records])
            if len(vectors) != len(records):
                raise EmbeddingFailure(f"Provider returned {len(vectors)} vectors for {len(records)} texts")
            return list(zip(records, vectors))
        except EmbeddingFailure as exc:
            if len(records) == 1:
                self._fail(report, records[0].id, str(exc))
                return []
            LOG.warning("Batch of %d failed to embed (%s); retrying per record", len(records), exc)

        embedded: list[tuple[SourceRecord, EmbeddingVector]] = []
        for record in records:
            try:
                embedded.append((record, self._embed.embed_one(record.content)))
            except EmbeddingFailure as exc:
                self._fail(report, record.id, str(exc))
        return embedded

    @staticmethod
    def _fail(report: IngestReport, record_id: str, reason: str) -> None:
        LOG.warning("Skipping record %r: %s", record_id, reason)
        report.failed.append(IngestFailure(id=record_id, reason=reason))


__all__ = ["IngestFailure", "IngestReport", "IngestionPipeline"]
