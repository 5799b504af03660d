"""Ingestion: record sources and the batch pipeline that fills the document store."""

from __future__ import annotations

from cinerag.ingestion.pipeline import IngestFailure, IngestionPipeline, IngestReport
from cinerag.ingestion.sources import (
    CsvRecordSource,
    PostgresRecordSource,
    RecordSource,
    SQLiteRecordSource,
    StaticRecordSource,
    build_record_source,
)

__all__ = [
    "CsvRecordSource",
    "IngestFailure",
    "IngestReport",
    "IngestionPipeline",
    "PostgresRecordSource",
    "RecordSource",
    "SQLiteRecordSource",
    "StaticRecordSource",
    "build_record_source",
]
