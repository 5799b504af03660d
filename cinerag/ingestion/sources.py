"""
Record sources: the external catalogue the ingestion pipeline reads from.

Every source yields ``SourceRecord`` objects and is read-only. The table
contract is ``show_id, title, listed_in`` where ``listed_in`` holds the
comma-separated genres. Any failure to open or read the source raises
``SourceUnreachable``.
"""

from __future__ import annotations

import csv
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Iterator

import psycopg2

from cinerag.errors import SourceUnreachable
from cinerag.rag.document_store import _check_identifier
from cinerag.rag.types import SourceRecord, split_tags

LOG = logging.getLogger("ingestion.sources")

ID_COLUMN = "show_id"
TITLE_COLUMN = "title"
GENRES_COLUMN = "listed_in"


def _record_from_row(show_id: Any, title: Any, genres: Any) -> SourceRecord:
    return SourceRecord(
        id="" if show_id is None else str(show_id).strip(),
        title="" if title is None else str(title).strip(),
        tags=split_tags(genres),
    )


class RecordSource(ABC):
    """Abstract interface for the external record catalogue."""

    @abstractmethod
    def fetch(self) -> Iterator[SourceRecord]:
        """
        Yield every record in the source.

        Raises:
            SourceUnreachable: the source cannot be opened or read
        """
        ...

    def describe(self) -> str:
        return type(self).__name__


class StaticRecordSource(RecordSource):
    """In-process list of records. Used by tests and small fixtures."""

    def __init__(self, records: Iterable[SourceRecord]) -> None:
        self._records = list(records)

    def fetch(self) -> Iterator[SourceRecord]:
        return iter(list(self._records))


class CsvRecordSource(RecordSource):
    """CSV dump of the catalogue (the public ``netflix_titles.csv`` layout)."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def describe(self) -> str:
        return f"csv:{self._path}"

    def fetch(self) -> Iterator[SourceRecord]:
        try:
            with self._path.open(newline="", encoding="utf-8") as fh:
                reader = csv.DictReader(fh)
                missing = {ID_COLUMN, TITLE_COLUMN, GENRES_COLUMN} - set(reader.fieldnames or ())
                if missing:
                    raise SourceUnreachable(f"{self._path} is missing columns: {sorted(missing)}")
                rows = [_record_from_row(row[ID_COLUMN], row[TITLE_COLUMN], row[GENRES_COLUMN]) for row in reader]
        except (OSError, csv.Error, UnicodeDecodeError) as exc:
            raise SourceUnreachable(f"Cannot read CSV source {self._path}") from exc
        LOG.debug("Read %d records from %s", len(rows), self._path)
        return iter(rows)


class SQLiteRecordSource(RecordSource):
    """Catalogue table in a SQLite database."""

    def __init__(self, db_path: str | Path, table: str = "movies") -> None:
        self._db_path = Path(db_path)
        self._table = _check_identifier(table)

    def describe(self) -> str:
        return f"sqlite:{self._db_path}/{self._table}"

    def fetch(self) -> Iterator[SourceRecord]:
        if not self._db_path.exists():
            raise SourceUnreachable(f"SQLite source not found: {self._db_path}")
        try:
            conn = sqlite3.connect(f"file:{self._db_path}?mode=ro", uri=True)
            try:
                rows = conn.execute(
                    f"SELECT {ID_COLUMN}, {TITLE_COLUMN}, {GENRES_COLUMN} FROM {self._table}"
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise SourceUnreachable(f"Cannot read {self._table} from {self._db_path}") from exc
        return iter([_record_from_row(*row) for row in rows])


class PostgresRecordSource(RecordSource):
    """Catalogue table in PostgreSQL, read with psycopg2."""

    def __init__(self, dsn: str, table: str = "movies", connect_timeout: int = 10) -> None:
        self._dsn = dsn
        self._table = _check_identifier(table)
        self._connect_timeout = connect_timeout

    def describe(self) -> str:
        return f"postgres:{self._table}"

    def fetch(self) -> Iterator[SourceRecord]:
        if not self._dsn:
            raise SourceUnreachable("No PostgreSQL DSN configured for the record source")
        try:
            conn = psycopg2.connect(self._dsn, connect_timeout=self._connect_timeout)
        except psycopg2.Error as exc:
            raise SourceUnreachable("Cannot connect to the PostgreSQL record source") from exc
        try:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {ID_COLUMN}, {TITLE_COLUMN}, {GENRES_COLUMN} AS genres FROM {self._table}"
                )
                rows = cur.fetchall()
        except psycopg2.Error as exc:
            raise SourceUnreachable(f"Cannot read {self._table} from PostgreSQL") from exc
        finally:
            conn.close()
        return iter([_record_from_row(*row) for row in rows])


def build_record_source(backend: str = "csv", **kwargs: Any) -> RecordSource:
    """
    Factory: create a RecordSource of the requested type.

    Args:
        backend: "csv", "sqlite" or "postgres"
        **kwargs: Source-specific configuration

    Raises:
        ValueError: Unknown backend
    """
    if backend == "csv":
        return CsvRecordSource(**kwargs)
    if backend == "sqlite":
        return SQLiteRecordSource(**kwargs)
    if backend == "postgres":
        return PostgresRecordSource(**kwargs)
    raise ValueError(f"Unknown record source: {backend!r}. Supported: 'csv', 'sqlite', 'postgres'")
