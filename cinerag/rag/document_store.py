"""
Abstract document store interface with in-memory, SQLite, Chroma and
PostgreSQL/pgvector backends.

Every backend ranks by ``similarity = 1 - cosine_distance`` (range [-1, 1]),
highest first, ties broken by the order in which each id was first written.
Re-upserting an id replaces title, tags and embedding together and keeps the
original insertion position.

Index structures:
- memory, sqlite, pgvector: exact scan (no approximate index)
- chroma: HNSW approximate index. Top-k recall may drop below 100% on
  large collections; results are re-sorted locally so ordering and
  tie-breaks still follow the rules above for the rows that come back.

Writers never hold a lock across more than one document, so queries run
concurrently with ingestion and may or may not see a row that is being
written at the same moment.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import numpy as np

from cinerag.errors import DimensionMismatch, EmbeddingFailure, RecordRejected, StoreUnavailable
from cinerag.rag.types import Document, EmbeddingVector, RankedResult

LOG = logging.getLogger("rag.document_store")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


def cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row of *matrix* against *query*; zero vectors score 0."""
    denom = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    sims = np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)
    return np.clip(sims, -1.0, 1.0)


def rank_documents(docs: Sequence[Document], vector: EmbeddingVector, k: Optional[int]) -> list[RankedResult]:
    """
    Exact ranking of *docs* (given in insertion order) against *vector*.

    The stable argsort keeps insertion order among equal similarities.
    """
    if not docs or (k is not None and k <= 0):
        return []
    matrix = np.asarray([d.embedding for d in docs], dtype=np.float32)
    query = np.asarray(vector, dtype=np.float32)
    sims = cosine_similarities(matrix, query)
    order = np.argsort(-sims, kind="stable")
    if k is not None:
        order = order[:k]
    return [RankedResult(document=docs[i], similarity=float(sims[i])) for i in order]


class DocumentStore(ABC):
    """
    Abstract interface for document persistence and similarity search.

    Implementations persist ``(id, title, tags, embedding)`` rows keyed by id.
    """

    @abstractmethod
    def upsert(self, doc: Document) -> None:
        """
        Insert or atomically replace the row keyed by ``doc.id``.

        Raises:
            DimensionMismatch: the vector length disagrees with stored vectors
            RecordRejected: the backend refused this row (data, constraint or encoding error)
            StoreUnavailable: the backend is unreachable
        """

    @abstractmethod
    def query_top_k(self, vector: EmbeddingVector, k: Optional[int] = None) -> list[RankedResult]:
        """Rank stored documents against *vector*. ``k=None`` returns every row."""

    @abstractmethod
    def get(self, doc_id: str) -> Document | None:
        """Fetch a single document by id."""

    @abstractmethod
    def delete(self, ids: list[str]) -> None:
        """Delete documents by id."""

    @abstractmethod
    def count(self) -> int:
        """Return the number of stored documents."""

    @abstractmethod
    def dimension(self) -> Optional[int]:
        """Dimension of the stored vectors, or None while the store is empty."""

    @abstractmethod
    def stored_model(self) -> Optional[str]:
        """Name of the embedding model the stored vectors came from."""

    @abstractmethod
    def _set_stored_model(self, model_name: str) -> None:
        ...

    def upsert_many(self, docs: Sequence[Document]) -> None:
        for doc in docs:
            self.upsert(doc)

    def bind_model(self, model_name: str) -> None:
        """
        Record which embedding model populates this store.

        An empty store adopts *model_name*; a non-empty store built with a
        different model raises ``EmbeddingFailure``, because vectors from two
        models cannot be compared.
        """
        current = self.stored_model()
        if current == model_name:
            return
        if current is not None and self.count() > 0:
            raise EmbeddingFailure(
                f"Store was built with embedding model {current!r}, refusing vectors from {model_name!r}"
            )
        self._set_stored_model(model_name)

    def _check_dimension(self, vector: EmbeddingVector) -> None:
        expected = self.dimension()
        if expected is not None and len(vector) != expected:
            raise DimensionMismatch(expected, len(vector))

    def close(self) -> None:
        """Release resources. Override if needed."""
        pass


class InMemoryDocumentStore(DocumentStore):
    """Process-local store with exact scan. Used for tests and small catalogues."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, tuple[int, Document]] = {}
        self._next_seq = 0
        self._model: Optional[str] = None

    def _dimension_locked(self) -> Optional[int]:
        for _, doc in self._rows.values():
            return len(doc.embedding)
        return None

    def upsert(self, doc: Document) -> None:
        with self._lock:
            expected = self._dimension_locked()
            if expected is not None and len(doc.embedding) != expected:
                raise DimensionMismatch(expected, len(doc.embedding))
            existing = self._rows.get(doc.id)
            if existing is None:
                seq = self._next_seq
                self._next_seq += 1
            else:
                seq = existing[0]
            stored = Document(id=doc.id, title=doc.title, tags=tuple(doc.tags), embedding=list(doc.embedding))
            self._rows[doc.id] = (seq, stored)

    def query_top_k(self, vector: EmbeddingVector, k: Optional[int] = None) -> list[RankedResult]:
        if k is not None and k <= 0:
            return []
        with self._lock:
            snapshot = sorted(self._rows.values(), key=lambda item: item[0])
        if not snapshot:
            return []
        self._check_dimension(vector)
        return rank_documents([doc for _, doc in snapshot], vector, k)

    def get(self, doc_id: str) -> Document | None:
        with self._lock:
            row = self._rows.get(doc_id)
        return row[1] if row else None

    def delete(self, ids: list[str]) -> None:
        with self._lock:
            for doc_id in ids:
                self._rows.pop(doc_id, None)

    def count(self) -> int:
        with self._lock:
            return len(self._rows)

    def dimension(self) -> Optional[int]:
        with self._lock:
            return self._dimension_locked()

    def stored_model(self) -> Optional[str]:
        return self._model

    def _set_stored_model(self, model_name: str) -> None:
        self._model = model_name


_SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    genres TEXT NOT NULL,
    embedding BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS {table}_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteDocumentStore(DocumentStore):
    """
    SQLite-backed document store. Zero external services.

    Embeddings are stored as float32 BLOBs and ranked with an exact numpy
    scan. WAL mode lets readers proceed while an upsert commits; each thread
    gets its own connection.
    """

    def __init__(self, db_path: str | Path, table_name: str = "documents", timeout_s: float = 15.0) -> None:
        self._db_path = Path(db_path)
        self._table = _check_identifier(table_name)
        self._timeout_s = timeout_s
        self._local = threading.local()
        self._conns: list[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._conn()
            conn.executescript(_SQLITE_SCHEMA.format(table=self._table))
            conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailable(f"Cannot open SQLite store at {self._db_path}") from exc
        LOG.info("SQLite document store at %s (table %s)", self._db_path, self._table)

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self._db_path), timeout=self._timeout_s, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    @contextmanager
    def _guard(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"SQLite {action} failed") from exc

    def _get_meta(self, key: str) -> Optional[str]:
        with self._guard("meta read") as conn:
            row = conn.execute(f"SELECT value FROM {self._table}_meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    @staticmethod
    def _row_to_document(row: tuple[Any, ...]) -> Document:
        doc_id, title, genres, blob = row
        return Document(
            id=doc_id,
            title=title,
            tags=tuple(json.loads(genres)),
            embedding=np.frombuffer(blob, dtype=np.float32).tolist(),
        )

    def upsert(self, doc: Document) -> None:
        self._check_dimension(doc.embedding)
        blob = np.asarray(doc.embedding, dtype=np.float32).tobytes()
        with self._guard("upsert") as conn:
            try:
                with conn:
                    conn.execute(
                        f"INSERT INTO {self._table} (id, title, genres, embedding) VALUES (?, ?, ?, ?) "
                        "ON CONFLICT(id) DO UPDATE SET title = excluded.title, "
                        "genres = excluded.genres, embedding = excluded.embedding",
                        (doc.id, doc.title, json.dumps(list(doc.tags)), blob),
                    )
            except (UnicodeEncodeError, sqlite3.IntegrityError, sqlite3.DataError) as exc:
                raise RecordRejected(f"SQLite refused record {doc.id!r}") from exc

    def query_top_k(self, vector: EmbeddingVector, k: Optional[int] = None) -> list[RankedResult]:
        if k is not None and k <= 0:
            return []
        with self._guard("query") as conn:
            rows = conn.execute(f"SELECT id, title, genres, embedding FROM {self._table} ORDER BY seq").fetchall()
        if not rows:
            return []
        self._check_dimension(vector)
        return rank_documents([self._row_to_document(r) for r in rows], vector, k)

    def get(self, doc_id: str) -> Document | None:
        with self._guard("get") as conn:
            row = conn.execute(
                f"SELECT id, title, genres, embedding FROM {self._table} WHERE id = ?", (doc_id,)
            ).fetchone()
        return self._row_to_document(row) if row else None

    def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        with self._guard("delete") as conn:
            with conn:
                conn.executemany(f"DELETE FROM {self._table} WHERE id = ?", [(i,) for i in ids])

    def count(self) -> int:
        with self._guard("count") as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {self._table}").fetchone()[0]

    def dimension(self) -> Optional[int]:
        with self._guard("dimension") as conn:
            row = conn.execute(f"SELECT LENGTH(embedding) FROM {self._table} LIMIT 1").fetchone()
        return row[0] // 4 if row else None

    def stored_model(self) -> Optional[str]:
        return self._get_meta("model")

    def _set_stored_model(self, model_name: str) -> None:
        with self._guard("meta write") as conn:
            with conn:
                conn.execute(
                    f"INSERT INTO {self._table}_meta (key, value) VALUES ('model', ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (model_name,),
                )

    def close(self) -> None:
        with self._conns_lock:
            for conn in self._conns:
                conn.close()
            self._conns.clear()
        self._local = threading.local()


class ChromaDocumentStore(DocumentStore):
    """
    Chroma-based document store (approximate HNSW index, cosine space).

    Operates in three modes:
    - Embedded (PersistentClient): no server, local persistence
    - Client/server (HttpClient): when ``chroma_host`` is given
    - Ephemeral: neither given, in-memory

    Insertion order is kept in each row's ``seq`` metadata. The embedding
    model name is tracked per process only.
    """

    def __init__(
        self,
        collection_name: str = "documents",
        persist_directory: Optional[str] = None,
        chroma_host: Optional[str] = None,
        chroma_port: int = 8000,
    ) -> None:
        import chromadb

        try:
            if chroma_host:
                self._client = chromadb.HttpClient(host=chroma_host, port=chroma_port)
                LOG.info("Chroma: connected to %s:%d", chroma_host, chroma_port)
            elif persist_directory:
                Path(persist_directory).mkdir(parents=True, exist_ok=True)
                self._client = chromadb.PersistentClient(path=persist_directory)
                LOG.info("Chroma: persistent at %s", persist_directory)
            else:
                self._client = chromadb.Client()
                LOG.info("Chroma: ephemeral (in-memory)")

            self._collection = self._client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": "cosine"},
            )
            existing = self._collection.get(include=["metadatas"])
        except Exception as exc:
            raise StoreUnavailable(f"Cannot open Chroma collection {collection_name!r}") from exc

        seqs = [int(m.get("seq", -1)) for m in (existing.get("metadatas") or []) if m]
        self._next_seq = max(seqs, default=-1) + 1
        self._seq_lock = threading.Lock()
        self._dim: Optional[int] = None
        self._model: Optional[str] = None

    def _seq_for(self, doc_id: str) -> int:
        found = self._collection.get(ids=[doc_id], include=["metadatas"])
        metadatas = found.get("metadatas") or []
        if metadatas and metadatas[0] and "seq" in metadatas[0]:
            return int(metadatas[0]["seq"])
        with self._seq_lock:
            seq = self._next_seq
            self._next_seq += 1
        return seq

    @staticmethod
    def _to_document(doc_id: str, meta: dict[str, Any], embedding: Any) -> Document:
        return Document(
            id=doc_id,
            title=str(meta.get("title", "")),
            tags=tuple(json.loads(meta.get("genres", "[]"))),
            embedding=[float(x) for x in embedding] if embedding is not None else [],
        )

    def upsert(self, doc: Document) -> None:
        self._check_dimension(doc.embedding)
        try:
            seq = self._seq_for(doc.id)
            self._collection.upsert(
                ids=[doc.id],
                embeddings=[list(doc.embedding)],
                documents=[doc.content],
                metadatas=[{"title": doc.title, "genres": json.dumps(list(doc.tags)), "seq": seq}],
            )
        except (ValueError, TypeError) as exc:
            raise RecordRejected(f"Chroma refused record {doc.id!r}") from exc
        except Exception as exc:
            raise StoreUnavailable(f"Chroma upsert failed for {doc.id!r}") from exc
        self._dim = len(doc.embedding)

    def query_top_k(self, vector: EmbeddingVector, k: Optional[int] = None) -> list[RankedResult]:
        if k is not None and k <= 0:
            return []
        total = self.count()
        if total == 0:
            return []
        self._check_dimension(vector)
        n = total if k is None else min(k, total)
        try:
            results = self._collection.query(
                query_embeddings=[list(vector)],
                n_results=n,
                include=["metadatas", "distances", "embeddings"],
            )
        except Exception as exc:
            raise StoreUnavailable("Chroma query failed") from exc

        ranked: list[tuple[float, int, Document]] = []
        if results and results["ids"]:
            embeddings = results.get("embeddings")
            for i, doc_id in enumerate(results["ids"][0]):
                meta = results["metadatas"][0][i] or {}
                distance = float(results["distances"][0][i])
                emb = embeddings[0][i] if embeddings is not None else None
                similarity = max(-1.0, min(1.0, 1.0 - distance))
                ranked.append((similarity, int(meta.get("seq", 0)), self._to_document(doc_id, meta, emb)))
        ranked.sort(key=lambda item: (-item[0], item[1]))
        return [RankedResult(document=doc, similarity=sim) for sim, _, doc in ranked]

    def get(self, doc_id: str) -> Document | None:
        try:
            found = self._collection.get(ids=[doc_id], include=["metadatas", "embeddings"])
        except Exception as exc:
            raise StoreUnavailable("Chroma get failed") from exc
        if not found["ids"]:
            return None
        embeddings = found.get("embeddings")
        emb = embeddings[0] if embeddings is not None else None
        return self._to_document(found["ids"][0], found["metadatas"][0] or {}, emb)

    def delete(self, ids: list[str]) -> None:
        if ids:
            try:
                self._collection.delete(ids=ids)
            except Exception as exc:
                raise StoreUnavailable("Chroma delete failed") from exc

    def count(self) -> int:
        try:
            return self._collection.count()
        except Exception as exc:
            raise StoreUnavailable("Chroma count failed") from exc

    def dimension(self) -> Optional[int]:
        if self.count() == 0:
            return None
        if self._dim is None:
            sample = self._collection.get(limit=1, include=["embeddings"])
            embeddings = sample.get("embeddings")
            if embeddings is not None and len(embeddings):
                self._dim = len(embeddings[0])
        return self._dim

    def stored_model(self) -> Optional[str]:
        return self._model

    def _set_stored_model(self, model_name: str) -> None:
        self._model = model_name


_PG_SCHEMA = """
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS {table} (
    seq BIGSERIAL,
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    genres TEXT[] NOT NULL DEFAULT '{{}}',
    embedding {vector_type} NOT NULL
);

CREATE TABLE IF NOT EXISTS {table}_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class PgVectorDocumentStore(DocumentStore):
    """
    PostgreSQL + pgvector document store.

    Similarity is computed in SQL as ``1 - (embedding <=> query)`` over the
    whole table (exact scan, no ANN index). Connections come from a
    ``ThreadedConnectionPool``; ``statement_timeout`` bounds every query.
    """

    def __init__(
        self,
        dsn: str,
        table_name: str = "documents",
        dimension: Optional[int] = None,
        timeout_s: float = 15.0,
        minconn: int = 1,
        maxconn: int = 10,
    ) -> None:
        import psycopg2
        from psycopg2.pool import ThreadedConnectionPool

        self._psycopg2 = psycopg2
        self._table = _check_identifier(table_name)
        self._registered: set[int] = set()
        self._registered_lock = threading.Lock()
        try:
            self._pool = ThreadedConnectionPool(
                minconn,
                maxconn,
                dsn,
                connect_timeout=max(1, int(timeout_s)),
                options=f"-c statement_timeout={int(timeout_s * 1000)}",
            )
            vector_type = f"vector({int(dimension)})" if dimension else "vector"
            with self._cursor(register=False) as cur:
                cur.execute(_PG_SCHEMA.format(table=self._table, vector_type=vector_type))
        except psycopg2.Error as exc:
            raise StoreUnavailable("Cannot connect to PostgreSQL document store") from exc
        LOG.info("pgvector document store ready (table %s)", self._table)

    @contextmanager
    def _cursor(self, register: bool = True) -> Iterator[Any]:
        from pgvector.psycopg2 import register_vector

        psycopg2 = self._psycopg2
        try:
            conn = self._pool.getconn()
        except psycopg2.Error as exc:
            raise StoreUnavailable("No PostgreSQL connection available") from exc
        broken = False
        try:
            if register and id(conn) not in self._registered:
                register_vector(conn)
                with self._registered_lock:
                    self._registered.add(id(conn))
            with conn:
                with conn.cursor() as cur:
                    yield cur
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            broken = True
            raise StoreUnavailable("PostgreSQL connection lost") from exc
        except (psycopg2.DataError, psycopg2.IntegrityError) as exc:
            raise RecordRejected("PostgreSQL refused the row") from exc
        except psycopg2.Error as exc:
            raise StoreUnavailable("PostgreSQL statement failed") from exc
        finally:
            self._pool.putconn(conn, close=broken)
            if broken:
                with self._registered_lock:
                    self._registered.discard(id(conn))

    def _get_meta(self, key: str) -> Optional[str]:
        with self._cursor() as cur:
            cur.execute(f"SELECT value FROM {self._table}_meta WHERE key = %s", (key,))
            row = cur.fetchone()
        return row[0] if row else None

    @staticmethod
    def _row_to_document(row: tuple[Any, ...]) -> Document:
        doc_id, title, genres, embedding = row[:4]
        return Document(
            id=doc_id,
            title=title,
            tags=tuple(genres or ()),
            embedding=np.asarray(embedding, dtype=np.float32).tolist(),
        )

    def upsert(self, doc: Document) -> None:
        self._check_dimension(doc.embedding)
        with self._cursor() as cur:
            try:
                cur.execute(
                    f"INSERT INTO {self._table} (id, title, genres, embedding) VALUES (%s, %s, %s, %s) "
                    "ON CONFLICT (id) DO UPDATE SET title = EXCLUDED.title, "
                    "genres = EXCLUDED.genres, embedding = EXCLUDED.embedding",
                    (doc.id, doc.title, list(doc.tags), np.asarray(doc.embedding, dtype=np.float32)),
                )
            except ValueError as exc:
                # psycopg2 refuses NUL characters in string parameters
                raise RecordRejected(f"PostgreSQL refused record {doc.id!r}") from exc

    def query_top_k(self, vector: EmbeddingVector, k: Optional[int] = None) -> list[RankedResult]:
        if k is not None and k <= 0:
            return []
        if self.count() == 0:
            return []
        self._check_dimension(vector)
        sql = (
            f"SELECT id, title, genres, embedding, 1 - (embedding <=> %s) AS similarity "
            f"FROM {self._table} ORDER BY similarity DESC, seq ASC"
        )
        params: tuple[Any, ...] = (np.asarray(vector, dtype=np.float32),)
        if k is not None:
            sql += " LIMIT %s"
            params += (k,)
        with self._cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [
            RankedResult(document=self._row_to_document(row), similarity=max(-1.0, min(1.0, float(row[4]))))
            for row in rows
        ]

    def get(self, doc_id: str) -> Document | None:
        with self._cursor() as cur:
            cur.execute(f"SELECT id, title, genres, embedding FROM {self._table} WHERE id = %s", (doc_id,))
            row = cur.fetchone()
        return self._row_to_document(row) if row else None

    def delete(self, ids: list[str]) -> None:
        if ids:
            with self._cursor() as cur:
                cur.execute(f"DELETE FROM {self._table} WHERE id = ANY(%s)", (list(ids),))

    def count(self) -> int:
        with self._cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {self._table}")
            return cur.fetchone()[0]

    def dimension(self) -> Optional[int]:
        with self._cursor() as cur:
            cur.execute(f"SELECT vector_dims(embedding) FROM {self._table} LIMIT 1")
            row = cur.fetchone()
        return int(row[0]) if row else None

    def stored_model(self) -> Optional[str]:
        return self._get_meta("model")

    def _set_stored_model(self, model_name: str) -> None:
        with self._cursor() as cur:
            cur.execute(
                f"INSERT INTO {self._table}_meta (key, value) VALUES ('model', %s) "
                "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value",
                (model_name,),
            )

    def close(self) -> None:
        self._pool.closeall()


def build_document_store(backend: str = "sqlite", **kwargs: Any) -> DocumentStore:
    """
    Factory: create a DocumentStore of the requested type.

    Args:
        backend: "memory", "sqlite", "chroma" or "pgvector"
        **kwargs: Backend-specific configuration

    Raises:
        ValueError: Unknown backend
    """
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "sqlite":
        return SQLiteDocumentStore(**kwargs)
    if backend == "chroma":
        return ChromaDocumentStore(**kwargs)
    if backend == "pgvector":
        return PgVectorDocumentStore(**kwargs)
    raise ValueError(
        f"Unknown document store backend: {backend!r}. Supported: 'memory', 'sqlite', 'chroma', 'pgvector'"
    )
