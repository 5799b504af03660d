"""Configuration management for cinerag.

Loads settings from environment variables with sensible defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_CLOUD_QUERY = "Summarize, recommend movie titles that are dramas?, it so popular"
DEFAULT_LOCAL_QUERY = "can you recommend the greatest movies of all time?"


def default_query_for(backend: str) -> str:
    """Built-in default question for a generation backend."""
    return DEFAULT_LOCAL_QUERY if backend == "ollama" else DEFAULT_CLOUD_QUERY


def _optional_int(raw: str) -> Optional[int]:
    """Parse an int setting where ``all``/``none``/empty means unbounded."""
    if raw.strip().lower() in ("", "all", "none"):
        return None
    return int(raw)


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration."""

    provider: str = "local"  # "local", "mock"
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    embed_dim: int = 384
    batch_size: int = 32
    timeout_s: float = 30.0

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        return cls(
            provider=os.getenv("EMBEDDING_PROVIDER", "local"),
            model_name=os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"),
            embed_dim=int(os.getenv("EMBED_DIM", "384")),
            batch_size=int(os.getenv("EMBED_BATCH_SIZE", "32")),
            timeout_s=float(os.getenv("EMBED_TIMEOUT_S", "30")),
        )


@dataclass
class StoreConfig:
    """Document store configuration."""

    backend: str = "sqlite"  # "sqlite", "memory", "chroma", "pgvector"
    sqlite_path: str = "./data/cinerag.db"
    pg_dsn: str = ""
    chroma_persist_dir: str = "./data/chroma"
    chroma_host: str = ""  # empty = embedded mode
    chroma_port: int = 8000
    table_name: str = "documents"
    timeout_s: float = 15.0

    @classmethod
    def from_env(cls) -> "StoreConfig":
        return cls(
            backend=os.getenv("DOCUMENT_STORE_BACKEND", "sqlite"),
            sqlite_path=os.getenv("SQLITE_PATH", "./data/cinerag.db"),
            pg_dsn=os.getenv("PG_DSN", "") or _dsn_from_libpq_env(),
            chroma_persist_dir=os.getenv("CHROMA_PERSIST_DIR", "./data/chroma"),
            chroma_host=os.getenv("CHROMA_HOST", ""),
            chroma_port=int(os.getenv("CHROMA_PORT", "8000")),
            table_name=os.getenv("DOCUMENTS_TABLE", "documents"),
            timeout_s=float(os.getenv("STORE_TIMEOUT_S", "15")),
        )

    def backend_kwargs(self) -> dict:
        """Keyword arguments for ``build_document_store`` matching ``backend``."""
        if self.backend == "sqlite":
            return {"db_path": self.sqlite_path, "table_name": self.table_name}
        if self.backend == "pgvector":
            return {"dsn": self.pg_dsn, "table_name": self.table_name, "timeout_s": self.timeout_s}
        if self.backend == "chroma":
            return {
                "collection_name": self.table_name,
                "persist_directory": self.chroma_persist_dir or None,
                "chroma_host": self.chroma_host or None,
                "chroma_port": self.chroma_port,
            }
        return {}


@dataclass
class SourceConfig:
    """External record source configuration."""

    backend: str = "csv"  # "csv", "sqlite", "postgres"
    path: str = "./data/netflix_titles.csv"
    dsn: str = ""
    table: str = "movies"

    @classmethod
    def from_env(cls) -> "SourceConfig":
        return cls(
            backend=os.getenv("SOURCE_BACKEND", "csv"),
            path=os.getenv("SOURCE_PATH", "./data/netflix_titles.csv"),
            dsn=os.getenv("SOURCE_DSN", "") or _dsn_from_libpq_env(),
            table=os.getenv("SOURCE_TABLE", "movies"),
        )

    def backend_kwargs(self) -> dict:
        if self.backend == "postgres":
            return {"dsn": self.dsn, "table": self.table}
        if self.backend == "sqlite":
            return {"db_path": self.path, "table": self.table}
        return {"path": self.path}


@dataclass
class RetrievalConfig:
    """Retrieval and context assembly configuration."""

    top_k: Optional[int] = 5
    answer_top_k: Optional[int] = None  # None = rank the whole corpus
    max_context_docs: int = 20
    max_context_chars: int = 8000

    @classmethod
    def from_env(cls) -> "RetrievalConfig":
        return cls(
            top_k=_optional_int(os.getenv("RAG_TOP_K", "5")),
            answer_top_k=_optional_int(os.getenv("RAG_ANSWER_TOP_K", "all")),
            max_context_docs=int(os.getenv("RAG_MAX_CONTEXT_DOCS", "20")),
            max_context_chars=int(os.getenv("RAG_MAX_CONTEXT_CHARS", "8000")),
        )


@dataclass
class GenerationConfig:
    """Generation backend configuration. The backend is chosen per deployment."""

    backend: str = "mock"  # "gemini", "ollama", "mock"
    schema: str = "none"  # "none", "movie"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"
    timeout_s: float = 60.0
    default_query: str = ""  # empty means the backend's built-in question

    @classmethod
    def from_env(cls) -> "GenerationConfig":
        backend = os.getenv("GENERATION_BACKEND", "mock")
        return cls(
            backend=backend,
            schema=os.getenv("GENERATION_SCHEMA", "none"),
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-1.5-flash"),
            ollama_url=os.getenv("OLLAMA_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL", "llama3.2"),
            timeout_s=float(os.getenv("GENERATION_TIMEOUT_S", "60")),
            default_query=os.getenv("DEFAULT_QUERY", default_query_for(backend)),
        )

    def resolved_default_query(self) -> str:
        return self.default_query or default_query_for(self.backend)

    def backend_kwargs(self) -> dict:
        if self.backend == "gemini":
            return {"api_key": self.gemini_api_key, "model": self.gemini_model, "timeout": self.timeout_s}
        if self.backend == "ollama":
            return {"base_url": self.ollama_url, "model": self.ollama_model, "timeout": self.timeout_s}
        return {}


@dataclass
class AppConfig:
    """Top-level application configuration."""

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            embedding=EmbeddingConfig.from_env(),
            store=StoreConfig.from_env(),
            source=SourceConfig.from_env(),
            retrieval=RetrievalConfig.from_env(),
            generation=GenerationConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def _dsn_from_libpq_env() -> str:
    """Build a libpq DSN from the PG* variables, or "" when PGHOST is unset."""
    host = os.getenv("PGHOST", "")
    if not host:
        return ""
    parts = [f"host={host}"]
    for env_name, key in (("PGPORT", "port"), ("PGDATABASE", "dbname"), ("PGUSER", "user"), ("PGPASSWORD", "password")):
        value = os.getenv(env_name)
        if value:
            parts.append(f"{key}={value}")
    return " ".join(parts)
