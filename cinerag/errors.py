"""
Error taxonomy shared by every cinerag component.

Each component catches the exceptions of the library it wraps (sqlite3,
psycopg2, chromadb, httpx, pydantic) and re-raises one of these, chained
with ``from``. The boundary layer (``cinerag.tools.error_payload``) maps each
kind to a distinct status and a fixed message.
"""

from __future__ import annotations

from typing import Any


class CineragError(Exception):
    """Base exception for all cinerag errors."""

    pass


class EmbeddingFailure(CineragError):
    """Embedding model unavailable, inference failed, or wrong output dimension."""

    pass


class StoreUnavailable(CineragError):
    """Document store unreachable (connection loss, I/O error, timeout)."""

    pass


class RecordRejected(CineragError):
    """The store refused one record (bad data, constraint or encoding). The store itself is fine."""

    pass


class DimensionMismatch(CineragError):
    """A vector's length disagrees with the vectors already stored."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Vector dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class SourceUnreachable(CineragError):
    """The external record source could not be read."""

    pass


class InvalidRequest(CineragError):
    """Caller supplied an unusable parameter."""

    pass


class GenerationError(CineragError):
    """Base class for generation backend failures."""

    pass


class GenerationUnavailable(GenerationError):
    """Backend unreachable or timed out. Usually transient."""

    pass


class GenerationRejected(GenerationError):
    """Backend reachable but declined or errored on this input."""

    pass


class SchemaViolation(GenerationError):
    """Schema-constrained output failed validation."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []
