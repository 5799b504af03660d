"""
Core data models for the retrieval subsystem.

Dataclasses only; the boundary layer converts them to pydantic models
(``cinerag.models``) for JSON exchange.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

EmbeddingVector = list[float]


def split_tags(raw: str | Iterable[str] | None) -> tuple[str, ...]:
    """Normalize tags given as a comma-separated string or a sequence."""
    if raw is None:
        return ()
    if isinstance(raw, str):
        items: Iterable[str] = raw.split(",")
    else:
        items = raw
    return tuple(t.strip() for t in items if t and t.strip())


def build_content(title: str, tags: Iterable[str]) -> str:
    """Text that gets embedded for a record: ``"{title} - {tag, tag}"``."""
    return f"{title} - {', '.join(tags)}"


@dataclass(frozen=True)
class SourceRecord:
    """A row from the external catalogue. Read-only to this system."""

    id: str
    title: str
    tags: tuple[str, ...] = ()

    @property
    def content(self) -> str:
        return build_content(self.title, self.tags)


@dataclass
class Document:
    """A persisted record with its L2-normalized embedding."""

    id: str
    title: str
    tags: tuple[str, ...] = ()
    embedding: EmbeddingVector = field(default_factory=list)

    @property
    def content(self) -> str:
        return build_content(self.title, self.tags)

    @classmethod
    def from_record(cls, record: SourceRecord, embedding: EmbeddingVector) -> "Document":
        return cls(id=record.id, title=record.title, tags=tuple(record.tags), embedding=list(embedding))


@dataclass(frozen=True)
class RankedResult:
    """A document paired with its cosine similarity to the query."""

    document: Document
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.document.id,
            "title": self.document.title,
            "tags": list(self.document.tags),
            "similarity": self.similarity,
        }
