from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class IngestFailureModel(BaseModel):
    id: str
    reason: str


class IngestResponse(BaseModel):
    succeeded: int
    failed: List[IngestFailureModel]
    durationMs: int = 0


class SearchHit(BaseModel):
    id: str
    title: str
    tags: List[str]
    similarity: float = Field(ge=-1.0, le=1.0)


class AnswerResponse(BaseModel):
    query: str
    answer: str
    backend: str
    schemaName: Optional[str] = None
    sources: List[SearchHit]


class ErrorResponse(BaseModel):
    error: str
