"""
Generation package: pluggable answer backends and output schemas.

Backends: Gemini (cloud), Ollama (local), Mock (tests). The backend is a
deployment-time choice; see ``build_generation_backend``.
"""

from __future__ import annotations

from cinerag.generation.backend import (
    GenerationBackend,
    MockGenerationBackend,
    build_generation_backend,
    build_prompt,
)
from cinerag.generation.schema import MOVIE_SCHEMA, FieldSpec, SchemaDescriptor, get_schema

__all__ = [
    "FieldSpec",
    "GenerationBackend",
    "MOVIE_SCHEMA",
    "MockGenerationBackend",
    "SchemaDescriptor",
    "build_generation_backend",
    "build_prompt",
    "get_schema",
]
