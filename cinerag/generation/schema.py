"""
Declarative output schemas for schema-constrained generation.

A ``SchemaDescriptor`` lists fields (name -> type, required, constraints).
It is turned into a pydantic model for validation and into JSON Schema /
OpenAPI fragments that the backends send as the required output format.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, Field, HttpUrl, ValidationError, create_model

from cinerag.errors import SchemaViolation

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)

_PY_TYPES: dict[str, Any] = {
    "string": str,
    "url": HttpUrl,
    "integer": int,
    "number": float,
    "boolean": bool,
    "string_list": list[str],
}

_OPENAPI_TYPES: dict[str, dict[str, Any]] = {
    "string": {"type": "STRING"},
    "url": {"type": "STRING"},
    "integer": {"type": "INTEGER"},
    "number": {"type": "NUMBER"},
    "boolean": {"type": "BOOLEAN"},
    "string_list": {"type": "ARRAY", "items": {"type": "STRING"}},
}


def extract_json(text: str) -> str:
    """Strip markdown fences from an LLM response, if present."""
    matches = _JSON_FENCE_RE.findall(text)
    if matches:
        return matches[0].strip()
    return text.strip()


@dataclass(frozen=True)
class FieldSpec:
    """One field of an output schema."""

    type: str = "string"  # "string", "url", "integer", "number", "boolean", "string_list"
    required: bool = True
    min_length: Optional[int] = None  # characters for strings, items for lists
    description: str = ""

    def __post_init__(self) -> None:
        if self.type not in _PY_TYPES:
            raise ValueError(f"Unsupported field type: {self.type!r}. Supported: {sorted(_PY_TYPES)}")


@dataclass
class SchemaDescriptor:
    """Named set of fields that a constrained answer must satisfy."""

    name: str
    fields: dict[str, FieldSpec] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for fname in self.fields:
            if not fname.isidentifier() or fname.startswith("_"):
                raise ValueError(f"Invalid field name: {fname!r}")
        self._model = self._build_model()

    def _build_model(self) -> type[BaseModel]:
        definitions: dict[str, Any] = {}
        for fname, spec in self.fields.items():
            annotation = _PY_TYPES[spec.type]
            constraints: dict[str, Any] = {"description": spec.description or None}
            if spec.min_length is not None:
                constraints["min_length"] = spec.min_length
            if spec.required:
                definitions[fname] = (annotation, Field(..., **constraints))
            else:
                definitions[fname] = (Optional[annotation], Field(None, **constraints))
        return create_model(self.name, **definitions)

    @property
    def model(self) -> type[BaseModel]:
        return self._model

    def json_schema(self) -> dict[str, Any]:
        """Full JSON Schema, as accepted by Ollama's ``format`` parameter."""
        return self._model.model_json_schema()

    def to_openapi_schema(self) -> dict[str, Any]:
        """OpenAPI subset schema, as accepted by Gemini's ``responseSchema``."""
        properties: dict[str, Any] = {}
        for fname, spec in self.fields.items():
            prop = dict(_OPENAPI_TYPES[spec.type])
            if spec.description:
                prop["description"] = spec.description
            properties[fname] = prop
        return {
            "type": "OBJECT",
            "properties": properties,
            "required": [fname for fname, spec in self.fields.items() if spec.required],
        }

    def validate(self, payload: str | dict[str, Any]) -> dict[str, Any]:
        """
        Validate a raw answer (JSON text or already-parsed dict).

        Returns the validated payload as a JSON-compatible dict.

        Raises:
            SchemaViolation: payload is not JSON, not an object, or fails a field rule
        """
        if isinstance(payload, str):
            try:
                payload = json.loads(extract_json(payload))
            except json.JSONDecodeError as exc:
                raise SchemaViolation(f"Answer for schema {self.name!r} is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise SchemaViolation(f"Answer for schema {self.name!r} must be a JSON object")
        try:
            instance = self._model.model_validate(payload)
        except ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False, include_input=False)
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in errors)
            raise SchemaViolation(f"Answer violates schema {self.name!r} ({fields})", errors=errors) from exc
        validated = instance.model_dump(mode="json", exclude_none=True)
        # HttpUrl normalizes (e.g. appends "/"); hand back the URL as the backend wrote it
        for fname, spec in self.fields.items():
            if spec.type == "url" and fname in validated:
                validated[fname] = payload[fname]
        return validated

    def validate_json(self, payload: str | dict[str, Any]) -> str:
        """Validate and return the answer as JSON text."""
        return json.dumps(self.validate(payload), ensure_ascii=False)


MOVIE_SCHEMA = SchemaDescriptor(
    name="MovieRecommendation",
    fields={
        "movieName": FieldSpec("string", min_length=1, description="Name of the movie cannot be empty"),
        "imageUrl": FieldSpec("url", description="image URL of Movies from imdb"),
        "genres": FieldSpec("string_list", min_length=1, description="Genres of the movie"),
    },
)

SCHEMAS: dict[str, SchemaDescriptor] = {"movie": MOVIE_SCHEMA}


def get_schema(name: str) -> Optional[SchemaDescriptor]:
    """Look up a named schema; ``"none"`` or empty means freeform output."""
    if not name or name == "none":
        return None
    try:
        return SCHEMAS[name]
    except KeyError:
        raise ValueError(f"Unknown output schema: {name!r}. Supported: 'none', {', '.join(map(repr, SCHEMAS))}") from None
