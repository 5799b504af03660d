"""Tests for declarative output schemas."""

from __future__ import annotations

import json

import pytest

from cinerag.errors import SchemaViolation
from cinerag.generation.schema import MOVIE_SCHEMA, FieldSpec, SchemaDescriptor, extract_json, get_schema

VALID_MOVIE = {
    "movieName": "Midnight Mass",
    "imageUrl": "https://m.media-amazon.com/images/M/midnight-mass.jpg",
    "genres": ["TV Dramas", "TV Horror"],
}


class TestExtractJson:
    def test_plain(self):
        assert extract_json('  {"a": 1} ') == '{"a": 1}'

    def test_fenced(self):
        assert extract_json('Here you go:\n```json\n{"a": 1}\n```\nEnjoy!') == '{"a": 1}'


class TestMovieSchema:
    def test_valid_payload(self):
        assert MOVIE_SCHEMA.validate(VALID_MOVIE) == VALID_MOVIE

    def test_valid_json_text(self):
        out = json.loads(MOVIE_SCHEMA.validate_json(json.dumps(VALID_MOVIE)))
        assert out["genres"] == ["TV Dramas", "TV Horror"]

    def test_missing_genres_is_violation(self):
        payload = {k: v for k, v in VALID_MOVIE.items() if k != "genres"}
        with pytest.raises(SchemaViolation) as excinfo:
            MOVIE_SCHEMA.validate(payload)
        assert any(err["loc"] == ("genres",) for err in excinfo.value.errors)

    def test_empty_genres_is_violation(self):
        with pytest.raises(SchemaViolation, match="genres"):
            MOVIE_SCHEMA.validate({**VALID_MOVIE, "genres": []})

    def test_empty_name_is_violation(self):
        with pytest.raises(SchemaViolation, match="movieName"):
            MOVIE_SCHEMA.validate({**VALID_MOVIE, "movieName": ""})

    def test_bad_url_is_violation(self):
        with pytest.raises(SchemaViolation, match="imageUrl"):
            MOVIE_SCHEMA.validate({**VALID_MOVIE, "imageUrl": "not a url"})

    def test_url_returned_as_written(self):
        payload = {**VALID_MOVIE, "imageUrl": "https://www.imdb.com"}
        assert MOVIE_SCHEMA.validate(payload)["imageUrl"] == "https://www.imdb.com"
        assert json.loads(MOVIE_SCHEMA.validate_json(json.dumps(payload)))["imageUrl"] == "https://www.imdb.com"

    def test_not_json(self):
        with pytest.raises(SchemaViolation, match="not valid JSON"):
            MOVIE_SCHEMA.validate("I recommend Midnight Mass!")

    def test_not_an_object(self):
        with pytest.raises(SchemaViolation, match="JSON object"):
            MOVIE_SCHEMA.validate("[1, 2, 3]")

    def test_json_schema_lists_required_fields(self):
        schema = MOVIE_SCHEMA.json_schema()
        assert set(schema["required"]) == {"movieName", "imageUrl", "genres"}
        assert schema["properties"]["genres"]["type"] == "array"
        assert schema["properties"]["genres"]["minItems"] == 1

    def test_openapi_schema(self):
        schema = MOVIE_SCHEMA.to_openapi_schema()
        assert schema["type"] == "OBJECT"
        assert schema["properties"]["genres"] == {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "Genres of the movie",
        }


class TestSchemaDescriptor:
    def test_optional_field(self):
        schema = SchemaDescriptor("Review", {"title": FieldSpec("string"), "stars": FieldSpec("integer", required=False)})
        assert schema.validate({"title": "Ganglands"}) == {"title": "Ganglands"}
        assert schema.validate({"title": "Ganglands", "stars": 4}) == {"title": "Ganglands", "stars": 4}
        assert schema.to_openapi_schema()["required"] == ["title"]

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unsupported field type"):
            FieldSpec("datetime")

    def test_invalid_field_name(self):
        with pytest.raises(ValueError, match="Invalid field name"):
            SchemaDescriptor("Bad", {"not-valid": FieldSpec()})

    def test_get_schema(self):
        assert get_schema("none") is None
        assert get_schema("") is None
        assert get_schema("movie") is MOVIE_SCHEMA
        with pytest.raises(ValueError, match="Unknown output schema"):
            get_schema("book")
