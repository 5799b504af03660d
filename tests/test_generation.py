"""Tests for generation backends: mock, Gemini and Ollama over httpx MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from cinerag.errors import GenerationRejected, GenerationUnavailable, SchemaViolation
from cinerag.generation.backend import MockGenerationBackend, build_generation_backend, build_prompt
from cinerag.generation.cloud_llm import GeminiGenerationBackend
from cinerag.generation.local_llm import OllamaGenerationBackend
from cinerag.generation.schema import MOVIE_SCHEMA

CONTEXT = "Midnight Mass - TV Dramas, TV Horror\nGanglands - Crime TV Shows"
MOVIE_JSON = json.dumps(
    {"movieName": "Midnight Mass", "imageUrl": "https://example.com/mm.jpg", "genres": ["TV Dramas"]}
)


def _gemini_reply(text: str, finish_reason: str = "STOP") -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}, "finishReason": finish_reason}]}


def _ollama_reply(text: str) -> dict:
    return {"model": "llama3.2", "message": {"role": "assistant", "content": text}, "done": True}


class Recorder:
    """httpx MockTransport handler returning queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def body(self, i: int = -1) -> dict:
        return json.loads(self.requests[i].content)


class TestPrompt:
    def test_persona_context_question(self):
        prompt = build_prompt(CONTEXT, "what should I watch?")
        assert prompt.startswith("You are a movie assistant specialist.")
        assert f"data: {CONTEXT}" in prompt
        assert "question: what should I watch?" in prompt


class TestMockGenerationBackend:
    @pytest.mark.asyncio
    async def test_default_answer_uses_context(self):
        backend = MockGenerationBackend()
        answer = await backend.generate(CONTEXT, "recommend something")
        assert "Midnight Mass" in answer
        assert backend.call_count == 1
        assert backend.calls[0]["query"] == "recommend something"

    @pytest.mark.asyncio
    async def test_canned_responses_cycle(self):
        backend = MockGenerationBackend(responses=["one", "two"])
        assert [await backend.generate(CONTEXT, "q") for _ in range(3)] == ["one", "two", "one"]

    @pytest.mark.asyncio
    async def test_schema_constrained_valid(self):
        backend = MockGenerationBackend(responses=[f"```json\n{MOVIE_JSON}\n```"])
        answer = await backend.generate(CONTEXT, "q", schema=MOVIE_SCHEMA)
        assert json.loads(answer)["movieName"] == "Midnight Mass"
        assert backend.calls[0]["schema"] == "MovieRecommendation"

    @pytest.mark.asyncio
    async def test_schema_violation_not_returned(self):
        missing_genres = json.dumps({"movieName": "Midnight Mass", "imageUrl": "https://example.com/mm.jpg"})
        backend = MockGenerationBackend(responses=[missing_genres])
        with pytest.raises(SchemaViolation):
            await backend.generate(CONTEXT, "q", schema=MOVIE_SCHEMA)

    @pytest.mark.asyncio
    async def test_empty_answer_rejected(self):
        with pytest.raises(GenerationRejected):
            await MockGenerationBackend(responses=["   "]).generate(CONTEXT, "q")

    @pytest.mark.asyncio
    async def test_configured_error(self):
        backend = MockGenerationBackend(error=GenerationUnavailable("down"))
        with pytest.raises(GenerationUnavailable):
            await backend.generate(CONTEXT, "q")

    @pytest.mark.asyncio
    async def test_close_is_noop(self):
        await MockGenerationBackend().close()


class TestGeminiGenerationBackend:
    def _backend(self, recorder: Recorder, **kwargs) -> GeminiGenerationBackend:
        return GeminiGenerationBackend(api_key="test-key", transport=recorder.transport, backoff_s=0, **kwargs)

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        with pytest.raises(ValueError, match="API key required"):
            GeminiGenerationBackend()

    @pytest.mark.asyncio
    async def test_freeform(self):
        rec = Recorder(httpx.Response(200, json=_gemini_reply("Watch Midnight Mass.")))
        backend = self._backend(rec)
        assert await backend.generate(CONTEXT, "recommend a drama") == "Watch Midnight Mass."
        request = rec.requests[0]
        assert request.url.path.endswith("/models/gemini-1.5-flash:generateContent")
        assert request.headers["x-goog-api-key"] == "test-key"
        text = rec.body()["contents"][0]["parts"][0]["text"]
        assert "question: recommend a drama" in text
        assert "generationConfig" not in rec.body()
        await backend.close()

    @pytest.mark.asyncio
    async def test_schema_sent_and_validated(self):
        rec = Recorder(httpx.Response(200, json=_gemini_reply(MOVIE_JSON)))
        backend = self._backend(rec)
        answer = await backend.generate(CONTEXT, "q", schema=MOVIE_SCHEMA)
        assert json.loads(answer)["genres"] == ["TV Dramas"]
        config = rec.body()["generationConfig"]
        assert config["responseMimeType"] == "application/json"
        assert config["responseSchema"]["properties"]["genres"]["type"] == "ARRAY"

    @pytest.mark.asyncio
    async def test_schema_violation(self):
        rec = Recorder(httpx.Response(200, json=_gemini_reply('{"movieName": "Midnight Mass"}')))
        with pytest.raises(SchemaViolation):
            await self._backend(rec).generate(CONTEXT, "q", schema=MOVIE_SCHEMA)

    @pytest.mark.asyncio
    async def test_client_error_is_rejected_without_retry(self):
        rec = Recorder(httpx.Response(400, json={"error": {"message": "bad request"}}))
        with pytest.raises(GenerationRejected):
            await self._backend(rec).generate(CONTEXT, "q")
        assert len(rec.requests) == 1

    @pytest.mark.asyncio
    async def test_server_error_retried_then_unavailable(self):
        rec = Recorder(httpx.Response(503))
        with pytest.raises(GenerationUnavailable):
            await self._backend(rec, max_retries=3).generate(CONTEXT, "q")
        assert len(rec.requests) == 3

    @pytest.mark.asyncio
    async def test_transient_then_success(self):
        rec = Recorder(httpx.Response(429), httpx.Response(200, json=_gemini_reply("ok")))
        assert await self._backend(rec).generate(CONTEXT, "q") == "ok"
        assert len(rec.requests) == 2

    @pytest.mark.asyncio
    async def test_connect_error_is_unavailable(self):
        rec = Recorder(httpx.ConnectError("connection refused"))
        with pytest.raises(GenerationUnavailable):
            await self._backend(rec, max_retries=2).generate(CONTEXT, "q")

    @pytest.mark.asyncio
    async def test_blocked_prompt_rejected(self):
        rec = Recorder(httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}}))
        with pytest.raises(GenerationRejected, match="blocked"):
            await self._backend(rec).generate(CONTEXT, "q")

    @pytest.mark.asyncio
    async def test_safety_finish_rejected(self):
        rec = Recorder(httpx.Response(200, json=_gemini_reply("", finish_reason="SAFETY")))
        with pytest.raises(GenerationRejected):
            await self._backend(rec).generate(CONTEXT, "q")

    @pytest.mark.asyncio
    async def test_non_json_body_rejected(self):
        rec = Recorder(httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(GenerationRejected):
            await self._backend(rec).generate(CONTEXT, "q")


class TestOllamaGenerationBackend:
    def _backend(self, recorder: Recorder, **kwargs) -> OllamaGenerationBackend:
        return OllamaGenerationBackend(transport=recorder.transport, backoff_s=0, **kwargs)

    @pytest.mark.asyncio
    async def test_freeform_messages(self):
        rec = Recorder(httpx.Response(200, json=_ollama_reply("Try Ganglands.")))
        assert await self._backend(rec).generate(CONTEXT, "something gritty") == "Try Ganglands."
        body = rec.body()
        assert rec.requests[0].url.path == "/api/chat"
        assert body["model"] == "llama3.2"
        assert body["stream"] is False
        assert body["messages"] == [
            {"role": "system", "content": CONTEXT},
            {"role": "user", "content": "something gritty"},
        ]
        assert "format" not in body

    @pytest.mark.asyncio
    async def test_schema_as_format(self):
        rec = Recorder(httpx.Response(200, json=_ollama_reply(MOVIE_JSON)))
        answer = await self._backend(rec).generate(CONTEXT, "q", schema=MOVIE_SCHEMA)
        assert json.loads(answer)["movieName"] == "Midnight Mass"
        assert rec.body()["format"]["required"] == ["movieName", "imageUrl", "genres"]

    @pytest.mark.asyncio
    async def test_model_not_found_rejected(self):
        rec = Recorder(httpx.Response(404, json={"error": "model 'llama3.2' not found"}))
        with pytest.raises(GenerationRejected):
            await self._backend(rec).generate(CONTEXT, "q")

    @pytest.mark.asyncio
    async def test_unreachable(self):
        rec = Recorder(httpx.ConnectError("connection refused"))
        with pytest.raises(GenerationUnavailable):
            await self._backend(rec).generate(CONTEXT, "q")

    @pytest.mark.asyncio
    async def test_is_available(self):
        rec = Recorder(httpx.Response(200, json={"models": [{"name": "llama3.2:latest"}]}))
        assert await self._backend(rec).is_available() is True

    @pytest.mark.asyncio
    async def test_is_available_model_missing(self):
        rec = Recorder(httpx.Response(200, json={"models": [{"name": "mistral:latest"}]}))
        assert await self._backend(rec).is_available() is False


class TestFactory:
    def test_mock(self):
        assert isinstance(build_generation_backend("mock"), MockGenerationBackend)

    def test_ollama(self):
        assert isinstance(build_generation_backend("ollama", model="llama3.2"), OllamaGenerationBackend)

    def test_gemini(self):
        assert isinstance(build_generation_backend("gemini", api_key="k"), GeminiGenerationBackend)

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown generation backend"):
            build_generation_backend("gpt")
