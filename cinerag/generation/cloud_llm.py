"""
Cloud generation backend: Google Gemini via the Generative Language REST API.

Uses httpx for async HTTP. API key from environment variable
GEMINI_API_KEY or passed directly.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import httpx

from cinerag.errors import GenerationRejected
from cinerag.generation.backend import HTTPGenerationBackend, build_prompt
from cinerag.generation.schema import SchemaDescriptor

LOG = logging.getLogger("generation.cloud_llm")

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

# finish reasons meaning the model refused or was stopped on this input
_BLOCKED_FINISH_REASONS = frozenset({"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"})


class GeminiGenerationBackend(HTTPGenerationBackend):
    """
    Cloud backend using Gemini ``generateContent``.

    Context and question are sent as one user prompt. For schema-constrained
    calls the schema goes out as ``responseSchema`` with a JSON MIME type;
    the answer is still validated locally.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gemini-1.5-flash",
        base_url: str = GEMINI_BASE_URL,
        timeout: float = 60.0,
        max_retries: int = 3,
        backoff_s: float = 1.0,
        temperature: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key or os.environ.get("GEMINI_API_KEY", "")
        if not self._api_key:
            raise ValueError("API key required. Set GEMINI_API_KEY or pass api_key=.")
        self._model = model
        self._temperature = temperature
        super().__init__(base_url, timeout=timeout, max_retries=max_retries, backoff_s=backoff_s, transport=transport)

    def _request_body(self, context: str, query: str, schema: Optional[SchemaDescriptor]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": build_prompt(context, query)}]}],
        }
        generation_config: Dict[str, Any] = {}
        if self._temperature is not None:
            generation_config["temperature"] = self._temperature
        if schema is not None:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseSchema"] = schema.to_openapi_schema()
        if generation_config:
            body["generationConfig"] = generation_config
        return body

    async def _complete(self, context: str, query: str, schema: Optional[SchemaDescriptor]) -> str:
        data = await self._post_json(
            f"/models/{self._model}:generateContent",
            self._request_body(context, query, schema),
            headers={"x-goog-api-key": self._api_key},
        )
        return self._extract_text(data)

    @staticmethod
    def _extract_text(data: Any) -> str:
        """Pull the answer text out of a generateContent response."""
        if not isinstance(data, dict):
            raise GenerationRejected("gemini returned an unexpected response shape")
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise GenerationRejected(f"gemini blocked the prompt ({block_reason})")
        candidates = data.get("candidates") or []
        if not candidates:
            raise GenerationRejected("gemini returned no candidates")
        candidate = candidates[0]
        finish_reason = candidate.get("finishReason")
        if finish_reason in _BLOCKED_FINISH_REASONS:
            raise GenerationRejected(f"gemini stopped generation ({finish_reason})")
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        LOG.debug("gemini answered with %d chars (finishReason=%s)", len(text), finish_reason)
        return text
