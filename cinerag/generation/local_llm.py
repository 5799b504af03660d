"""
Local generation backend: Ollama.

Connects to a locally running Ollama instance at http://localhost:11434.
Default model: llama3.2.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from cinerag.errors import GenerationRejected
from cinerag.generation.backend import HTTPGenerationBackend
from cinerag.generation.schema import SchemaDescriptor

LOG = logging.getLogger("generation.local_llm")


class OllamaGenerationBackend(HTTPGenerationBackend):
    """
    Local backend using Ollama's chat API.

    The retrieved context is sent as the system message and the question as
    the user message. For schema-constrained calls the JSON Schema is passed
    as ``format`` so Ollama constrains decoding to it.

    Requires Ollama to be running locally: https://ollama.ai
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2",
        timeout: float = 120.0,
        max_retries: int = 2,
        backoff_s: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._model = model
        self._available: Optional[bool] = None
        super().__init__(base_url, timeout=timeout, max_retries=max_retries, backoff_s=backoff_s, transport=transport)

    async def is_available(self) -> bool:
        """Check if Ollama is running and the model is available."""
        if self._available is not None:
            return self._available
        try:
            resp = await self._client.get("/api/tags")
            if resp.status_code == 200:
                models = resp.json().get("models", [])
                model_names = [m.get("name", "") for m in models]
                # Check if our model (or a prefix match) is available
                self._available = any(self._model in name for name in model_names)
                if not self._available:
                    LOG.warning(
                        "Ollama running but model '%s' not found. Available: %s. Pull with: ollama pull %s",
                        self._model,
                        model_names,
                        self._model,
                    )
                return self._available
        except (httpx.HTTPError, ValueError) as exc:
            LOG.warning("Ollama not reachable at %s: %s", self._base_url, exc)
        self._available = False
        return False

    def _request_body(self, context: str, query: str, schema: Optional[SchemaDescriptor]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": context},
                {"role": "user", "content": query},
            ],
            "stream": False,
        }
        if schema is not None:
            body["format"] = schema.json_schema()
        return body

    async def _complete(self, context: str, query: str, schema: Optional[SchemaDescriptor]) -> str:
        data = await self._post_json("/api/chat", self._request_body(context, query, schema))
        if not isinstance(data, dict):
            raise GenerationRejected("ollama returned an unexpected response shape")
        if data.get("error"):
            raise GenerationRejected("ollama reported an error for this request")
        message = data.get("message") or {}
        text = message.get("content", "") if isinstance(message, dict) else ""
        LOG.debug("ollama answered with %d chars", len(text))
        return text
