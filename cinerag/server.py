from __future__ import annotations

import logging
import os
from typing import Any, Awaitable, Optional

from mcp.server.fastmcp import FastMCP

from cinerag.tools import answer_query, error_payload, get_service, ingest_documents, search_documents

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

LOG = logging.getLogger("cinerag.server")


def _json_payload(model: Any) -> Any:
    if isinstance(model, list):
        return [item.model_dump(mode="json") for item in model]
    return model.model_dump(mode="json")


async def _respond(call: Awaitable[Any]) -> dict:
    """Await a boundary operation and shape the result or the error as a payload."""
    try:
        result = await call
    except Exception as exc:
        status, body = error_payload(exc)
        LOG.warning("tool call failed with status %d: %s", status, type(exc).__name__)
        return {"status": status, **body}
    return {"status": 200, "result": _json_payload(result)}


def build_server() -> FastMCP:
    server = FastMCP("cinerag-server")

    @server.tool(
            description="Re-ingest every record from the configured source into the document store."
    )
    async def ingest_documents_tool() -> dict:
        return await _respond(ingest_documents())

    @server.tool(
            description="Return the stored documents most similar to a query, ranked by cosine similarity."
    )
    async def search_documents_tool(query: str, k: Optional[int] = None) -> dict:
        return await _respond(search_documents(query, k))

    @server.tool(
            description="Answer a question from the documents most similar to it, using the configured generation backend."
    )
    async def answer_query_tool(query: Optional[str] = None, k: Optional[int] = None) -> dict:
        return await _respond(answer_query(query, k))

    return server


def main() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # Load the model and open store connections before the first request arrives
    service = get_service()
    LOG.info("cinerag ready: %s store, %s generation", type(service.store).__name__, service.generator.name)
    server = build_server()
    server.run()


if __name__ == "__main__":
    main()
