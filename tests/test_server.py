"""Tests for the MCP server wiring."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

pytest.importorskip("mcp")

from cinerag.errors import StoreUnavailable  # noqa: E402
from cinerag.models import SearchHit  # noqa: E402
from cinerag.server import _respond, build_server, main  # noqa: E402


async def _ok():
    return [SearchHit(id="s1", title="Dick Johnson Is Dead", tags=["Documentaries"], similarity=0.5)]


async def _fail():
    raise StoreUnavailable("could not connect to server: Connection refused (host=10.0.0.3)")


class TestServer:
    @pytest.mark.asyncio
    async def test_tools_registered(self):
        server = build_server()
        names = {tool.name for tool in await server.list_tools()}
        assert {"ingest_documents_tool", "search_documents_tool", "answer_query_tool"} <= names

    @pytest.mark.asyncio
    async def test_respond_success(self):
        payload = await _respond(_ok())
        assert payload["status"] == 200
        assert payload["result"][0]["id"] == "s1"

    @pytest.mark.asyncio
    async def test_respond_error(self):
        payload = await _respond(_fail())
        assert payload == {"status": 503, "error": "Document store is unavailable"}

    def test_main_builds_service_before_serving(self, monkeypatch):
        order = []

        def fake_get_service():
            order.append("service")
            return SimpleNamespace(store=object(), generator=SimpleNamespace(name="mock"))

        monkeypatch.setattr("cinerag.server.get_service", fake_get_service)
        monkeypatch.setattr("mcp.server.fastmcp.FastMCP.run", lambda self, *a, **kw: order.append("run"))
        main()
        assert order == ["service", "run"]
