from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from codeloop.core.tool_registry import ToolInvocationError, ToolRegistry, Workspace
from codeloop.core.tools.web import WebSearchClient, web_toolkit


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_search_formats_results(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["search_query"] == "httpx streaming"
        assert body["count"] == 2
        assert "search_recency_filter" not in body
        assert request.headers["Authorization"] == "Bearer sk-test"
        return httpx.Response(
            200,
            json={
                "search_result": [
                    {"title": "Docs", "content": "Streaming responses", "link": "https://example.com/a"},
                    {"title": "Blog", "link": "https://example.com/b", "publish_date": "2024-01-01"},
                ]
            },
        )

    workspace = Workspace(root=tmp_path, api_key="sk-test", web_search_url="https://search.test/api")
    registry = ToolRegistry(toolkits=[web_toolkit(workspace, client=_client(handler))])

    output = registry.invoke("web_search", {"query": "httpx streaming", "count": 2})

    assert output.content.startswith("Found 2 results:")
    assert "URL: https://example.com/a" in output.content
    assert "Published: 2024-01-01" in output.content


def test_transient_errors_are_retried_with_backoff() -> None:
    responses = iter([httpx.Response(503), httpx.Response(429), httpx.Response(200, json={"search_result": []})])
    sleeps: list[float] = []
    client = WebSearchClient(
        "https://search.test/api",
        None,
        client=_client(lambda request: next(responses)),
        sleep=sleeps.append,
    )

    assert client.search("anything") == []
    assert sleeps == [0.5, 1.0]


def test_gives_up_after_max_attempts() -> None:
    sleeps: list[float] = []
    client = WebSearchClient(
        "https://search.test/api",
        None,
        client=_client(lambda request: httpx.Response(500)),
        sleep=sleeps.append,
    )

    with pytest.raises(ToolInvocationError, match="after 3 attempts"):
        client.search("anything")
    assert len(sleeps) == 2


def test_client_errors_are_not_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(401, text="unauthorized")

    client = WebSearchClient("https://search.test/api", None, client=_client(handler), sleep=lambda _: None)

    with pytest.raises(ToolInvocationError, match="401"):
        client.search("anything")
    assert calls == [1]


def test_invalid_count_is_rejected(tmp_path: Path) -> None:
    registry = ToolRegistry(toolkits=[web_toolkit(Workspace(root=tmp_path), client=_client(lambda r: httpx.Response(200)))])

    with pytest.raises(ToolInvocationError):
        registry.invoke("web_search", {"query": "x", "count": 500})
