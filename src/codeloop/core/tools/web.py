"""Web search tool backed by an HTTP search API."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from codeloop.core.tools.base import Tool, ToolInvocationError, Toolkit, ToolOutput, Workspace

logger = logging.getLogger(__name__)

DEFAULT_WEB_SEARCH_URL = "https://api.z.ai/api/tools/web_search"
MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 0.5
_RECENCY_FILTERS = {"noLimit", "1d", "1w", "1m", "1y"}


class _TransientSearchError(Exception):
    pass


class WebSearchClient:
    """Minimal client for the search endpoint with bounded retries."""

    def __init__(
        self,
        url: str,
        api_key: str | None,
        *,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY_SECONDS,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self._client = client
        self._sleep = sleep
        self.max_attempts = max(max_attempts, 1)
        self.base_delay = base_delay

    def search(self, query: str, **options: Any) -> list[dict[str, Any]]:
        body: dict[str, Any] = {"search_query": query, "search_engine": "search-prime"}
        body.update({key: value for key, value in options.items() if value is not None})
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._post(body, headers)
            except _TransientSearchError as exc:
                last_error = exc
                if attempt == self.max_attempts:
                    break
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Web search attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)
        raise ToolInvocationError(
            f"Web search failed after {self.max_attempts} attempts: {last_error}"
        )

    def _post(self, body: dict[str, Any], headers: dict[str, str]) -> list[dict[str, Any]]:
        client = self._client or httpx.Client(timeout=10.0)
        try:
            response = client.post(self.url, json=body, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise _TransientSearchError(str(exc) or exc.__class__.__name__) from exc
        finally:
            if self._client is None:
                client.close()
        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientSearchError(f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ToolInvocationError(
                f"Web search API failed with code {response.status_code}: {response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ToolInvocationError("Web search API returned invalid JSON.") from exc
        results = payload.get("search_result") if isinstance(payload, dict) else None
        return [item for item in results or [] if isinstance(item, dict)]


def format_results(results: list[dict[str, Any]]) -> str:
    lines = [f"Found {len(results)} results:", ""]
    for position, result in enumerate(results, start=1):
        lines.append(f"{position}. {result.get('title') or '(untitled)'}")
        content = result.get("content")
        if isinstance(content, str) and content:
            snippet = content if len(content) <= 200 else f"{content[:200]}..."
            lines.append(f"   {snippet}")
        lines.append(f"   URL: {result.get('link') or '-'}")
        if result.get("publish_date"):
            lines.append(f"   Published: {result['publish_date']}")
        lines.append("")
    return "\n".join(lines).rstrip()


def _web_search_tool(search_client: WebSearchClient) -> Tool:
    def handler(payload: dict[str, Any]) -> ToolOutput:
        query = payload.get("query")
        if not isinstance(query, str) or not query.strip():
            raise ToolInvocationError("Payload must include a non-empty 'query'.")
        count = payload.get("count", 10)
        if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= 50:
            raise ToolInvocationError("'count' must be an integer between 1 and 50.")
        recency = payload.get("recency")
        if recency is not None and recency not in _RECENCY_FILTERS:
            raise ToolInvocationError(
                f"'recency' must be one of: {', '.join(sorted(_RECENCY_FILTERS))}."
            )
        results = search_client.search(
            query.strip(),
            count=count,
            search_domain_filter=payload.get("domain"),
            search_recency_filter=recency,
        )
        if not results:
            return ToolOutput(content=f"No search results found for query: '{query}'", summary="No results")
        return ToolOutput(
            content=format_results(results),
            summary=f"{len(results)} web results",
            data={"query": query, "count": len(results)},
        )

    return Tool(
        name="web_search",
        description="Search the web for current information, documentation or facts.",
        input_schema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query."},
                "count": {"type": "integer", "description": "Number of results (1-50, default 10)."},
                "domain": {"type": "string", "description": "Restrict results to one domain."},
                "recency": {"type": "string", "description": "noLimit, 1d, 1w, 1m or 1y."},
            },
            "required": ["query"],
        },
        handler=handler,
    )


def web_toolkit(
    workspace: Workspace,
    *,
    client: httpx.Client | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Toolkit:
    search_client = WebSearchClient(
        workspace.web_search_url or DEFAULT_WEB_SEARCH_URL,
        workspace.api_key,
        client=client,
        sleep=sleep,
    )
    return Toolkit(
        name="codeloop.web",
        version="1.0.0",
        description="Web search for information outside the workspace.",
        tools=[_web_search_tool(search_client)],
    )


__all__ = ["DEFAULT_WEB_SEARCH_URL", "WebSearchClient", "format_results", "web_toolkit"]
