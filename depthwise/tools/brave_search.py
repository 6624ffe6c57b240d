from __future__ import annotations

from typing import Any

import httpx

from depthwise.config import settings
from depthwise.tools.tavily_search import SearchResult

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"

FRESHNESS_MAP = {
    "day": "pd",
    "week": "pw",
    "month": "pm",
    "year": "py",
}


def _map_results(payload: dict[str, Any]) -> list[SearchResult]:
    raw_results = payload.get("web", {}).get("results", [])
    total = max(len(raw_results), 1)
    mapped: list[SearchResult] = []
    for idx, item in enumerate(raw_results):
        snippets = item.get("extra_snippets", []) or []
        description = item.get("description", "") or ""
        content = "\n\n".join(s for s in [description.strip(), *snippets] if s)
        # No relevance score in the response; rank order stands in for it.
        mapped.append(
            SearchResult(
                title=item.get("title", ""),
                url=item.get("url", ""),
                content=content,
                score=max(0.0, 1.0 - (idx / total)),
                published_date=item.get("page_age"),
            )
        )
    return mapped


async def search(
    query: str,
    *,
    max_results: int = 10,
    time_range: str | None = None,
) -> list[SearchResult]:
    """Run a Brave web search and normalize results."""
    if not settings.brave_api_key:
        raise RuntimeError("BRAVE_API_KEY is not configured")

    params: dict[str, Any] = {
        "q": query,
        "count": max_results,
        "extra_snippets": "true",
    }
    if time_range in FRESHNESS_MAP:
        params["freshness"] = FRESHNESS_MAP[time_range]

    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.get(
            BRAVE_SEARCH_URL,
            params=params,
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": settings.brave_api_key,
            },
        )
        response.raise_for_status()
        return _map_results(response.json())
