from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tavily import AsyncTavilyClient

from depthwise.config import settings


@dataclass
class SearchResult:
    title: str
    url: str
    content: str
    score: float
    published_date: str | None = None


async def search(
    query: str,
    *,
    search_depth: str = "advanced",
    max_results: int = 10,
    topic: str = "general",
    time_range: str | None = None,
    include_domains: list[str] | None = None,
    exclude_domains: list[str] | None = None,
) -> list[SearchResult]:
    """Run a Tavily web search."""
    if not settings.tavily_api_key:
        raise RuntimeError("TAVILY_API_KEY is not configured")
    client = AsyncTavilyClient(api_key=settings.tavily_api_key)

    kwargs: dict[str, Any] = {
        "query": query,
        "search_depth": search_depth,
        "max_results": max_results,
        "topic": topic,
    }
    if time_range:
        kwargs["time_range"] = time_range
    if include_domains:
        kwargs["include_domains"] = include_domains
    if exclude_domains:
        kwargs["exclude_domains"] = exclude_domains

    response = await client.search(**kwargs)

    return [
        SearchResult(
            title=r.get("title", ""),
            url=r.get("url", ""),
            content=r.get("content", ""),
            score=float(r.get("score") or 0.0),
            published_date=r.get("published_date"),
        )
        for r in response.get("results", [])
    ]


def results_to_dicts(results: list[SearchResult]) -> list[dict[str, Any]]:
    """Tool-result shape sent to the model and the client."""
    out = []
    for r in results:
        item: dict[str, Any] = {"title": r.title, "url": r.url, "content": r.content, "score": r.score}
        if r.published_date:
            item["publishedDate"] = r.published_date
        out.append(item)
    return out
