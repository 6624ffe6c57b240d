from __future__ import annotations

from dataclasses import dataclass

from depthwise.config import settings
from depthwise.services.logger import logger
from depthwise.tools import brave_search, tavily_search
from depthwise.tools.tavily_search import SearchResult


@dataclass
class SearchResponse:
    results: list[SearchResult]
    provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None


async def _tavily_fallback(
    query: str, reason: str, *, search_depth: str, max_results: int, time_range: str | None
) -> SearchResponse:
    logger.warning(f"Brave search fell back to Tavily: {reason}")
    results = await tavily_search.search(
        query=query,
        search_depth=search_depth,
        max_results=max_results,
        time_range=time_range,
    )
    return SearchResponse(
        results=results,
        provider="tavily",
        fallback_from="brave",
        fallback_reason=reason,
    )


async def search(
    query: str,
    *,
    search_depth: str = "advanced",
    max_results: int | None = None,
    time_range: str | None = None,
) -> SearchResponse:
    provider = settings.search_provider.lower().strip()
    use_fallback = settings.search_fallback_to_tavily
    max_results = max_results or settings.search_max_results

    if provider == "tavily":
        results = await tavily_search.search(
            query=query,
            search_depth=search_depth,
            max_results=max_results,
            time_range=time_range,
        )
        return SearchResponse(results=results, provider="tavily")

    if provider == "brave":
        try:
            results = await brave_search.search(
                query=query,
                max_results=max_results,
                time_range=time_range,
            )
        except Exception as e:
            if not use_fallback:
                raise
            return await _tavily_fallback(
                query, str(e), search_depth=search_depth, max_results=max_results, time_range=time_range
            )
        if results or not use_fallback:
            return SearchResponse(results=results, provider="brave")
        return await _tavily_fallback(
            query,
            "brave returned zero results",
            search_depth=search_depth,
            max_results=max_results,
            time_range=time_range,
        )

    raise ValueError(f"Unsupported SEARCH_PROVIDER: {settings.search_provider}")


def results_to_dicts(results: list[SearchResult]) -> list[dict]:
    return tavily_search.results_to_dicts(results)
