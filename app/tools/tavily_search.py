from __future__ import annotations

from dataclasses import dataclass

from tavily import AsyncTavilyClient

from app.config import settings
from app.errors import MissingCredentialError


@dataclass
class SearchResult:
    title: str
    url: str
    content: str
    score: float
    published_at: str | None = None


async def search(query: str, *, max_results: int = 10) -> list[SearchResult]:
    """Execute a Tavily web search and return structured results."""
    if not settings.tavily_api_key:
        raise MissingCredentialError("TAVILY_API_KEY is not configured")

    client = AsyncTavilyClient(api_key=settings.tavily_api_key)

    response = await client.search(query=query, search_depth="basic", max_results=max_results)

    return [
        SearchResult(
            title=r.get("title", "") or "",
            url=r.get("url", "") or "",
            content=r.get("content", "") or "",
            score=float(r.get("score", 0.0) or 0.0),
            published_at=r.get("published_date"),
        )
        for r in response.get("results", [])
    ]
