from __future__ import annotations

from typing import Any

import httpx

from app.config import settings
from app.errors import MissingCredentialError
from app.tools.tavily_search import SearchResult

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"

# Brave caps `count` at 20 per request.
BRAVE_MAX_COUNT = 20


async def search(
    query: str,
    *,
    max_results: int = 10,
    timeout: float = 10.0,
) -> list[SearchResult]:
    """Execute a Brave web search and normalize results."""
    if not settings.brave_api_key:
        raise MissingCredentialError("BRAVE_API_KEY is not configured")

    params: dict[str, Any] = {
        "q": query,
        "count": min(max_results, BRAVE_MAX_COUNT),
    }

    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(
            BRAVE_SEARCH_URL,
            params=params,
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": settings.brave_api_key,
            },
        )
        response.raise_for_status()
        payload = response.json()

    raw_results = payload.get("web", {}).get("results", [])
    total = max(len(raw_results), 1)
    mapped: list[SearchResult] = []
    for idx, item in enumerate(raw_results):
        snippets = item.get("extra_snippets", []) or []
        description = item.get("description", "") or ""
        content = description.strip() or " ".join(snippets).strip()
        # Brave does not expose a relevance score; use reciprocal position.
        score = max(0.0, 1.0 - (idx / total))
        mapped.append(
            SearchResult(
                title=item.get("title", ""),
                url=item.get("url", ""),
                content=content,
                score=score,
                published_at=item.get("page_age") or item.get("age"),
            )
        )
    return mapped[:max_results]
