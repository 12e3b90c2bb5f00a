"""Provider adapter interface, the general web adapter and the provider registry."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from app.config import Settings, settings
from app.errors import ProviderError, provider_error_from
from app.models.research import SourceRecord
from app.services.logger import logger
from app.tools import brave_search, tavily_search
from app.tools.clinical_trials import ClinicalTrialsAdapter
from app.tools.preprint_search import PreprintAdapter
from app.tools.pubmed_search import PubMedAdapter
from app.tools.tavily_search import SearchResult
from app.tools.web_utils import canonicalize_url, clean_content, is_valid_url

SNIPPET_MAX_CHARS = 600


@runtime_checkable
class ProviderAdapter(Protocol):
    """Uniform interface to one external source.

    Implementations hold no cross-request state and must be safe to call
    concurrently with other adapters. Failures are raised as ProviderError.
    """

    kind: str

    async def fetch(self, query: str, count: int, timeout: float) -> list[SourceRecord]: ...


@dataclass
class SearchResponse:
    results: list[SearchResult]
    provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None


async def search(
    query: str,
    *,
    max_results: int = 10,
    timeout: float = 10.0,
) -> SearchResponse:
    provider = settings.search_provider.lower().strip()
    use_fallback = settings.search_fallback_to_tavily

    if provider == "tavily":
        results = await tavily_search.search(query=query, max_results=max_results)
        return SearchResponse(results=results, provider="tavily")

    if provider == "brave":
        try:
            results = await brave_search.search(
                query=query,
                max_results=max_results,
                timeout=timeout,
            )
            if results or not use_fallback:
                return SearchResponse(results=results, provider="brave")

            fallback_results = await tavily_search.search(query=query, max_results=max_results)
            return SearchResponse(
                results=fallback_results,
                provider="tavily",
                fallback_from="brave",
                fallback_reason="brave returned zero results",
            )
        except Exception as e:
            if not use_fallback:
                raise
            logger.warning(f"Brave search failed, falling back to Tavily: {e}")
            fallback_results = await tavily_search.search(query=query, max_results=max_results)
            return SearchResponse(
                results=fallback_results,
                provider="tavily",
                fallback_from="brave",
                fallback_reason=str(e),
            )

    raise ValueError(f"Unsupported SEARCH_PROVIDER: {settings.search_provider}")


def to_source_records(kind: str, results: list[SearchResult], limit: int) -> list[SourceRecord]:
    """Normalize web results; drops invalid URLs and keeps the first of any canonical duplicate."""
    records: list[SourceRecord] = []
    seen: set[str] = set()
    for result in results:
        if not is_valid_url(result.url):
            continue
        try:
            record_id = canonicalize_url(result.url)
        except ValueError:
            logger.debug(f"Skipping unparseable {kind} result URL: {result.url!r}")
            continue
        if record_id in seen:
            continue
        seen.add(record_id)
        records.append(
            SourceRecord(
                id=record_id,
                provider_kind=kind,
                url=result.url,
                title=clean_content(result.title, 300),
                snippet=clean_content(result.content, SNIPPET_MAX_CHARS),
                published_at=result.published_at,
            )
        )
        if len(records) >= limit:
            break
    return records


class GeneralWebAdapter:
    kind = "general"

    async def fetch(self, query: str, count: int, timeout: float) -> list[SourceRecord]:
        if count <= 0:
            return []
        try:
            response = await search(query, max_results=count, timeout=timeout)
        except ProviderError:
            raise
        except Exception as exc:
            raise provider_error_from(self.kind, exc) from exc
        if response.fallback_from:
            logger.info(
                f"general search served by {response.provider} "
                f"(fallback from {response.fallback_from}: {response.fallback_reason})"
            )
        return to_source_records(self.kind, response.results, count)


def build_provider_registry(source: Settings | None = None) -> dict[str, ProviderAdapter]:
    """One adapter per provider kind. Adding a provider means adding an entry here and a weight."""
    s = source or settings
    return {
        "general": GeneralWebAdapter(),
        "lit": PubMedAdapter(api_key=s.ncbi_api_key, years_back=s.pubmed_years_back),
        "preprint": PreprintAdapter(base_url=s.europepmc_base_url),
        "trials": ClinicalTrialsAdapter(base_url=s.clinical_trials_base_url),
    }
