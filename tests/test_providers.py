"""Provider adapters against canned API payloads."""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.errors import ProviderError
from app.tools import brave_search
from app.tools.clinical_trials import ClinicalTrialsAdapter
from app.tools.preprint_search import PreprintAdapter
from app.tools.pubmed_search import PubMedAdapter, article_type
from app.tools.search_provider import (
    GeneralWebAdapter,
    ProviderAdapter,
    SearchResponse,
    build_provider_registry,
    to_source_records,
)
from app.tools.tavily_search import SearchResult
from fakes import make_settings


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            request = httpx.Request("GET", "https://example.org")
            raise httpx.HTTPStatusError(
                f"HTTP {self.status_code}",
                request=request,
                response=httpx.Response(self.status_code, request=request),
            )

    def json(self):
        return self._payload


class FakeAsyncClient:
    """Routes GETs to canned payloads by URL suffix and records every call."""

    routes: dict[str, FakeResponse] = {}
    calls: list[tuple[str, dict, dict]] = []

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def get(self, url, params=None, headers=None):
        FakeAsyncClient.calls.append((url, dict(params or {}), dict(headers or {})))
        for suffix, response in self.routes.items():
            if url.endswith(suffix):
                return response
        raise AssertionError(f"unexpected url {url}")


@pytest.fixture
def fake_http():
    FakeAsyncClient.routes = {}
    FakeAsyncClient.calls = []
    with patch("httpx.AsyncClient", FakeAsyncClient):
        yield FakeAsyncClient


@pytest.mark.asyncio
async def test_pubmed_searches_then_summarizes(fake_http):
    fake_http.routes = {
        "esearch.fcgi": FakeResponse({"esearchresult": {"idlist": ["111", "222"]}}),
        "esummary.fcgi": FakeResponse(
            {
                "result": {
                    "uids": ["111", "222"],
                    "111": {
                        "title": "Smoking cessation and lung function",
                        "pubtype": ["Journal Article", "Randomized Controlled Trial"],
                        "fulljournalname": "Thorax",
                        "pubdate": "2023 Mar",
                        "sortpubdate": "2023/03/01 00:00",
                        "authors": [{"name": "Smith J"}, {"name": "Doe A"}],
                    },
                    "222": {"title": "COPD outcomes", "pubtype": ["Review"]},
                }
            }
        ),
    }
    adapter = PubMedAdapter(api_key="k", years_back=5)

    records = await adapter.fetch("smoking lungs", 2, 5.0)

    assert [r.id for r in records] == [
        "https://pubmed.ncbi.nlm.nih.gov/111",
        "https://pubmed.ncbi.nlm.nih.gov/222",
    ]
    assert records[0].provider_kind == "lit"
    assert records[0].snippet.startswith("RCT. Thorax. 2023 Mar. Smith J, Doe A")
    search_params = fake_http.calls[0][1]
    assert search_params["term"] == "smoking lungs"
    assert search_params["retmax"] == 2
    assert search_params["reldate"] == 5 * 365
    assert search_params["api_key"] == "k"
    assert fake_http.calls[1][1]["id"] == "111,222"


@pytest.mark.asyncio
async def test_pubmed_no_hits_skips_summary(fake_http):
    fake_http.routes = {"esearch.fcgi": FakeResponse({"esearchresult": {"idlist": []}})}

    assert await PubMedAdapter().fetch("nothing", 5, 5.0) == []
    assert len(fake_http.calls) == 1


@pytest.mark.asyncio
async def test_pubmed_http_error_is_provider_error(fake_http):
    fake_http.routes = {"esearch.fcgi": FakeResponse({}, status_code=429)}

    with pytest.raises(ProviderError) as exc_info:
        await PubMedAdapter().fetch("q", 5, 5.0)

    assert exc_info.value.retryable
    assert exc_info.value.provider == "lit"


def test_article_type_prefers_known_types():
    assert article_type(["Journal Article", "Meta-Analysis"]) == "Meta-Analysis"
    assert article_type(["Editorial"]) == "Research Article"


@pytest.mark.asyncio
async def test_preprints_are_keyed_by_doi(fake_http):
    fake_http.routes = {
        "/search": FakeResponse(
            {
                "resultList": {
                    "result": [
                        {
                            "id": "PPR1",
                            "source": "PPR",
                            "doi": "10.1101/2024.01.01.000001",
                            "title": "Vaping and airway inflammation",
                            "authorString": "Lee K, Park J.",
                            "firstPublicationDate": "2024-01-02",
                            "bookOrReportDetails": {"publisher": "bioRxiv"},
                        },
                        {
                            "id": "PPR2",
                            "source": "PPR",
                            "doi": "10.1101/2024.01.01.000001",
                            "title": "Vaping and airway inflammation (v2)",
                        },
                        {"id": "PPR3", "source": "PPR", "title": "No DOI preprint"},
                        {"id": "PPR4", "source": "PPR", "title": ""},
                    ]
                }
            }
        )
    }

    records = await PreprintAdapter().fetch("vaping", 5, 5.0)

    assert [r.id for r in records] == [
        "doi:10.1101/2024.01.01.000001",
        "https://europepmc.org/article/PPR/PPR3",
    ]
    assert records[0].url == "https://doi.org/10.1101/2024.01.01.000001"
    assert records[0].snippet == "Preprint (not peer reviewed). bioRxiv. Lee K, Park J."
    assert fake_http.calls[0][1]["query"] == "(vaping) AND SRC:PPR"


@pytest.mark.asyncio
async def test_clinical_trials_maps_studies(fake_http):
    fake_http.routes = {
        "/studies": FakeResponse(
            {
                "studies": [
                    {
                        "protocolSection": {
                            "identificationModule": {
                                "nctId": "NCT01234567",
                                "briefTitle": "Nicotine Patch Study",
                                "officialTitle": "A Randomized Trial of Nicotine Patches",
                            },
                            "statusModule": {
                                "overallStatus": "RECRUITING",
                                "startDateStruct": {"date": "2023-05"},
                            },
                            "designModule": {"phases": ["PHASE3"]},
                            "descriptionModule": {"briefSummary": "Tests cessation rates."},
                        }
                    },
                    {"protocolSection": {"identificationModule": {}}},
                ]
            }
        )
    }

    records = await ClinicalTrialsAdapter().fetch("nicotine", 3, 5.0)

    assert len(records) == 1
    record = records[0]
    assert record.id == record.url == "https://clinicaltrials.gov/study/NCT01234567"
    assert record.title == "A Randomized Trial of Nicotine Patches"
    assert record.snippet == "RECRUITING. PHASE3. Tests cessation rates."
    assert record.published_at == "2023-05"
    assert fake_http.calls[0][1]["query.term"] == "nicotine"


@pytest.mark.asyncio
async def test_malformed_registry_payload_is_not_retryable(fake_http):
    fake_http.routes = {"/studies": FakeResponse(["not", "an", "object"])}

    with pytest.raises(ProviderError) as exc_info:
        await ClinicalTrialsAdapter().fetch("q", 3, 5.0)

    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_brave_search_normalizes_results(fake_http):
    fake_http.routes = {
        "/web/search": FakeResponse(
            {
                "web": {
                    "results": [
                        {"title": "A", "url": "https://a.example", "description": "first", "page_age": "2024-02-01"},
                        {"title": "B", "url": "https://b.example", "extra_snippets": ["x", "y"]},
                    ]
                }
            }
        )
    }

    with patch("app.tools.brave_search.settings") as mock_settings:
        mock_settings.brave_api_key = "brave-key"
        results = await brave_search.search("q", max_results=50)

    assert [r.content for r in results] == ["first", "x y"]
    assert results[0].published_at == "2024-02-01"
    assert results[0].score > results[1].score
    url, params, headers = fake_http.calls[0]
    assert params["count"] == 20
    assert headers["X-Subscription-Token"] == "brave-key"


def test_to_source_records_canonicalizes_and_dedupes():
    results = [
        SearchResult(title="A", url="https://Example.com/a/?utm_source=x", content="one", score=0.9),
        SearchResult(title="A again", url="https://example.com/a", content="two", score=0.8),
        SearchResult(title="Bad", url="ftp://example.com/file", content="", score=0.5),
        SearchResult(title="C", url="https://example.com/c", content="three", score=0.4),
    ]

    records = to_source_records("general", results, 5)

    assert [r.id for r in records] == ["https://example.com/a", "https://example.com/c"]
    assert records[0].url == "https://Example.com/a/?utm_source=x"


def test_to_source_records_skips_unparseable_urls_without_losing_the_batch():
    results = [
        SearchResult(title="Good", url="https://example.com/good", content="one", score=0.9),
        SearchResult(title="Bad port", url="https://bad.example:99999/x", content="two", score=0.8),
        SearchResult(title="Bad host", url="http://[::1/x", content="three", score=0.7),
        SearchResult(title="Also good", url="https://example.com/also", content="four", score=0.6),
    ]

    records = to_source_records("general", results, 10)

    assert [r.title for r in records] == ["Good", "Also good"]


@pytest.mark.asyncio
async def test_general_adapter_keeps_good_results_next_to_a_bad_url():
    response = SearchResponse(
        results=[
            SearchResult(title="Good", url="https://example.com/good", content="one", score=0.9),
            SearchResult(title="Bad port", url="https://bad.example:99999/x", content="two", score=0.8),
        ],
        provider="tavily",
    )
    with patch("app.tools.search_provider.search", AsyncMock(return_value=response)):
        records = await GeneralWebAdapter().fetch("q", 5, 5.0)

    assert [r.id for r in records] == ["https://example.com/good"]


@pytest.mark.asyncio
async def test_general_adapter_wraps_search_failures():
    with patch("app.tools.search_provider.search", AsyncMock(side_effect=RuntimeError("quota"))):
        with pytest.raises(ProviderError) as exc_info:
            await GeneralWebAdapter().fetch("q", 3, 5.0)

    assert exc_info.value.provider == "general"


@pytest.mark.asyncio
async def test_missing_search_key_is_not_retryable():
    with patch("app.tools.search_provider.settings") as provider_settings, patch(
        "app.tools.tavily_search.settings"
    ) as tavily_settings:
        provider_settings.search_provider = "tavily"
        tavily_settings.tavily_api_key = ""
        with pytest.raises(ProviderError) as exc_info:
            await GeneralWebAdapter().fetch("q", 3, 5.0)

    assert not exc_info.value.retryable
    assert "TAVILY_API_KEY" in str(exc_info.value)


@pytest.mark.asyncio
async def test_search_falls_back_to_tavily_when_brave_fails():
    from app.tools import search_provider

    tavily_results = [SearchResult(title="T", url="https://t.example", content="c", score=1.0)]
    with patch("app.tools.search_provider.settings") as mock_settings, patch(
        "app.tools.search_provider.brave_search.search", AsyncMock(side_effect=RuntimeError("brave down"))
    ), patch("app.tools.search_provider.tavily_search.search", AsyncMock(return_value=tavily_results)):
        mock_settings.search_provider = "brave"
        mock_settings.search_fallback_to_tavily = True

        response = await search_provider.search("q", max_results=3)

    assert response.provider == "tavily"
    assert response.fallback_from == "brave"
    assert response.results == tavily_results


@pytest.mark.asyncio
async def test_search_raises_when_provider_unsupported():
    from app.tools import search_provider

    with patch("app.tools.search_provider.settings") as mock_settings:
        mock_settings.search_provider = "unknown-provider"

        with pytest.raises(ValueError):
            await search_provider.search("query")


def test_registry_has_one_adapter_per_kind():
    registry = build_provider_registry(make_settings(ncbi_api_key="abc", pubmed_years_back=2))

    assert set(registry) == {"general", "lit", "preprint", "trials"}
    assert all(isinstance(adapter, ProviderAdapter) for adapter in registry.values())
    assert all(adapter.kind == kind for kind, adapter in registry.items())
    assert registry["lit"].api_key == "abc"
    assert registry["lit"].years_back == 2
