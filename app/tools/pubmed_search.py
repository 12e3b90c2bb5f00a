"""PubMed adapter over the NCBI E-utilities (esearch for ids, esummary for metadata)."""
from __future__ import annotations

from typing import Any

import httpx

from app.errors import provider_error_from
from app.models.research import SourceRecord
from app.tools.web_utils import clean_content

EUTILS_BASE_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
PUBMED_ARTICLE_URL = "https://pubmed.ncbi.nlm.nih.gov/{pmid}"

PUBLICATION_TYPES = {
    "Meta-Analysis": "Meta-Analysis",
    "Systematic Review": "Systematic Review",
    "Randomized Controlled Trial": "RCT",
    "Clinical Trial": "Clinical Trial",
    "Observational Study": "Observational Study",
    "Case Reports": "Case Report",
    "Review": "Review",
}


def article_type(pub_types: list[str]) -> str:
    for pub_type in pub_types:
        if pub_type in PUBLICATION_TYPES:
            return PUBLICATION_TYPES[pub_type]
    return "Research Article"


def _summary_snippet(article: dict[str, Any]) -> str:
    authors = [a.get("name", "") for a in article.get("authors", []) or [] if a.get("name")]
    author_text = ", ".join(authors[:3]) + (" et al." if len(authors) > 3 else "")
    parts = [
        article_type(article.get("pubtype", []) or []),
        article.get("fulljournalname") or article.get("source") or "",
        article.get("pubdate") or "",
        author_text,
    ]
    return clean_content(". ".join(p for p in parts if p), 600)


class PubMedAdapter:
    kind = "lit"

    def __init__(self, *, api_key: str = "", years_back: int = 5, base_url: str = EUTILS_BASE_URL):
        self.api_key = api_key
        self.years_back = years_back
        self.base_url = base_url.rstrip("/")

    def _params(self, **params: Any) -> dict[str, Any]:
        params["db"] = "pubmed"
        params["retmode"] = "json"
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    async def fetch(self, query: str, count: int, timeout: float) -> list[SourceRecord]:
        if count <= 0:
            return []
        search_params = self._params(term=query, retmax=count, sort="relevance")
        if self.years_back > 0:
            search_params["datetype"] = "pdat"
            search_params["reldate"] = self.years_back * 365

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(f"{self.base_url}/esearch.fcgi", params=search_params)
                response.raise_for_status()
                ids = [
                    str(pmid)
                    for pmid in (response.json().get("esearchresult", {}).get("idlist", []) or [])
                ]
                if not ids:
                    return []

                response = await client.get(
                    f"{self.base_url}/esummary.fcgi",
                    params=self._params(id=",".join(ids)),
                )
                response.raise_for_status()
                result = response.json().get("result", {}) or {}
        except Exception as exc:
            raise provider_error_from(self.kind, exc) from exc

        records: list[SourceRecord] = []
        for pmid in ids:
            article = result.get(pmid)
            if not isinstance(article, dict):
                continue
            url = PUBMED_ARTICLE_URL.format(pmid=pmid)
            records.append(
                SourceRecord(
                    id=url,
                    provider_kind=self.kind,
                    url=url,
                    title=clean_content(article.get("title") or "Untitled", 300),
                    snippet=_summary_snippet(article),
                    published_at=article.get("sortpubdate") or article.get("pubdate") or None,
                )
            )
        return records[:count]
