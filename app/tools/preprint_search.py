"""Preprint adapter over the Europe PMC REST search, restricted to preprint servers."""
from __future__ import annotations

from typing import Any

import httpx

from app.errors import provider_error_from
from app.models.research import SourceRecord
from app.tools.web_utils import canonicalize_url, clean_content

EUROPEPMC_BASE_URL = "https://www.ebi.ac.uk/europepmc/webservices/rest"
EUROPEPMC_ARTICLE_URL = "https://europepmc.org/article/{source}/{id}"
# Europe PMC caps pageSize at 1000; a round never asks for anywhere near that.
MAX_PAGE_SIZE = 100


def preprint_id(item: dict[str, Any], url: str) -> str:
    """Preprint URLs are versioned; the DOI is the stable identity when present."""
    doi = (item.get("doi") or "").strip().lower()
    if doi:
        return f"doi:{doi}"
    return canonicalize_url(url)


def _preprint_url(item: dict[str, Any]) -> str:
    doi = (item.get("doi") or "").strip()
    if doi:
        return f"https://doi.org/{doi}"
    return EUROPEPMC_ARTICLE_URL.format(source=item.get("source", "PPR"), id=item.get("id", ""))


def _snippet(item: dict[str, Any]) -> str:
    server = (item.get("bookOrReportDetails") or {}).get("publisher") or ""
    parts = [
        "Preprint (not peer reviewed)",
        server,
        item.get("authorString") or "",
    ]
    return clean_content(". ".join(p for p in parts if p), 600)


class PreprintAdapter:
    kind = "preprint"

    def __init__(self, *, base_url: str = EUROPEPMC_BASE_URL):
        self.base_url = base_url.rstrip("/")

    async def fetch(self, query: str, count: int, timeout: float) -> list[SourceRecord]:
        if count <= 0:
            return []
        params = {
            "query": f"({query}) AND SRC:PPR",
            "format": "json",
            "resultType": "lite",
            "pageSize": min(count, MAX_PAGE_SIZE),
            "sort": "RELEVANCE",
        }
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(f"{self.base_url}/search", params=params)
                response.raise_for_status()
                payload = response.json()
                if not isinstance(payload, dict):
                    raise ValueError("expected a JSON object")
        except Exception as exc:
            raise provider_error_from(self.kind, exc) from exc

        records: list[SourceRecord] = []
        seen: set[str] = set()
        for item in (payload.get("resultList") or {}).get("result", []) or []:
            title = item.get("title") or ""
            if not title:
                continue
            url = _preprint_url(item)
            record_id = preprint_id(item, url)
            if record_id in seen:
                continue
            seen.add(record_id)
            records.append(
                SourceRecord(
                    id=record_id,
                    provider_kind=self.kind,
                    url=url,
                    title=clean_content(title, 300),
                    snippet=_snippet(item),
                    published_at=item.get("firstPublicationDate") or item.get("pubYear"),
                )
            )
            if len(records) >= count:
                break
        return records
