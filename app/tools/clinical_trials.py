"""ClinicalTrials.gov registry adapter (API v2)."""
from __future__ import annotations

from typing import Any

import httpx

from app.errors import provider_error_from
from app.models.research import SourceRecord
from app.tools.web_utils import clean_content

CLINICAL_TRIALS_BASE_URL = "https://clinicaltrials.gov/api/v2"
STUDY_URL = "https://clinicaltrials.gov/study/{nct_id}"
MAX_PAGE_SIZE = 100


def _study_record(kind: str, study: dict[str, Any]) -> SourceRecord | None:
    protocol = study.get("protocolSection") or {}
    ident = protocol.get("identificationModule") or {}
    nct_id = ident.get("nctId")
    if not nct_id:
        return None
    status = protocol.get("statusModule") or {}
    design = protocol.get("designModule") or {}
    description = protocol.get("descriptionModule") or {}

    phases = ", ".join(design.get("phases", []) or [])
    summary_parts = [
        status.get("overallStatus") or "",
        phases,
        description.get("briefSummary") or "",
    ]
    url = STUDY_URL.format(nct_id=nct_id)
    return SourceRecord(
        id=url,
        provider_kind=kind,
        url=url,
        title=clean_content(ident.get("officialTitle") or ident.get("briefTitle") or nct_id, 300),
        snippet=clean_content(". ".join(p for p in summary_parts if p), 600),
        published_at=(status.get("studyFirstPostDateStruct") or {}).get("date")
        or (status.get("startDateStruct") or {}).get("date"),
    )


class ClinicalTrialsAdapter:
    kind = "trials"

    def __init__(self, *, base_url: str = CLINICAL_TRIALS_BASE_URL):
        self.base_url = base_url.rstrip("/")

    async def fetch(self, query: str, count: int, timeout: float) -> list[SourceRecord]:
        if count <= 0:
            return []
        params = {
            "query.term": query,
            "pageSize": min(count, MAX_PAGE_SIZE),
            "format": "json",
        }
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(f"{self.base_url}/studies", params=params)
                response.raise_for_status()
                payload = response.json()
                if not isinstance(payload, dict):
                    raise ValueError("expected a JSON object")
        except Exception as exc:
            raise provider_error_from(self.kind, exc) from exc

        records: list[SourceRecord] = []
        for study in payload.get("studies", []) or []:
            record = _study_record(self.kind, study)
            if record is not None:
                records.append(record)
            if len(records) >= count:
                break
        return records
