"""Gap reflection and query refinement between research rounds."""
from __future__ import annotations

from typing import Any, Sequence

from app.agents.base import ModelAgent
from app.agents.planner import normalize_text_list
from app.errors import RefinementError, ReflectionError
from app.models.research import GapAssessment, Query, SourceRecord
from app.services.logger import logger
from app.services.prompt_store import render_prompt

DIGEST_MAX_SOURCES = 30
DIGEST_SNIPPET_CHARS = 200
REFINED_QUERY_MAX_CHARS = 200
EVIDENCE_QUALITY = ("low", "medium", "high")


def source_digest(sources: Sequence[SourceRecord]) -> str:
    lines = []
    for index, source in enumerate(sources[:DIGEST_MAX_SOURCES], start=1):
        snippet = source.snippet[:DIGEST_SNIPPET_CHARS]
        lines.append(f"{index}. {source.title} [{source.provider_kind}] {snippet}".rstrip())
    return "\n".join(lines)


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


class GapReflector(ModelAgent):
    """Judges whether the gathered sources leave part of the question uncovered.

    Any failure answers "no gap", which ends the loop. With nothing gathered
    there is trivially a gap and no model call is made.
    """

    name = "gap_reflector"

    async def reflect(
        self,
        query: str,
        selected_sources: Sequence[SourceRecord],
        round_number: int,
        max_rounds: int,
    ) -> GapAssessment:
        if not selected_sources:
            return GapAssessment(
                has_gap=True,
                gap_description="No sources gathered yet.",
                evidence_quality="low",
            )

        prompt = render_prompt(
            "reflector.assess",
            query=query,
            round_number=f"{round_number} of {max_rounds}",
            source_count=len(selected_sources),
            source_digest=source_digest(selected_sources),
        )
        try:
            payload = await self._complete_json(prompt)
            has_gap = _as_bool(payload.get("has_gap"))
            if has_gap is None:
                raise ReflectionError(f"has_gap missing or not a boolean: {payload.get('has_gap')!r}")
        except Exception as exc:
            logger.warning(f"Reflection failed in round {round_number}, assuming no gap: {exc}")
            return GapAssessment(has_gap=False, gap_description="")

        quality = str(payload.get("evidence_quality") or "medium").strip().lower()
        gaps = normalize_text_list(payload.get("gaps"), max_items=5)
        description = " ".join(str(payload.get("gap_description") or "").split())
        if has_gap and not description and gaps:
            description = "; ".join(gaps)
        return GapAssessment(
            has_gap=has_gap,
            gap_description=description,
            gaps=gaps,
            evidence_quality=quality if quality in EVIDENCE_QUALITY else "medium",
        )


def _clean_query_text(text: str) -> str:
    line = next((ln for ln in text.strip().splitlines() if ln.strip()), "")
    line = line.strip()
    for prefix in ("query:", "new query:", "refined query:"):
        if line.lower().startswith(prefix):
            line = line[len(prefix):].strip()
    line = line.strip("\"'`").strip()
    return " ".join(line.split())[:REFINED_QUERY_MAX_CHARS].strip()


class QueryRefiner(ModelAgent):
    name = "query_refiner"

    async def refine(self, query: Query, gap: GapAssessment) -> Query:
        """Rewrite the query to target the gap. Raises RefinementError on any failure."""
        gaps = gap.gap_description or "; ".join(gap.gaps)
        prompt = render_prompt(
            "refiner.refine",
            original_query=query.original,
            current_query=query.text,
            gaps=gaps or "unspecified",
            max_chars=REFINED_QUERY_MAX_CHARS,
        )
        try:
            completion = await self._complete(prompt)
        except Exception as exc:
            raise RefinementError(f"refinement call failed: {exc}") from exc

        text = _clean_query_text(completion.text)
        if not text:
            raise RefinementError("refiner returned an empty query")
        return query.refine(text)
