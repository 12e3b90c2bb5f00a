"""Relevance scoring for gathered sources."""
from __future__ import annotations

import re
from typing import Any, Iterable, Sequence

from rank_bm25 import BM25Okapi

from app.agents.base import ModelAgent
from app.errors import RankingError
from app.models.research import SourceRecord
from app.services.logger import logger
from app.services.prompt_store import render_prompt

RANKER_SNIPPET_CHARS = 300

# Added to the lexical score; registries and indexed literature outrank the open web.
CREDIBILITY_BOOST: dict[str, float] = {
    "lit": 15.0,
    "trials": 15.0,
    "preprint": 8.0,
    "general": 5.0,
}

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _compute_bm25_scores(query: str, documents: list[str]) -> list[float]:
    """BM25 scores normalized to the 0-1 range."""
    if not documents:
        return []
    tokenized_docs = [_tokenize(doc) or [""] for doc in documents]
    bm25 = BM25Okapi(tokenized_docs)
    scores = [float(s) for s in bm25.get_scores(_tokenize(query))]
    max_score = max(scores) if scores else 0.0
    if max_score > 0:
        return [max(s, 0.0) / max_score for s in scores]
    return [0.0 for _ in scores]


def clamp_score(value: Any) -> float:
    score = float(value)
    if score != score:  # NaN
        raise ValueError("score is NaN")
    return min(max(score, 0.0), 100.0)


def lexical_rank(query: str, sources: Sequence[SourceRecord]) -> list[SourceRecord]:
    """Score without a model: BM25 over title and snippet, plus a provider credibility boost."""
    documents = [f"{s.title} {s.snippet}" for s in sources]
    bm25 = _compute_bm25_scores(query, documents)
    scored = [
        source.with_score(
            clamp_score(round(score * 85.0, 2) + CREDIBILITY_BOOST.get(source.provider_kind, 0.0))
        )
        for source, score in zip(sources, bm25)
    ]
    return order_by_score(scored)


def order_by_score(records: Iterable[SourceRecord]) -> list[SourceRecord]:
    """Descending by score; Python's sort is stable so ties keep discovery order."""
    return sorted(records, key=lambda r: -(r.relevance_score or 0.0))


def parse_scores(payload: dict[str, Any]) -> dict[str, float]:
    """Accept `{"scores": {"S1": 80}}` or `{"scores": [{"id": "S1", "score": 80}]}`."""
    raw = payload.get("scores")
    pairs: list[tuple[Any, Any]] = []
    if isinstance(raw, dict):
        pairs = list(raw.items())
    elif isinstance(raw, list):
        for entry in raw:
            if isinstance(entry, dict):
                pairs.append((entry.get("id") or entry.get("label"), entry.get("score")))
    else:
        raise RankingError("ranking response has no scores")

    scores: dict[str, float] = {}
    for label, value in pairs:
        if label is None:
            continue
        try:
            scores[str(label).strip().upper()] = clamp_score(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unreadable score for {label}: {value!r}")
    return scores


class SourceRanker(ModelAgent):
    """One batched, low-temperature scoring call for a set of sources.

    Every input comes back scored: ids the model skipped get 0. If the call
    itself fails the whole batch is scored lexically instead.
    """

    name = "source_ranker"

    def _render(self, query: str, labelled: dict[str, SourceRecord]) -> str:
        lines = [
            f"{label}. [{source.provider_kind}] {source.title}\n    {source.snippet[:RANKER_SNIPPET_CHARS]}"
            for label, source in labelled.items()
        ]
        return render_prompt("ranker.score", query=query, sources="\n".join(lines))

    async def rank(self, query: str, sources: Sequence[SourceRecord]) -> list[SourceRecord]:
        if not sources:
            return []
        labelled = {f"S{index}": source for index, source in enumerate(sources, start=1)}
        try:
            payload = await self._complete_json(self._render(query, labelled))
            scores = parse_scores(payload)
        except Exception as exc:
            logger.warning(f"Model ranking failed for {len(sources)} sources, using lexical scores: {exc}")
            return lexical_rank(query, sources)

        missing: list[str] = []
        scored: list[SourceRecord] = []
        for label, source in labelled.items():
            if label in scores:
                scored.append(source.with_score(scores[label]))
            else:
                missing.append(source.id)
                scored.append(source.with_score(0.0))
        if missing:
            logger.warning(f"Ranker returned no score for {len(missing)} sources, scored 0: {missing[:10]}")
        return order_by_score(scored)
