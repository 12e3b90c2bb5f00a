from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class Tier(str, Enum):
    FAST = "fast"
    HYBRID = "hybrid"
    DEEP = "deep"

    @classmethod
    def parse(cls, value: Any) -> Tier | None:
        """Accept tier names or the numeric 1/2/3 form; None when unrecognised."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            return None
        if isinstance(value, float):
            if not math.isfinite(value) or not value.is_integer():
                return None
            value = int(value)
        if isinstance(value, int):
            return {1: cls.FAST, 2: cls.HYBRID, 3: cls.DEEP}.get(value)
        if isinstance(value, str):
            text = value.strip().lower()
            if text.isdigit():
                return cls.parse(int(text))
            for tier in cls:
                if text == tier.value:
                    return tier
        return None


@dataclass(frozen=True)
class Query:
    """A question as asked, plus every rewrite it went through."""

    text: str
    context: tuple[str, ...] = ()
    media_ref: str | None = None
    lineage: tuple[str, ...] = ()

    @property
    def original(self) -> str:
        return self.lineage[0] if self.lineage else self.text

    def refine(self, text: str) -> Query:
        return replace(self, text=text, lineage=(*self.lineage, self.text))


@dataclass(frozen=True)
class SourceRecord:
    id: str
    provider_kind: str
    url: str
    title: str
    snippet: str = ""
    published_at: str | None = None
    relevance_score: float | None = None

    @property
    def is_ranked(self) -> bool:
        return self.relevance_score is not None

    def with_score(self, score: float) -> SourceRecord:
        return replace(self, relevance_score=float(score))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider_kind": self.provider_kind,
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
            "published_at": self.published_at,
            "relevance_score": self.relevance_score,
        }


@dataclass(frozen=True)
class RoundResult:
    round_number: int
    query: str
    new_sources: tuple[SourceRecord, ...] = ()
    provider_errors: dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0
    allocation: dict[str, int] = field(default_factory=dict)
    provider_counts: dict[str, int] = field(default_factory=dict)

    @property
    def providers_exhausted(self) -> bool:
        """True when every provider that was asked for sources failed."""
        active = [kind for kind, count in self.allocation.items() if count > 0]
        return bool(active) and all(kind in self.provider_errors for kind in active)


class StopReason(str, Enum):
    MAX_ROUNDS_REACHED = "max_rounds_reached"
    NO_GAP_FOUND = "no_gap_found"
    DIMINISHING_RETURNS = "diminishing_returns"
    PROVIDER_EXHAUSTION = "provider_exhaustion"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StopDecision:
    should_continue: bool
    reason: StopReason | None = None


@dataclass(frozen=True)
class ResearchPlan:
    strategy: str
    focus_areas: tuple[str, ...] = ()
    estimated_rounds: int = 1


@dataclass(frozen=True)
class GapAssessment:
    has_gap: bool
    gap_description: str = ""
    gaps: tuple[str, ...] = ()
    evidence_quality: str = "medium"


@dataclass
class ResearchState:
    """Mutable accumulator for one request. Only the loop controller writes to it."""

    all_sources: dict[str, SourceRecord] = field(default_factory=dict)
    rounds_completed: int = 0
    last_gap_assessment: GapAssessment | None = None
    rounds: list[RoundResult] = field(default_factory=list)
    source_growth: list[int] = field(default_factory=list)
    queries: list[str] = field(default_factory=list)

    def snapshot(self) -> list[SourceRecord]:
        return list(self.all_sources.values())

    @property
    def had_provider_errors(self) -> bool:
        return any(r.provider_errors for r in self.rounds)
