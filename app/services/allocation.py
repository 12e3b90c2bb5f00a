"""Per-round source allocation across providers.

Counts are a validated value object: a fixed slice goes to the general web
provider and the rest is apportioned over the specialised providers according
to a topic profile. Adding a provider means adding a weight, not code.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Mapping

from app.errors import AllocationError
from app.models.research import Tier


DEFAULT_TOPIC_PROFILES: dict[str, dict[str, float]] = {
    "drug_safety": {"lit": 0.7, "preprint": 0.1, "trials": 0.2},
    "new_research": {"lit": 0.5, "preprint": 0.3, "trials": 0.2},
    "nutrition": {"lit": 0.8, "preprint": 0.15, "trials": 0.05},
    "treatment": {"lit": 0.65, "preprint": 0.1, "trials": 0.25},
    "general": {"lit": 0.55, "preprint": 0.2, "trials": 0.25},
}

# Checked in order; first match wins.
DEFAULT_TOPIC_PATTERNS: dict[str, str] = {
    "drug_safety": r"side effect|adverse|interaction|contraindicat|dosage|dosing|\bdose\b|safe to take|toxicity",
    "new_research": r"latest|breakthrough|recent|new stud|emerging|clinical trial|\b202[4-9]\b",
    "nutrition": r"nutrition|\bdiet\b|food|recipe|\bcarb|protein|\bmeal",
    "treatment": r"treatment|therapy|guideline|protocol|management|\btarget",
}


@dataclass(frozen=True)
class SourceAllocation:
    """How many sources each provider is asked for in one round."""

    counts: Mapping[str, int]
    total: int

    def __post_init__(self) -> None:
        if not isinstance(self.total, int) or isinstance(self.total, bool) or self.total < 0:
            raise AllocationError(f"Allocation total must be a non-negative int, got {self.total!r}")
        for kind, count in self.counts.items():
            if not isinstance(count, int) or isinstance(count, bool) or count < 0:
                raise AllocationError(f"Allocation for {kind!r} must be a non-negative int, got {count!r}")
        allocated = sum(self.counts.values())
        if allocated != self.total:
            raise AllocationError(
                f"Allocation sums to {allocated}, expected {self.total}: {dict(self.counts)}"
            )
        object.__setattr__(self, "counts", dict(self.counts))

    def active(self) -> dict[str, int]:
        return {kind: count for kind, count in self.counts.items() if count > 0}

    def items(self):
        return self.counts.items()

    def to_dict(self) -> dict[str, int]:
        return dict(self.counts)


def distribute(
    total: int,
    general_kind: str,
    general_count: int,
    weights: Mapping[str, float],
) -> SourceAllocation:
    """Split `total` into a fixed general slice plus a weighted apportionment.

    Largest-remainder rounding; remainder ties go to the smaller weight, then
    to declaration order.
    """
    if general_count < 0 or general_count > total:
        raise AllocationError(f"General count {general_count} does not fit in total {total}")
    if not weights or any(w <= 0 for w in weights.values()):
        raise AllocationError(f"Weights must be positive and non-empty: {dict(weights)}")
    if general_kind in weights:
        raise AllocationError(f"{general_kind!r} has a fixed count and cannot also be weighted")

    remaining = total - general_count
    exact = {kind: Fraction(str(w)) for kind, w in weights.items()}
    weight_sum = sum(exact.values())
    shares = {kind: Fraction(remaining) * w / weight_sum for kind, w in exact.items()}
    counts = {kind: math.floor(share) for kind, share in shares.items()}

    leftover = remaining - sum(counts.values())
    order = list(weights)
    by_remainder = sorted(
        order,
        key=lambda kind: (-(shares[kind] - counts[kind]), exact[kind], order.index(kind)),
    )
    for kind in by_remainder[:leftover]:
        counts[kind] += 1

    return SourceAllocation(counts={general_kind: general_count, **counts}, total=total)


@dataclass(frozen=True)
class RoundTotals:
    first_total: int
    first_general: int
    follow_up_total: int
    follow_up_general: int

    def for_round(self, round_number: int) -> tuple[int, int]:
        if round_number <= 1:
            return self.first_total, self.first_general
        return self.follow_up_total, self.follow_up_general


@dataclass(frozen=True)
class AllocationPolicy:
    general_kind: str = "general"
    topic_profiles: Mapping[str, Mapping[str, float]] = field(
        default_factory=lambda: DEFAULT_TOPIC_PROFILES
    )
    topic_patterns: Mapping[str, str] = field(default_factory=lambda: DEFAULT_TOPIC_PATTERNS)
    default_category: str = "general"
    round_totals: Mapping[Tier, RoundTotals] = field(default_factory=dict)

    def categorize(self, query: str) -> str:
        for category, pattern in self.topic_patterns.items():
            if category in self.topic_profiles and re.search(pattern, query, flags=re.IGNORECASE):
                return category
        return self.default_category

    def estimated_total(self, tier: Tier, round_number: int) -> int:
        return self.round_totals[tier].for_round(round_number)[0]

    def allocate(self, query: str, tier: Tier, round_number: int) -> SourceAllocation:
        if tier not in self.round_totals:
            raise AllocationError(f"No round totals configured for tier {tier.value}")
        total, general_count = self.round_totals[tier].for_round(round_number)
        category = self.categorize(query)
        return distribute(total, self.general_kind, general_count, self.topic_profiles[category])
