"""Pick the sources that go into synthesis under a top-k and token budget."""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Sequence

from app.models.research import SourceRecord
from app.services.logger import logger

_WORD_RE = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class SelectionResult:
    selected: list[SourceRecord] = field(default_factory=list)
    total_tokens: int = 0
    skipped_near_duplicates: int = 0
    skipped_below_min_score: int = 0
    budget_exhausted: bool = False


def estimate_tokens(record: SourceRecord) -> int:
    """Rough prompt cost of a source: four characters per token."""
    chars = len(record.title) + len(record.snippet) + len(record.url)
    return math.ceil(chars / 4)


def _word_set(record: SourceRecord) -> frozenset[str]:
    return frozenset(_WORD_RE.findall(f"{record.title} {record.snippet}".lower()))


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def select(
    ranked: Sequence[SourceRecord],
    k: int,
    budget: int,
    *,
    min_score: float = 0.0,
    similarity_threshold: float | None = None,
) -> SelectionResult:
    """Greedy selection in rank order.

    Stops at the first source whose estimated tokens would overflow `budget`,
    so the result never exceeds it and may hold fewer than `k` sources. With a
    `similarity_threshold`, a source whose title+snippet word set is more
    similar than the threshold to an already selected one is skipped.
    """
    unscored = [record.id for record in ranked if record.relevance_score is None]
    if unscored:
        raise ValueError(f"Cannot select unranked sources: {unscored[:5]}")

    selected: list[SourceRecord] = []
    selected_words: list[frozenset[str]] = []
    total_tokens = 0
    near_duplicates = 0
    below_min = 0
    budget_exhausted = False

    for record in ranked:
        if len(selected) >= max(k, 0):
            break
        if record.relevance_score < min_score:
            below_min += 1
            continue
        words = _word_set(record)
        if similarity_threshold is not None and any(
            jaccard(words, other) > similarity_threshold for other in selected_words
        ):
            near_duplicates += 1
            continue
        cost = estimate_tokens(record)
        if total_tokens + cost > budget:
            budget_exhausted = True
            logger.info(
                f"Selection budget reached: {total_tokens} + {cost} > {budget}, "
                f"stopping at {len(selected)} sources"
            )
            break
        selected.append(record)
        selected_words.append(words)
        total_tokens += cost

    return SelectionResult(
        selected=selected,
        total_tokens=total_tokens,
        skipped_near_duplicates=near_duplicates,
        skipped_below_min_score=below_min,
        budget_exhausted=budget_exhausted,
    )
