"""Continue/stop decision for the research loop. Pure; no I/O."""
from __future__ import annotations

from typing import Sequence

from app.models.research import StopDecision, StopReason

DEFAULT_MIN_GROWTH = 3


def decide(
    rounds_completed: int,
    max_rounds: int,
    has_gap: bool,
    source_growth: Sequence[int],
    *,
    providers_exhausted: bool = False,
    total_sources: int = 0,
    min_growth: int = DEFAULT_MIN_GROWTH,
) -> StopDecision:
    """First matching reason wins, in this order:

    1. MaxRoundsReached: `rounds_completed >= max_rounds`.
    2. NoGapFound: the reflector found nothing missing.
    3. DiminishingReturns: the last two rounds each added fewer than `min_growth`
       new unique sources.
    4. ProviderExhaustion: every provider failed this round and nothing has been
       gathered at all.

    `source_growth` is the per-round count of new unique sources, latest last.
    """
    if rounds_completed >= max_rounds:
        return StopDecision(should_continue=False, reason=StopReason.MAX_ROUNDS_REACHED)
    if not has_gap:
        return StopDecision(should_continue=False, reason=StopReason.NO_GAP_FOUND)
    if len(source_growth) >= 2 and all(g < min_growth for g in source_growth[-2:]):
        return StopDecision(should_continue=False, reason=StopReason.DIMINISHING_RETURNS)
    if providers_exhausted and total_sources == 0:
        return StopDecision(should_continue=False, reason=StopReason.PROVIDER_EXHAUSTION)
    return StopDecision(should_continue=True)
