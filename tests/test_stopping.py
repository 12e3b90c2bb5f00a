from __future__ import annotations

from app.models.research import StopReason
from app.services.stopping import decide


def test_continue_when_gap_and_rounds_left():
    decision = decide(1, 4, True, [25])
    assert decision.should_continue
    assert decision.reason is None


def test_max_rounds_takes_priority():
    decision = decide(4, 4, True, [25, 1, 0, 0], providers_exhausted=True)
    assert decision.reason == StopReason.MAX_ROUNDS_REACHED


def test_no_gap_stops():
    decision = decide(1, 4, False, [25])
    assert not decision.should_continue
    assert decision.reason == StopReason.NO_GAP_FOUND


def test_diminishing_returns_needs_two_low_rounds():
    assert decide(2, 4, True, [25, 2]).should_continue
    decision = decide(3, 4, True, [25, 2, 1])
    assert decision.reason == StopReason.DIMINISHING_RETURNS


def test_diminishing_returns_respects_min_growth():
    assert decide(3, 4, True, [25, 4, 4], min_growth=3).should_continue
    assert decide(3, 4, True, [25, 4, 4], min_growth=5).reason == StopReason.DIMINISHING_RETURNS


def test_provider_exhaustion_only_with_nothing_gathered():
    decision = decide(1, 4, True, [0], providers_exhausted=True, total_sources=0)
    assert decision.reason == StopReason.PROVIDER_EXHAUSTION
    assert decide(2, 4, True, [25, 10], providers_exhausted=True, total_sources=25).should_continue


def test_single_round_tier_stops_after_first_round():
    assert decide(1, 1, True, [10]).reason == StopReason.MAX_ROUNDS_REACHED
