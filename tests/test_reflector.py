from __future__ import annotations

import pytest

from app.agents.planner import QueryPlanner, normalize_text_list
from app.agents.reflector import REFINED_QUERY_MAX_CHARS, GapReflector, QueryRefiner
from app.errors import RefinementError
from app.models.llm import ModelConfig
from app.models.research import GapAssessment, Query
from fakes import ScriptedModel, make_record

CONFIG = ModelConfig(model="m", max_tokens=512)


def test_normalize_text_list_dedupes_and_caps():
    assert normalize_text_list(["  a  b ", "a b", "x", "cd e", "fgh"], max_items=2) == ("a b", "cd e")
    assert normalize_text_list("not a list", max_items=3) == ()


@pytest.mark.asyncio
async def test_planner_clamps_estimated_rounds():
    model = ScriptedModel(
        {"query_planner": '{"strategy": "Start broad.", "focus_areas": ["mortality", "COPD"], "estimated_rounds": 9}'}
    )

    plan = await QueryPlanner(model, CONFIG).plan("smoking harms", 4)

    assert plan.strategy == "Start broad."
    assert plan.focus_areas == ("mortality", "COPD")
    assert plan.estimated_rounds == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("rounds", ["1e999", "-1e999", "NaN", '"many"', "null"])
async def test_planner_unreadable_round_estimate_uses_tier_limit(rounds):
    model = ScriptedModel({"query_planner": f'{{"strategy": "Go.", "estimated_rounds": {rounds}}}'})

    plan = await QueryPlanner(model, CONFIG).plan("smoking harms", 4)

    assert plan.strategy == "Go."
    assert plan.estimated_rounds == 4


@pytest.mark.asyncio
async def test_planner_failure_returns_default_plan():
    model = ScriptedModel({"query_planner": "I cannot plan this"})

    plan = await QueryPlanner(model, CONFIG).plan("smoking harms", 3)

    assert plan.strategy == ""
    assert plan.focus_areas == ()
    assert plan.estimated_rounds == 3


@pytest.mark.asyncio
async def test_reflect_reports_gap():
    model = ScriptedModel(
        {
            "gap_reflector": (
                '{"has_gap": true, "gap_description": "no long-term cohort data", '
                '"gaps": ["cohort data"], "evidence_quality": "LOW"}'
            )
        }
    )
    sources = [make_record("lit", "a"), make_record("general", "b")]

    gap = await GapReflector(model, CONFIG).reflect("smoking harms", sources, 1, 4)

    assert gap.has_gap
    assert gap.gap_description == "no long-term cohort data"
    assert gap.gaps == ("cohort data",)
    assert gap.evidence_quality == "low"
    assert "Retrieval round: 1 of 4" in model.calls[0][1]


@pytest.mark.asyncio
async def test_reflect_without_sources_skips_the_model():
    model = ScriptedModel()

    gap = await GapReflector(model, CONFIG).reflect("q", [], 1, 4)

    assert gap.has_gap
    assert model.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("response", ["not json", '{"has_gap": "maybe"}', RuntimeError("timeout")])
async def test_reflect_failure_means_no_gap(response):
    model = ScriptedModel({"gap_reflector": response})

    gap = await GapReflector(model, CONFIG).reflect("q", [make_record("lit", "a")], 2, 4)

    assert not gap.has_gap


@pytest.mark.asyncio
async def test_refine_keeps_lineage_and_cleans_output():
    model = ScriptedModel({"query_refiner": '\nRefined query: "smoking COPD cohort 20 year follow-up"\nextra line'})
    query = Query(text="smoking harms")

    refined = await QueryRefiner(model, CONFIG).refine(query, GapAssessment(has_gap=True, gap_description="cohorts"))

    assert refined.text == "smoking COPD cohort 20 year follow-up"
    assert refined.original == "smoking harms"
    assert refined.lineage == ("smoking harms",)
    assert "Missing evidence: cohorts" in model.calls[0][1]


@pytest.mark.asyncio
async def test_refine_truncates_long_queries():
    model = ScriptedModel({"query_refiner": "word " * 100})

    refined = await QueryRefiner(model, CONFIG).refine(Query(text="q"), GapAssessment(has_gap=True))

    assert len(refined.text) <= REFINED_QUERY_MAX_CHARS


@pytest.mark.asyncio
@pytest.mark.parametrize("response", ["   \n  ", RuntimeError("overloaded")])
async def test_refine_failure_raises(response):
    model = ScriptedModel({"query_refiner": response})

    with pytest.raises(RefinementError):
        await QueryRefiner(model, CONFIG).refine(Query(text="q"), GapAssessment(has_gap=True))
