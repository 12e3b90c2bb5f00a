from __future__ import annotations

import pytest

from app.agents.ranker import SourceRanker, lexical_rank, order_by_score, parse_scores
from app.errors import RankingError
from app.models.llm import ModelConfig
from fakes import ScriptedModel, make_record

RANKER_CONFIG = ModelConfig(model="ranker", max_tokens=512, temperature=0.0)


def test_parse_scores_accepts_dict_and_list_forms():
    assert parse_scores({"scores": {"s1": 80, "S2": "55"}}) == {"S1": 80.0, "S2": 55.0}
    assert parse_scores({"scores": [{"id": "S1", "score": 120}, {"label": "S2", "score": -4}]}) == {
        "S1": 100.0,
        "S2": 0.0,
    }


def test_parse_scores_skips_unreadable_values():
    assert parse_scores({"scores": {"S1": "high", "S2": 40}}) == {"S2": 40.0}


def test_parse_scores_without_scores_raises():
    with pytest.raises(RankingError):
        parse_scores({"ranking": []})


def test_lexical_rank_prefers_matching_text_and_credible_providers():
    relevant = make_record("lit", "r", title="Smoking and COPD progression", snippet="smoking cohort")
    unrelated = make_record("general", "u", title="Gardening tips", snippet="tomatoes in spring")
    other = make_record("general", "o", title="Bread baking", snippet="sourdough starter")

    ranked = lexical_rank("smoking COPD", [unrelated, relevant, other])

    assert ranked[0].id == relevant.id
    assert ranked[0].relevance_score == 100.0
    assert all(0.0 <= r.relevance_score <= 100.0 for r in ranked)
    assert [r.relevance_score for r in ranked[1:]] == [5.0, 5.0]


def test_order_by_score_is_stable_for_ties():
    a = make_record("lit", "a").with_score(50)
    b = make_record("lit", "b").with_score(50)
    c = make_record("lit", "c").with_score(70)
    assert [r.id for r in order_by_score([a, b, c])] == [c.id, a.id, b.id]


@pytest.mark.asyncio
async def test_rank_scores_every_source_with_one_call():
    sources = [make_record("lit", str(i)) for i in range(5)]
    model = ScriptedModel()
    ranker = SourceRanker(model, RANKER_CONFIG)

    ranked = await ranker.rank("smoking", sources)

    assert len(model.calls_for("source_ranker")) == 1
    assert [r.id for r in ranked] == [s.id for s in sources]
    assert all(r.is_ranked for r in ranked)
    assert ranker.usage.total == 15


@pytest.mark.asyncio
async def test_rank_scores_missing_labels_as_zero():
    sources = [make_record("lit", "a"), make_record("lit", "b")]
    model = ScriptedModel({"source_ranker": '{"scores": {"S2": 77}}'})

    ranked = await SourceRanker(model, RANKER_CONFIG).rank("q", sources)

    assert [(r.id, r.relevance_score) for r in ranked] == [(sources[1].id, 77.0), (sources[0].id, 0.0)]


@pytest.mark.asyncio
async def test_rank_falls_back_to_lexical_on_failure():
    sources = [make_record("lit", "a", title="smoking harm"), make_record("general", "b")]
    model = ScriptedModel({"source_ranker": RuntimeError("rate limited")})

    ranked = await SourceRanker(model, RANKER_CONFIG).rank("smoking", sources)

    assert len(ranked) == 2
    assert all(r.is_ranked for r in ranked)
    assert ranked[0].id == sources[0].id


@pytest.mark.asyncio
async def test_rank_empty_input_makes_no_call():
    model = ScriptedModel()
    assert await SourceRanker(model, RANKER_CONFIG).rank("q", []) == []
    assert model.calls == []
