from __future__ import annotations

from app.services.deduplicator import merge
from fakes import make_record


def test_merge_keeps_first_seen_record_and_order():
    first = make_record("lit", "a", title="Original title")
    dup = make_record("lit", "a", title="Other title")
    other = make_record("general", "b")

    merged = merge({}, [first, other, dup])

    assert list(merged) == [first.id, other.id]
    assert merged[first.id].title == "Original title"


def test_merge_does_not_mutate_existing():
    existing = {"x": make_record("lit", "x", id="x")}
    merged = merge(existing, [make_record("lit", "y", id="y")])
    assert list(existing) == ["x"]
    assert list(merged) == ["x", "y"]


def test_merge_fills_only_missing_metadata():
    first = make_record("trials", "n1", snippet="", published_at=None)
    later = make_record("trials", "n1", title="Replacement", snippet="Recruiting", published_at="2024-01-01")

    merged = merge({}, [first, later])

    record = merged[first.id]
    assert record.title == first.title
    assert record.snippet == "Recruiting"
    assert record.published_at == "2024-01-01"


def test_merge_never_overwrites_assigned_score():
    scored = make_record("lit", "s").with_score(72.0)
    rescored = make_record("lit", "s").with_score(10.0)

    merged = merge({scored.id: scored}, [rescored])

    assert merged[scored.id].relevance_score == 72.0


def test_merge_is_idempotent():
    records = [make_record("general", str(i)) for i in range(5)]
    once = merge({}, records)
    twice = merge(once, records)
    assert twice == once


def test_merge_is_order_independent_as_a_set():
    a = [make_record("lit", str(i)) for i in range(4)]
    b = [make_record("lit", str(i)) for i in range(2, 7)] + [make_record("trials", "x")]

    ab = merge(merge({}, a), b)
    ba = merge(merge({}, b), a)

    assert set(ab) == set(ba)
    assert len(ab) == 8


def test_merge_only_grows():
    first = merge({}, [make_record("general", str(i)) for i in range(3)])
    second = merge(first, [make_record("general", "2"), make_record("lit", "9")])
    assert set(first) <= set(second)
