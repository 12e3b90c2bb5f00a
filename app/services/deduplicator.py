"""Merge source lists across providers and rounds by canonical id."""
from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Mapping

from app.models.research import SourceRecord

# Metadata that may be filled in by a later duplicate when the first copy left it empty.
_FILLABLE_FIELDS = ("title", "snippet", "published_at")


def _fill_missing(current: SourceRecord, incoming: SourceRecord) -> SourceRecord:
    updates = {
        name: getattr(incoming, name)
        for name in _FILLABLE_FIELDS
        if not getattr(current, name) and getattr(incoming, name)
    }
    if current.relevance_score is None and incoming.relevance_score is not None:
        updates["relevance_score"] = incoming.relevance_score
    return replace(current, **updates) if updates else current


def merge(
    existing: Mapping[str, SourceRecord],
    incoming: Iterable[SourceRecord],
) -> dict[str, SourceRecord]:
    """Return a new id -> record mapping; `existing` is not modified.

    Discovery order is kept. The first record seen for an id wins; a later
    duplicate can only fill fields that are still empty, and never replaces
    an assigned relevance score. Merging the same list twice is a no-op.
    """
    merged = dict(existing)
    for record in incoming:
        current = merged.get(record.id)
        merged[record.id] = record if current is None else _fill_missing(current, record)
    return merged
