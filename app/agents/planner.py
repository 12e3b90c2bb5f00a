from __future__ import annotations

from typing import Any, Sequence

from app.agents.base import ModelAgent
from app.errors import PlanningError
from app.models.research import ResearchPlan
from app.services.logger import logger
from app.services.prompt_store import render_prompt

MAX_FOCUS_AREAS = 6


def normalize_text_list(value: Any, *, max_items: int, min_len: int = 3) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    items: list[str] = []
    for item in value:
        text = " ".join(str(item).split()).strip()
        if len(text) >= min_len and text not in items:
            items.append(text)
        if len(items) >= max_items:
            break
    return tuple(items)


def fallback_plan(max_rounds: int) -> ResearchPlan:
    return ResearchPlan(strategy="", focus_areas=(), estimated_rounds=max(max_rounds, 1))


class QueryPlanner(ModelAgent):
    """Initial research plan for the deep tier. Runs once, before round 1."""

    name = "query_planner"

    async def plan(self, query: str, max_rounds: int, context: Sequence[str] = ()) -> ResearchPlan:
        prompt = render_prompt(
            "planner.plan",
            query=query,
            context="\n".join(f"- {turn}" for turn in context),
            max_rounds=max_rounds,
        )
        try:
            payload = await self._complete_json(prompt)
        except Exception as exc:
            logger.warning(f"Planning failed, using default plan: {PlanningError(str(exc))}")
            return fallback_plan(max_rounds)

        try:
            estimated = int(payload.get("estimated_rounds", max_rounds))
        except (TypeError, ValueError, OverflowError):
            estimated = max_rounds
        return ResearchPlan(
            strategy=" ".join(str(payload.get("strategy") or "").split()),
            focus_areas=normalize_text_list(payload.get("focus_areas"), max_items=MAX_FOCUS_AREAS),
            estimated_rounds=min(max(estimated, 1), max(max_rounds, 1)),
        )
