from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from app.models.research import Tier


# --- Requests ---


class ResearchRequest(BaseModel):
    query: str = Field(min_length=1)
    conversation_context: list[str] = Field(default_factory=list)
    attached_media_ref: str | None = None
    tier_override: Tier | None = None

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query must not be blank")
        return value

    @field_validator("conversation_context", mode="before")
    @classmethod
    def _flatten_turns(cls, value: Any) -> Any:
        """Accept plain strings or {"role", "content"} turns."""
        if not isinstance(value, list):
            return value
        turns: list[Any] = []
        for turn in value:
            if isinstance(turn, dict):
                role = str(turn.get("role") or "user")
                turns.append(f"{role}: {turn.get('content', '')}")
            else:
                turns.append(turn)
        return turns

    @field_validator("tier_override", mode="before")
    @classmethod
    def _parse_tier(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        tier = Tier.parse(value)
        if tier is None:
            raise ValueError(f"unknown tier: {value!r}")
        return tier


# --- Responses ---


class TierInfo(BaseModel):
    tier: Tier
    model: str
    max_rounds: int
    uses_planner: bool
    reflects: bool


class TiersResponse(BaseModel):
    tiers: list[TierInfo]
