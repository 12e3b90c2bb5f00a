"""Tier router: one cheap classification call per request."""
from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Sequence

from app.agents.base import ModelAgent
from app.errors import ClassificationError
from app.llm_client import extract_json_object
from app.models.research import Tier
from app.services.logger import logger
from app.services.prompt_store import render_prompt

FALLBACK_TIER = Tier.HYBRID
RETRY_MAX_TOKENS = 128
RETRY_QUERY_CHARS = 500
CONTEXT_TURNS = 4


@dataclass(frozen=True)
class TierDecision:
    tier: Tier
    rationale: str
    fallback: bool = False


def _format_context(context: Sequence[str]) -> str:
    return "\n".join(f"- {turn}" for turn in list(context)[-CONTEXT_TURNS:])


def parse_tier_decision(text: str) -> TierDecision:
    """Read the model's JSON verdict. Anything unreadable routes to the fallback tier."""
    try:
        payload = extract_json_object(text)
    except json.JSONDecodeError:
        payload = {}
    try:
        tier = Tier.parse(payload.get("tier"))
    except (TypeError, ValueError, OverflowError):
        tier = None
    if tier is None:
        logger.warning(f"Malformed tier classification, defaulting to {FALLBACK_TIER.value}: {text[:200]!r}")
        return TierDecision(
            tier=FALLBACK_TIER,
            rationale="Classifier output was not a recognised tier.",
            fallback=True,
        )
    rationale = str(payload.get("reasoning") or payload.get("rationale") or "").strip()
    return TierDecision(tier=tier, rationale=rationale or f"Classified as {tier.value}.")


class TierRouter(ModelAgent):
    """Classify a question as fast, hybrid or deep.

    Never escalates on doubt: malformed output and repeated call failures both
    land on Hybrid, and routing never blocks the request.
    """

    name = "tier_router"

    async def classify(self, query: str, context: Sequence[str] = ()) -> TierDecision:
        prompt = render_prompt("router.classify", query=query, context=_format_context(context))
        try:
            completion = await self._complete(prompt)
        except Exception as exc:
            error = ClassificationError(str(exc))
            logger.warning(f"Tier classification failed, retrying with a shorter prompt: {error}")
            short_prompt = render_prompt(
                "router.classify",
                query=query[:RETRY_QUERY_CHARS],
                context="",
            )
            short_config = replace(self.config, max_tokens=min(self.config.max_tokens, RETRY_MAX_TOKENS))
            try:
                completion = await self._complete(short_prompt, short_config)
            except Exception as retry_exc:
                logger.error(
                    f"Tier classification retry failed, defaulting to {FALLBACK_TIER.value}: "
                    f"{ClassificationError(str(retry_exc))}"
                )
                return TierDecision(
                    tier=FALLBACK_TIER,
                    rationale="Classification unavailable; using the default tier.",
                    fallback=True,
                )
        return parse_tier_decision(completion.text)
