from __future__ import annotations

from fastapi import APIRouter

from app.api.deps import get_orchestrator_config
from app.models.schemas import TierInfo, TiersResponse

router = APIRouter(prefix="/api/tiers", tags=["tiers"])


@router.get("", response_model=TiersResponse)
async def list_tiers():
    """List the processing tiers with their synthesis model and round bounds."""
    config = get_orchestrator_config()
    return TiersResponse(
        tiers=[
            TierInfo(
                tier=tier,
                model=tier_config.synthesis.model,
                max_rounds=tier_config.max_rounds,
                uses_planner=tier_config.use_planner,
                reflects=tier_config.reflect,
            )
            for tier, tier_config in config.tiers.items()
        ]
    )
