from __future__ import annotations

from functools import lru_cache

from app.config import OrchestratorConfig, build_orchestrator_config
from app.tools.search_provider import ProviderAdapter, build_provider_registry


@lru_cache(maxsize=1)
def get_orchestrator_config() -> OrchestratorConfig:
    return build_orchestrator_config()


@lru_cache(maxsize=1)
def get_provider_registry() -> dict[str, ProviderAdapter]:
    # Adapters are stateless, so one registry serves every request.
    return build_provider_registry()
