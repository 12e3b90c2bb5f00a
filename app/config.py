from __future__ import annotations

from dataclasses import dataclass, field

from pydantic_settings import BaseSettings

from app.models.llm import ModelConfig
from app.models.research import Tier
from app.services.allocation import DEFAULT_TOPIC_PATTERNS, DEFAULT_TOPIC_PROFILES, AllocationPolicy, RoundTotals


class Settings(BaseSettings):
    # Anthropic (or OpenRouter speaking the Anthropic messages API)
    anthropic_api_key: str = ""
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    # Models per role
    router_model: str = "claude-haiku-4-5-20251001"
    fast_model: str = "claude-haiku-4-5-20251001"
    hybrid_model: str = "claude-sonnet-4-5-20250929"
    deep_model: str = "claude-opus-4-6"
    planner_model: str = "claude-sonnet-4-5-20250929"
    reflector_model: str = "claude-sonnet-4-5-20250929"
    refiner_model: str = "claude-haiku-4-5-20251001"
    ranker_model: str = "claude-haiku-4-5-20251001"

    # Extended reasoning budgets (0 = off)
    planner_thinking_budget: int = 2048
    reflector_thinking_budget: int = 2048
    hybrid_thinking_budget: int = 0
    synthesis_max_tokens: int = 8192

    # General web provider
    search_provider: str = "tavily"  # tavily | brave
    search_fallback_to_tavily: bool = True
    tavily_api_key: str = ""
    brave_api_key: str = ""

    # Literature / registry providers
    ncbi_api_key: str = ""
    pubmed_years_back: int = 5
    europepmc_base_url: str = "https://www.ebi.ac.uk/europepmc/webservices/rest"
    clinical_trials_base_url: str = "https://clinicaltrials.gov/api/v2"

    # Per-provider timeouts (seconds)
    general_timeout_s: float = 10.0
    lit_timeout_s: float = 5.0
    preprint_timeout_s: float = 5.0
    trials_timeout_s: float = 5.0
    provider_retry_enabled: bool = True
    provider_retry_timeout_factor: float = 0.5

    # Loop bounds
    deep_max_rounds: int = 4
    hybrid_max_rounds: int = 1
    min_source_growth: int = 3

    # Per-round source allocation
    deep_first_round_total: int = 25
    deep_first_round_general: int = 10
    deep_follow_up_total: int = 15
    deep_follow_up_general: int = 5
    hybrid_round_total: int = 10
    hybrid_round_general: int = 5

    # Source selection for synthesis
    selection_k: int = 25
    selection_token_budget: int = 16800
    selection_min_score: float = 0.0
    selection_similarity_threshold: float = 0.85

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"  # empty disables the file sink

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()


@dataclass(frozen=True)
class TierConfig:
    """Per-tier bounds and the model that writes the answer."""

    tier: Tier
    synthesis: ModelConfig
    max_rounds: int = 0
    use_planner: bool = False
    reflect: bool = False


@dataclass(frozen=True)
class SelectionConfig:
    k: int = 25
    token_budget: int = 16800
    min_score: float = 0.0
    similarity_threshold: float | None = 0.85


@dataclass(frozen=True)
class RetryConfig:
    enabled: bool = True
    timeout_factor: float = 0.5


@dataclass(frozen=True)
class OrchestratorConfig:
    """Everything the orchestrator needs, passed in explicitly at construction."""

    router: ModelConfig
    planner: ModelConfig
    reflector: ModelConfig
    refiner: ModelConfig
    ranker: ModelConfig
    tiers: dict[Tier, TierConfig]
    allocation: AllocationPolicy
    timeouts: dict[str, float] = field(default_factory=dict)
    retry: RetryConfig = field(default_factory=RetryConfig)
    selection: SelectionConfig = field(default_factory=SelectionConfig)
    min_source_growth: int = 3

    def tier(self, tier: Tier) -> TierConfig:
        return self.tiers[tier]


def build_orchestrator_config(source: Settings | None = None) -> OrchestratorConfig:
    """Translate flat environment settings into the orchestrator's config tree."""
    s = source or settings
    deep_totals = RoundTotals(
        first_total=s.deep_first_round_total,
        first_general=s.deep_first_round_general,
        follow_up_total=s.deep_follow_up_total,
        follow_up_general=s.deep_follow_up_general,
    )
    hybrid_totals = RoundTotals(
        first_total=s.hybrid_round_total,
        first_general=s.hybrid_round_general,
        follow_up_total=s.hybrid_round_total,
        follow_up_general=s.hybrid_round_general,
    )
    allocation = AllocationPolicy(
        general_kind="general",
        topic_profiles=DEFAULT_TOPIC_PROFILES,
        topic_patterns=DEFAULT_TOPIC_PATTERNS,
        round_totals={Tier.HYBRID: hybrid_totals, Tier.DEEP: deep_totals},
    )
    tiers = {
        Tier.FAST: TierConfig(
            tier=Tier.FAST,
            synthesis=ModelConfig(model=s.fast_model, max_tokens=s.synthesis_max_tokens, temperature=0.7),
        ),
        Tier.HYBRID: TierConfig(
            tier=Tier.HYBRID,
            synthesis=ModelConfig(
                model=s.hybrid_model,
                max_tokens=s.synthesis_max_tokens,
                temperature=0.4,
                thinking_budget=max(s.hybrid_thinking_budget, 0),
            ),
            max_rounds=max(s.hybrid_max_rounds, 1),
        ),
        Tier.DEEP: TierConfig(
            tier=Tier.DEEP,
            synthesis=ModelConfig(model=s.deep_model, max_tokens=s.synthesis_max_tokens, temperature=0.3),
            max_rounds=max(s.deep_max_rounds, 1),
            use_planner=True,
            reflect=True,
        ),
    }
    return OrchestratorConfig(
        router=ModelConfig(model=s.router_model, max_tokens=256, temperature=0.0),
        planner=ModelConfig(
            model=s.planner_model,
            max_tokens=1024,
            temperature=0.2,
            thinking_budget=max(s.planner_thinking_budget, 0),
        ),
        reflector=ModelConfig(
            model=s.reflector_model,
            max_tokens=1024,
            temperature=0.2,
            thinking_budget=max(s.reflector_thinking_budget, 0),
        ),
        refiner=ModelConfig(model=s.refiner_model, max_tokens=512, temperature=0.8),
        ranker=ModelConfig(model=s.ranker_model, max_tokens=2048, temperature=0.0),
        tiers=tiers,
        allocation=allocation,
        timeouts={
            "general": s.general_timeout_s,
            "lit": s.lit_timeout_s,
            "preprint": s.preprint_timeout_s,
            "trials": s.trials_timeout_s,
        },
        retry=RetryConfig(
            enabled=s.provider_retry_enabled,
            timeout_factor=s.provider_retry_timeout_factor,
        ),
        selection=SelectionConfig(
            k=max(s.selection_k, 0),
            token_budget=max(s.selection_token_budget, 0),
            min_score=s.selection_min_score,
            similarity_threshold=s.selection_similarity_threshold or None,
        ),
        min_source_growth=max(s.min_source_growth, 0),
    )
