"""Top-level request handling: route to a tier, run the loop controller, stream events."""
from __future__ import annotations

import asyncio
from typing import AsyncGenerator, Mapping
from uuid import uuid4

from app.agents.loop_controller import ResearchLoopController, ResearchOutcome
from app.agents.planner import QueryPlanner
from app.agents.ranker import SourceRanker
from app.agents.reflector import GapReflector, QueryRefiner
from app.agents.router import TierDecision, TierRouter
from app.agents.synthesizer import Synthesizer
from app.config import OrchestratorConfig, build_orchestrator_config
from app.llm_client import ModelCapability, ModelClient
from app.models.events import Cancelled, SSEEvent, TierSelected
from app.models.research import Query, Tier
from app.models.schemas import ResearchRequest
from app.services import logger as log_service
from app.services.fetch_coordinator import FetchCoordinator
from app.services.logger import logger
from app.services.streaming import EventStreamEmitter
from app.tools.search_provider import ProviderAdapter, build_provider_registry


class ResearchOrchestrator:
    """Handles one research request end to end.

    `research()` starts the request task and yields its events. `stop_early()`
    asks the loop to finish with what it has and still answer; `cancel()` (or
    closing the event iterator) aborts outright.
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        model: ModelCapability | None = None,
        providers: Mapping[str, ProviderAdapter] | None = None,
        request_id: str | None = None,
    ):
        self.config = config or build_orchestrator_config()
        self.model = model or ModelClient()
        self.providers = dict(providers) if providers is not None else build_provider_registry()
        self.request_id = request_id or uuid4().hex[:12]
        self.emitter = EventStreamEmitter(self.request_id)
        self.router = TierRouter(self.model, self.config.router)
        self.controller: ResearchLoopController | None = None
        self.decision: TierDecision | None = None
        self.outcome: ResearchOutcome | None = None
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    def stop_early(self) -> None:
        """Soft stop: end the loop at the next suspension point and synthesize what was gathered."""
        self._stop_event.set()

    def cancel(self) -> None:
        """Hard abort: no answer is produced once the current stage is interrupted."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def build_controller(self, tier: Tier) -> ResearchLoopController:
        tier_config = self.config.tier(tier)
        synthesizer = Synthesizer(self.model)
        if tier_config.max_rounds <= 0:
            return ResearchLoopController(
                tier_config,
                synthesizer=synthesizer,
                emitter=self.emitter,
                stop_event=self._stop_event,
                request_id=self.request_id,
            )
        return ResearchLoopController(
            tier_config,
            synthesizer=synthesizer,
            emitter=self.emitter,
            planner=QueryPlanner(self.model, self.config.planner) if tier_config.use_planner else None,
            coordinator=FetchCoordinator(
                self.providers,
                self.config.timeouts,
                retry_enabled=self.config.retry.enabled,
                retry_timeout_factor=self.config.retry.timeout_factor,
            ),
            ranker=SourceRanker(self.model, self.config.ranker),
            reflector=GapReflector(self.model, self.config.reflector) if tier_config.reflect else None,
            refiner=QueryRefiner(self.model, self.config.refiner) if tier_config.reflect else None,
            allocation_policy=self.config.allocation,
            selection=self.config.selection,
            min_growth=self.config.min_source_growth,
            stop_event=self._stop_event,
            request_id=self.request_id,
        )

    async def _route(self, request: ResearchRequest, query: Query) -> TierDecision:
        if request.tier_override is not None:
            return TierDecision(
                tier=request.tier_override,
                rationale="Tier set by the request.",
            )
        return await self.router.classify(query.text, query.context)

    async def _run(self, request: ResearchRequest) -> None:
        query = Query(
            text=request.query,
            context=tuple(request.conversation_context),
            media_ref=request.attached_media_ref,
        )
        log_service.log_event(
            event_type="research_started",
            message="Research started",
            request_id=self.request_id,
            query=request.query[:100],
            tier_override=request.tier_override.value if request.tier_override else None,
        )
        try:
            self.decision = await self._route(request, query)
            self.emitter.emit(
                TierSelected(
                    tier=self.decision.tier.value,
                    rationale=self.decision.rationale,
                    fallback=self.decision.fallback,
                )
            )
            self.controller = self.build_controller(self.decision.tier)
            self.outcome = await self.controller.run(query, prior_usage=self.router.usage)
            log_service.log_event(
                event_type="research_complete",
                message="Research complete",
                request_id=self.request_id,
                tier=self.decision.tier.value,
                source_count=len(self.outcome.selected),
                stop_reason=self.outcome.stop_reason.value if self.outcome.stop_reason else None,
                total_tokens=self.outcome.usage.total,
            )
        except asyncio.CancelledError:
            if not self.emitter.finished:
                self.emitter.emit(Cancelled(stage="routing" if self.controller is None else "research"))
            raise
        except Exception as exc:
            logger.exception(f"[{self.request_id}] research failed: {exc}")
            if not self.emitter.finished:
                self.emitter.fail(getattr(exc, "stage", "research"), str(exc))
        finally:
            self.emitter.close()

    def _on_task_done(self, task: asyncio.Task) -> None:
        # A task cancelled before its first step never runs _run's handlers.
        if not self.emitter.finished:
            if task.cancelled():
                self.emitter.emit(Cancelled(stage="routing"))
            elif task.exception() is not None:
                self.emitter.fail("research", str(task.exception()))
        self.emitter.close()

    async def research(self, request: ResearchRequest) -> AsyncGenerator[SSEEvent, None]:
        """Yield the request's events in emission order until a terminal event."""
        if self._task is not None:
            raise RuntimeError("A ResearchOrchestrator handles exactly one request")
        self._task = asyncio.create_task(self._run(request), name=f"research-{self.request_id}")
        self._task.add_done_callback(self._on_task_done)
        try:
            async for event in self.emitter:
                yield event
        finally:
            if not self._task.done():
                logger.info(f"[{self.request_id}] event consumer went away, aborting research")
                self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
