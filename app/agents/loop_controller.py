"""Research loop controller: plan, then fetch -> merge -> rank -> reflect until told to stop, then synthesize.

The controller is the only writer of `ResearchState` and of the event stream
for its request. Every external call is a suspension point that a hard abort
(task cancellation) or a soft stop (`stop_event`) can interrupt.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, TypeVar

from app.agents.planner import QueryPlanner
from app.agents.ranker import SourceRanker, lexical_rank, order_by_score
from app.agents.reflector import GapReflector, QueryRefiner
from app.agents.synthesizer import Synthesizer
from app.config import SelectionConfig, TierConfig
from app.errors import RefinementError, SynthesisError
from app.llm_client import CompletionStream
from app.models.events import (
    Cancelled,
    Complete,
    Error,
    PlanningComplete,
    ProviderComplete,
    ReflectionComplete,
    ResearchStopped,
    RoundComplete,
    RoundStarted,
    SourcesReady,
    SourceSummary,
    SynthesisStarted,
    Token,
)
from app.models.llm import TokenUsage
from app.models.research import (
    GapAssessment,
    Query,
    ResearchPlan,
    ResearchState,
    SourceRecord,
    StopReason,
)
from app.services.allocation import AllocationPolicy
from app.services.deduplicator import merge
from app.services.fetch_coordinator import FetchCoordinator, ProviderOutcome
from app.services.logger import log_research_step, logger
from app.services.source_selector import SelectionResult, select
from app.services.stopping import decide
from app.services.streaming import EventStreamEmitter

T = TypeVar("T")


class LoopState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    FETCHING = "fetching"
    MERGING = "merging"
    RANKING = "ranking"
    REFLECTING = "reflecting"
    REFINING = "refining"
    STOPPED = "stopped"
    SYNTHESIZING = "synthesizing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({LoopState.DONE, LoopState.CANCELLED, LoopState.FAILED})

_LOOP_STATES = (
    LoopState.PLANNING,
    LoopState.FETCHING,
    LoopState.MERGING,
    LoopState.RANKING,
    LoopState.REFLECTING,
    LoopState.REFINING,
)

TRANSITIONS: dict[LoopState, frozenset[LoopState]] = {
    LoopState.IDLE: frozenset({LoopState.PLANNING, LoopState.FETCHING, LoopState.SYNTHESIZING}),
    LoopState.PLANNING: frozenset({LoopState.FETCHING}),
    LoopState.FETCHING: frozenset({LoopState.MERGING}),
    LoopState.MERGING: frozenset({LoopState.RANKING}),
    LoopState.RANKING: frozenset({LoopState.REFLECTING}),
    LoopState.REFLECTING: frozenset({LoopState.REFINING, LoopState.STOPPED}),
    LoopState.REFINING: frozenset({LoopState.FETCHING, LoopState.STOPPED}),
    LoopState.STOPPED: frozenset({LoopState.SYNTHESIZING}),
    LoopState.SYNTHESIZING: frozenset({LoopState.DONE}),
    LoopState.DONE: frozenset(),
    LoopState.CANCELLED: frozenset(),
    LoopState.FAILED: frozenset(),
}
# A soft stop may leave the loop from any loop state; abort and failure from any non-terminal state.
for _state in _LOOP_STATES:
    TRANSITIONS[_state] = TRANSITIONS[_state] | {LoopState.STOPPED}
for _state in TRANSITIONS:
    if _state not in TERMINAL_STATES:
        TRANSITIONS[_state] = TRANSITIONS[_state] | {LoopState.CANCELLED, LoopState.FAILED}


class SoftStop(Exception):
    """Raised inside the controller when the caller asked to stop early."""


@dataclass
class ResearchOutcome:
    final_text: str
    selected: list[SourceRecord]
    state: ResearchState
    stop_reason: StopReason | None
    usage: TokenUsage = field(default_factory=TokenUsage)
    plan: ResearchPlan | None = None
    no_external_sources: bool = False
    degraded: bool = False


class ResearchLoopController:
    def __init__(
        self,
        tier_config: TierConfig,
        *,
        synthesizer: Synthesizer,
        emitter: EventStreamEmitter,
        planner: QueryPlanner | None = None,
        coordinator: FetchCoordinator | None = None,
        ranker: SourceRanker | None = None,
        reflector: GapReflector | None = None,
        refiner: QueryRefiner | None = None,
        allocation_policy: AllocationPolicy | None = None,
        selection: SelectionConfig | None = None,
        min_growth: int = 3,
        stop_event: asyncio.Event | None = None,
        request_id: str = "",
    ):
        if tier_config.max_rounds > 0 and (
            coordinator is None or ranker is None or allocation_policy is None
        ):
            raise ValueError("A researching tier needs a coordinator, a ranker and an allocation policy")
        self.tier_config = tier_config
        self.synthesizer = synthesizer
        self.emitter = emitter
        self.planner = planner
        self.coordinator = coordinator
        self.ranker = ranker
        self.reflector = reflector
        self.refiner = refiner
        self.allocation_policy = allocation_policy
        self.selection = selection or SelectionConfig()
        self.min_growth = min_growth
        self.stop_event = stop_event
        self.request_id = request_id

        self.state = LoopState.IDLE
        self.history: list[LoopState] = [LoopState.IDLE]
        self.research_state = ResearchState()
        self.round_budget = tier_config.max_rounds
        self._stream: CompletionStream | None = None

    @property
    def max_rounds(self) -> int:
        return self.tier_config.max_rounds

    def _transition(self, target: LoopState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal loop transition {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)
        log_research_step(self.request_id, target.value, "entered")

    async def _interruptible(self, awaitable: Awaitable[T]) -> T:
        """Await an external call, abandoning it if a soft stop is requested meanwhile."""
        if self.stop_event is None:
            return await awaitable
        task = asyncio.ensure_future(awaitable)
        if self.stop_event.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise SoftStop()
        waiter = asyncio.ensure_future(self.stop_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            await asyncio.gather(task, waiter, return_exceptions=True)
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise SoftStop()

    def _on_provider_done(self, outcome: ProviderOutcome) -> None:
        self.emitter.emit(
            ProviderComplete(
                round=outcome.round_number,
                provider=outcome.provider,
                count=len(outcome.sources),
                duration_ms=outcome.duration_ms,
                success=outcome.success,
                error=str(outcome.error) if outcome.error else None,
            )
        )

    def _agent_usage(self) -> TokenUsage:
        usage = TokenUsage()
        for agent in (self.planner, self.ranker, self.reflector, self.refiner):
            if agent is not None:
                usage = usage + agent.usage
        return usage

    async def _rank_unscored(self, question: str, *, lexical_only: bool = False) -> None:
        sources = self.research_state.all_sources
        unscored = [record for record in sources.values() if not record.is_ranked]
        if not unscored:
            return
        if lexical_only or self.ranker is None:
            ranked = lexical_rank(question, unscored)
        else:
            ranked = await self._interruptible(self.ranker.rank(question, unscored))
        by_id = {record.id: record for record in ranked}
        leftovers = [r for r in unscored if r.id not in by_id or not by_id[r.id].is_ranked]
        if leftovers:
            logger.warning(f"{len(leftovers)} sources came back unranked, scoring them lexically")
            by_id.update({record.id: record for record in lexical_rank(question, leftovers)})
        self.research_state.all_sources = {
            source_id: by_id.get(source_id, record) for source_id, record in sources.items()
        }

    def _select(self) -> SelectionResult:
        return select(
            order_by_score(self.research_state.all_sources.values()),
            self.selection.k,
            self.selection.token_budget,
            min_score=self.selection.min_score,
            similarity_threshold=self.selection.similarity_threshold,
        )

    async def _research(self, query: Query) -> tuple[StopReason, ResearchPlan | None]:
        state = self.research_state
        question = query.original
        plan: ResearchPlan | None = None
        current = query

        if self.tier_config.use_planner and self.planner is not None:
            self._transition(LoopState.PLANNING)
            plan = await self._interruptible(
                self.planner.plan(question, self.max_rounds, query.context)
            )
            # The plan may shorten the loop but never extend it past the tier limit.
            self.round_budget = min(plan.estimated_rounds, self.max_rounds)
            self.emitter.emit(
                PlanningComplete(
                    strategy=plan.strategy,
                    focus_areas=list(plan.focus_areas),
                    max_rounds=self.round_budget,
                )
            )

        while True:
            round_number = state.rounds_completed + 1
            self._transition(LoopState.FETCHING)
            allocation = self.allocation_policy.allocate(question, self.tier_config.tier, round_number)
            self.emitter.emit(
                RoundStarted(
                    round=round_number,
                    query=current.text,
                    estimated_source_count=allocation.total,
                    allocation=allocation.to_dict(),
                )
            )
            result = await self._interruptible(
                self.coordinator.fetch(
                    current.text,
                    allocation,
                    round_number,
                    on_provider_done=self._on_provider_done,
                )
            )

            self._transition(LoopState.MERGING)
            before = len(state.all_sources)
            state.all_sources = merge(state.all_sources, result.new_sources)
            growth = len(state.all_sources) - before
            state.rounds.append(result)
            state.source_growth.append(growth)
            state.queries.append(current.text)
            state.rounds_completed = round_number

            self._transition(LoopState.RANKING)
            await self._rank_unscored(question)
            selection = self._select()
            self.emitter.emit(
                RoundComplete(
                    round=round_number,
                    new_source_count=growth,
                    total_source_count=len(state.all_sources),
                    provider_errors=dict(result.provider_errors),
                    duration_ms=result.duration_ms,
                )
            )
            if result.provider_errors:
                logger.warning(f"[{self.request_id}] round {round_number} provider errors: {result.provider_errors}")

            self._transition(LoopState.REFLECTING)
            final_round = round_number >= self.round_budget
            gap = GapAssessment(has_gap=not final_round)
            if self.tier_config.reflect and self.reflector is not None and not final_round:
                gap = await self._interruptible(
                    self.reflector.reflect(question, selection.selected, round_number, self.round_budget)
                )
                state.last_gap_assessment = gap
                self.emitter.emit(
                    ReflectionComplete(
                        round=round_number,
                        has_gap=gap.has_gap,
                        gap_summary=gap.gap_description,
                    )
                )

            decision = decide(
                state.rounds_completed,
                self.round_budget,
                gap.has_gap,
                state.source_growth,
                providers_exhausted=result.providers_exhausted,
                total_sources=len(state.all_sources),
                min_growth=self.min_growth,
            )
            if not decision.should_continue:
                return decision.reason, plan

            self._transition(LoopState.REFINING)
            if self.tier_config.reflect and self.refiner is not None:
                try:
                    current = await self._interruptible(self.refiner.refine(current, gap))
                except RefinementError as exc:
                    logger.warning(f"[{self.request_id}] round {round_number} refinement failed, stopping: {exc}")
                    return StopReason.NO_GAP_FOUND, plan

    async def _synthesize(
        self,
        query: Query,
        selected: list[SourceRecord],
        *,
        researched: bool,
        plan: ResearchPlan | None,
        stop_reason: StopReason | None,
        prior_usage: TokenUsage,
    ) -> ResearchOutcome:
        self._transition(LoopState.SYNTHESIZING)
        self.emitter.emit(SynthesisStarted())
        self._stream = self.synthesizer.synthesize(
            query.original,
            selected,
            self.tier_config.synthesis,
            context=query.context,
            plan=plan,
            researched=researched,
        )
        try:
            async for chunk in self._stream:
                self.emitter.emit(Token(text=chunk))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise SynthesisError(str(exc) or type(exc).__name__) from exc

        state = self.research_state
        usage = prior_usage + self._agent_usage() + self._stream.usage
        no_sources = not selected
        degraded = researched and (
            no_sources
            or state.had_provider_errors
            or stop_reason == StopReason.PROVIDER_EXHAUSTION
        )
        self.emitter.emit(
            Complete(
                final_text=self._stream.text,
                source_count=len(selected),
                token_usage=usage.to_dict(),
                no_external_sources=no_sources,
                degraded=degraded,
                tier=self.tier_config.tier.value,
                rounds_completed=state.rounds_completed,
                stop_reason=stop_reason.value if stop_reason else None,
            )
        )
        self._transition(LoopState.DONE)
        return ResearchOutcome(
            final_text=self._stream.text,
            selected=selected,
            state=state,
            stop_reason=stop_reason,
            usage=usage,
            plan=plan,
            no_external_sources=no_sources,
            degraded=degraded,
        )

    async def run(self, query: Query, *, prior_usage: TokenUsage | None = None) -> ResearchOutcome:
        """Drive one request to a terminal state.

        Hard abort (task cancellation) emits `cancelled` and re-raises; the
        gathered sources are dropped. A SynthesisError or unexpected failure
        emits `error` and re-raises.
        """
        prior_usage = prior_usage or TokenUsage()
        try:
            if self.max_rounds <= 0:
                return await self._synthesize(
                    query,
                    [],
                    researched=False,
                    plan=None,
                    stop_reason=None,
                    prior_usage=prior_usage,
                )

            try:
                stop_reason, plan = await self._research(query)
            except SoftStop:
                logger.info(f"[{self.request_id}] stopped early by caller in {self.state.value}")
                stop_reason, plan = StopReason.CANCELLED, None
                await self._rank_unscored(query.original, lexical_only=True)

            self._transition(LoopState.STOPPED)
            self.emitter.emit(
                ResearchStopped(round=self.research_state.rounds_completed, reason=stop_reason.value)
            )
            selection = self._select()
            self.emitter.emit(
                SourcesReady(
                    sources=[
                        SourceSummary(
                            id=s.id, title=s.title, url=s.url, score=s.relevance_score or 0.0
                        )
                        for s in selection.selected
                    ]
                )
            )
            return await self._synthesize(
                query,
                selection.selected,
                researched=True,
                plan=plan,
                stop_reason=stop_reason,
                prior_usage=prior_usage,
            )
        except asyncio.CancelledError:
            if self.state not in TERMINAL_STATES:
                truncated = self.state == LoopState.SYNTHESIZING
                stage = "synthesis" if truncated else self.state.value
                partial = self._stream.text if (truncated and self._stream is not None) else ""
                self._transition(LoopState.CANCELLED)
                self.emitter.emit(Cancelled(stage=stage, truncated=truncated, partial_text=partial))
                log_research_step(
                    self.request_id, "cancelled", "aborted", {"stage": stage, "truncated": truncated}
                )
            raise
        except Exception as exc:
            if self.state not in TERMINAL_STATES:
                stage = getattr(exc, "stage", None) or self.state.value
                self._transition(LoopState.FAILED)
                self.emitter.emit(Error(stage=stage, message=str(exc), recoverable=False))
                logger.error(f"[{self.request_id}] research failed in {stage}: {exc}")
            raise

    def snapshot(self) -> dict[str, Any]:
        """Read-only view for logging and debugging."""
        state = self.research_state
        return {
            "state": self.state.value,
            "rounds_completed": state.rounds_completed,
            "source_count": len(state.all_sources),
            "source_growth": list(state.source_growth),
            "queries": list(state.queries),
        }
