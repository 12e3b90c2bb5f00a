from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union


class EventType(str, Enum):
    TIER_SELECTED = "tier_selected"
    PLANNING_COMPLETE = "planning_complete"
    ROUND_STARTED = "round_started"
    PROVIDER_COMPLETE = "provider_complete"
    ROUND_COMPLETE = "round_complete"
    REFLECTION_COMPLETE = "reflection_complete"
    RESEARCH_STOPPED = "research_stopped"
    SOURCES_READY = "sources_ready"
    SYNTHESIS_STARTED = "synthesis_started"
    TOKEN = "token"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_EVENTS = frozenset({EventType.COMPLETE, EventType.ERROR, EventType.CANCELLED})


class _Event:
    kind: ClassVar[EventType]

    def to_data(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TierSelected(_Event):
    kind: ClassVar[EventType] = EventType.TIER_SELECTED
    tier: str
    rationale: str
    fallback: bool = False


@dataclass(frozen=True)
class PlanningComplete(_Event):
    kind: ClassVar[EventType] = EventType.PLANNING_COMPLETE
    strategy: str
    focus_areas: list[str]
    max_rounds: int


@dataclass(frozen=True)
class RoundStarted(_Event):
    kind: ClassVar[EventType] = EventType.ROUND_STARTED
    round: int
    query: str
    estimated_source_count: int
    allocation: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderComplete(_Event):
    kind: ClassVar[EventType] = EventType.PROVIDER_COMPLETE
    round: int
    provider: str
    count: int
    duration_ms: int
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class RoundComplete(_Event):
    kind: ClassVar[EventType] = EventType.ROUND_COMPLETE
    round: int
    new_source_count: int
    total_source_count: int
    provider_errors: dict[str, str]
    duration_ms: int = 0


@dataclass(frozen=True)
class ReflectionComplete(_Event):
    kind: ClassVar[EventType] = EventType.REFLECTION_COMPLETE
    round: int
    has_gap: bool
    gap_summary: str


@dataclass(frozen=True)
class ResearchStopped(_Event):
    kind: ClassVar[EventType] = EventType.RESEARCH_STOPPED
    round: int
    reason: str


@dataclass(frozen=True)
class SourceSummary:
    id: str
    title: str
    url: str
    score: float


@dataclass(frozen=True)
class SourcesReady(_Event):
    kind: ClassVar[EventType] = EventType.SOURCES_READY
    sources: list[SourceSummary]


@dataclass(frozen=True)
class SynthesisStarted(_Event):
    kind: ClassVar[EventType] = EventType.SYNTHESIS_STARTED

    def to_data(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class Token(_Event):
    kind: ClassVar[EventType] = EventType.TOKEN
    text: str


@dataclass(frozen=True)
class Complete(_Event):
    kind: ClassVar[EventType] = EventType.COMPLETE
    final_text: str
    source_count: int
    token_usage: dict[str, int]
    no_external_sources: bool = False
    degraded: bool = False
    tier: str = ""
    rounds_completed: int = 0
    stop_reason: str | None = None


@dataclass(frozen=True)
class Error(_Event):
    kind: ClassVar[EventType] = EventType.ERROR
    stage: str
    message: str
    recoverable: bool = False


@dataclass(frozen=True)
class Cancelled(_Event):
    kind: ClassVar[EventType] = EventType.CANCELLED
    stage: str
    truncated: bool = False
    partial_text: str = ""


LifecycleEvent = Union[
    TierSelected,
    PlanningComplete,
    RoundStarted,
    ProviderComplete,
    RoundComplete,
    ReflectionComplete,
    ResearchStopped,
    SourcesReady,
    SynthesisStarted,
    Token,
    Complete,
    Error,
    Cancelled,
]


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    def format(self) -> str:
        return f"event: {self.event.value}\nid: {self.sequence}\ndata: {json.dumps(self.data)}\n\n"
