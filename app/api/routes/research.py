from __future__ import annotations

import json as _json

from fastapi import APIRouter
from sse_starlette.sse import EventSourceResponse

from app.agents.orchestrator import ResearchOrchestrator
from app.api.deps import get_orchestrator_config, get_provider_registry
from app.models.schemas import ResearchRequest
from app.services import logger as log_service

router = APIRouter(prefix="/api/research", tags=["research"])


@router.post("/stream")
async def stream_research(request: ResearchRequest):
    """SSE endpoint that runs one research request and streams its lifecycle events."""
    orchestrator = ResearchOrchestrator(
        get_orchestrator_config(),
        providers=get_provider_registry(),
    )

    async def event_generator():
        events = orchestrator.research(request)
        try:
            async for event in events:
                yield {
                    "event": event.event.value,
                    "id": str(event.sequence),
                    "data": _json.dumps(event.data),
                }
        finally:
            # Client disconnects land here; closing the iterator aborts the request.
            await events.aclose()
            log_service.log_event(
                event_type="research_stream_closed",
                message="Research stream closed",
                request_id=orchestrator.request_id,
                terminal=orchestrator.emitter.terminal.event.value
                if orchestrator.emitter.terminal
                else None,
            )

    return EventSourceResponse(event_generator())
