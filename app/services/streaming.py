"""Single-writer event stream for one research request.

The request task is the only writer. `emit()` never awaits, so an event is
sequenced and queued at the exact point the controller reaches it; readers
see one total order no matter how many provider tasks ran underneath.
"""
from __future__ import annotations

import asyncio
from typing import AsyncIterator

from app.models.events import Error, LifecycleEvent, SSEEvent
from app.services.logger import logger


class EventStreamEmitter:
    def __init__(self, request_id: str = ""):
        self.request_id = request_id
        self._queue: asyncio.Queue[SSEEvent | None] = asyncio.Queue()
        self._sequence = 0
        self._closed = False
        self.events: list[SSEEvent] = []
        self.terminal: SSEEvent | None = None

    @property
    def finished(self) -> bool:
        return self.terminal is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: LifecycleEvent) -> SSEEvent | None:
        """Sequence and enqueue an event. Returns None once the stream is finished."""
        if self._closed or self.terminal is not None:
            logger.debug(
                f"[{self.request_id}] dropped {event.kind.value} event after stream end"
            )
            return None
        self._sequence += 1
        sse = SSEEvent(event=event.kind, data=event.to_data(), sequence=self._sequence)
        self.events.append(sse)
        self._queue.put_nowait(sse)
        if sse.is_terminal:
            self.terminal = sse
            self.close()
        return sse

    def fail(self, stage: str, message: str, *, recoverable: bool = False) -> SSEEvent | None:
        return self.emit(Error(stage=stage, message=message, recoverable=recoverable))

    def close(self) -> None:
        """End iteration for readers. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def of_kind(self, kind) -> list[SSEEvent]:
        return [e for e in self.events if e.event == kind]

    async def __aiter__(self) -> AsyncIterator[SSEEvent]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item
