"""Parallel fan-out of one research round across provider adapters."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping

from app.errors import ProviderError, ProviderTimeout, provider_error_from
from app.models.research import RoundResult, SourceRecord
from app.services.allocation import SourceAllocation
from app.services.logger import log_provider_call
from app.tools.search_provider import ProviderAdapter


@dataclass(slots=True)
class ProviderOutcome:
    provider: str
    round_number: int
    requested: int
    sources: list[SourceRecord] = field(default_factory=list)
    error: ProviderError | None = None
    duration_ms: int = 0
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.error is None


class FetchCoordinator:
    """Runs every allocated provider concurrently and aggregates partial results.

    A provider failure never fails the round. Each call is time-boxed on its
    own; a retryable failure gets exactly one more attempt with a shorter
    timeout.
    """

    def __init__(
        self,
        providers: Mapping[str, ProviderAdapter],
        timeouts: Mapping[str, float] | None = None,
        *,
        retry_enabled: bool = True,
        retry_timeout_factor: float = 0.5,
        default_timeout: float = 5.0,
    ):
        self.providers = dict(providers)
        self.timeouts = dict(timeouts or {})
        self.retry_enabled = retry_enabled
        self.retry_timeout_factor = retry_timeout_factor
        self.default_timeout = default_timeout

    def timeout_for(self, kind: str) -> float:
        return float(self.timeouts.get(kind, self.default_timeout))

    async def _call(
        self,
        adapter: ProviderAdapter,
        kind: str,
        query: str,
        count: int,
        timeout: float,
    ) -> list[SourceRecord]:
        try:
            return await asyncio.wait_for(adapter.fetch(query, count, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeout(kind, timeout) from None
        except ProviderError:
            raise
        except Exception as exc:
            raise provider_error_from(kind, exc) from exc

    async def _run_provider(
        self,
        kind: str,
        query: str,
        count: int,
        round_number: int,
    ) -> ProviderOutcome:
        t0 = time.monotonic()

        def outcome(**kwargs) -> ProviderOutcome:
            return ProviderOutcome(
                provider=kind,
                round_number=round_number,
                requested=count,
                duration_ms=int((time.monotonic() - t0) * 1000),
                **kwargs,
            )

        adapter = self.providers.get(kind)
        if adapter is None:
            error = ProviderError(kind, "no adapter registered", retryable=False)
            log_provider_call(kind, round_number, "error", error=str(error))
            return outcome(error=error)

        timeout = self.timeout_for(kind)
        attempts = 1
        try:
            sources = await self._call(adapter, kind, query, count, timeout)
        except ProviderError as exc:
            log_provider_call(
                kind,
                round_number,
                "error",
                duration_ms=int((time.monotonic() - t0) * 1000),
                error=str(exc),
                attempt=attempts,
            )
            if not (self.retry_enabled and exc.retryable):
                return outcome(error=exc)
            attempts = 2
            try:
                sources = await self._call(
                    adapter, kind, query, count, timeout * self.retry_timeout_factor
                )
            except ProviderError as retry_exc:
                log_provider_call(
                    kind,
                    round_number,
                    "error",
                    duration_ms=int((time.monotonic() - t0) * 1000),
                    error=str(retry_exc),
                    attempt=attempts,
                )
                return outcome(error=retry_exc, attempts=attempts)

        sources = list(sources)[:count]
        result = outcome(sources=sources, attempts=attempts)
        log_provider_call(
            kind,
            round_number,
            "success",
            count=len(sources),
            duration_ms=result.duration_ms,
            attempt=attempts,
        )
        return result

    async def fetch(
        self,
        query: str,
        allocation: SourceAllocation,
        round_number: int,
        *,
        on_provider_done: Callable[[ProviderOutcome], None] | None = None,
    ) -> RoundResult:
        """Fetch one round. Returns only after every provider has finished, failed or timed out.

        `on_provider_done` runs in the calling task as each provider finishes,
        so it may write to single-writer state such as the event stream.
        """
        t0 = time.monotonic()
        active = allocation.active()
        tasks = [
            asyncio.create_task(
                self._run_provider(kind, query, count, round_number),
                name=f"fetch-{kind}-r{round_number}",
            )
            for kind, count in active.items()
        ]
        outcomes: dict[str, ProviderOutcome] = {}
        try:
            for next_done in asyncio.as_completed(tasks):
                result = await next_done
                outcomes[result.provider] = result
                if on_provider_done is not None:
                    on_provider_done(result)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        new_sources: list[SourceRecord] = []
        provider_errors: dict[str, str] = {}
        provider_counts: dict[str, int] = {}
        for kind in active:
            result = outcomes[kind]
            provider_counts[kind] = len(result.sources)
            new_sources.extend(result.sources)
            if result.error is not None:
                provider_errors[kind] = str(result.error)

        return RoundResult(
            round_number=round_number,
            query=query,
            new_sources=tuple(new_sources),
            provider_errors=provider_errors,
            duration_ms=int((time.monotonic() - t0) * 1000),
            allocation=allocation.to_dict(),
            provider_counts=provider_counts,
        )
