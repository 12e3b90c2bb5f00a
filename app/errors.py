"""Error taxonomy for the research pipeline.

Only `SynthesisError` is allowed to reach the caller; every other error here
is absorbed by the stage that raised it and logged.
"""
from __future__ import annotations

import httpx


class ResearchError(Exception):
    stage: str = "research"

    def __init__(self, message: str, *, stage: str | None = None):
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage


class ProviderError(ResearchError):
    """A single provider adapter failed. Recorded on the round, never fatal."""

    stage = "fetch"

    def __init__(self, provider: str, message: str, *, retryable: bool = True):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.retryable = retryable


class ProviderTimeout(ProviderError):
    def __init__(self, provider: str, timeout: float):
        super().__init__(provider, f"timed out after {timeout:.1f}s", retryable=True)
        self.timeout = timeout


class MissingCredentialError(ResearchError, RuntimeError):
    """A search backend has no API key configured. Never retried."""

    stage = "fetch"


class ClassificationError(ResearchError):
    stage = "routing"


class PlanningError(ResearchError):
    stage = "planning"


class RankingError(ResearchError):
    stage = "ranking"


class ReflectionError(ResearchError):
    stage = "reflection"


class RefinementError(ResearchError):
    stage = "refinement"


class SynthesisError(ResearchError):
    stage = "synthesis"


class AllocationError(ResearchError, ValueError):
    stage = "allocation"


def provider_error_from(provider: str, exc: Exception) -> ProviderError:
    """Classify an adapter failure. 429, 5xx and transport errors are retryable."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, MissingCredentialError):
        return ProviderError(provider, str(exc), retryable=False)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        retryable = status == 429 or status >= 500
        return ProviderError(provider, f"HTTP {status}", retryable=retryable)
    if isinstance(exc, httpx.TransportError):
        return ProviderError(provider, f"{type(exc).__name__}: {exc}", retryable=True)
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ProviderError(provider, f"malformed response: {exc}", retryable=False)
    return ProviderError(provider, str(exc) or type(exc).__name__, retryable=True)
