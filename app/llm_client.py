"""LLM client factory for Anthropic and OpenRouter, plus the completion interface the pipeline calls."""
from __future__ import annotations

import json
import time
from typing import Any, AsyncIterator, Protocol

from app.config import settings
from app.models.llm import Completion, ModelConfig, TokenUsage
from app.services.logger import log_llm_call


def get_client():
    """Get AsyncAnthropic or OpenRouter client based on config.

    If an OpenRouter key is set, the Anthropic SDK is pointed at OpenRouter.
    Otherwise, uses Anthropic API directly.
    """
    import anthropic

    if settings.openrouter_api_key:
        return anthropic.AsyncAnthropic(
            api_key=settings.openrouter_api_key,
            base_url=settings.openrouter_base_url,
        )
    return anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)


# Singleton
_client = None


def client():
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client


class ModelCapability(Protocol):
    """What every stage needs from a language model."""

    async def complete(self, prompt: str, config: ModelConfig, *, caller: str) -> Completion: ...

    def complete_streaming(self, prompt: str, config: ModelConfig, *, caller: str) -> "CompletionStream": ...


def build_request(prompt: str, config: ModelConfig) -> dict[str, Any]:
    """Translate a prompt and ModelConfig into messages API keyword arguments."""
    kwargs: dict[str, Any] = {
        "model": config.model,
        "max_tokens": config.max_tokens,
        "messages": [{"role": "user", "content": prompt}],
    }
    if config.system:
        kwargs["system"] = config.system
    if config.thinking_budget > 0:
        # Extended thinking rejects a custom temperature and needs headroom above the budget.
        kwargs["thinking"] = {"type": "enabled", "budget_tokens": config.thinking_budget}
        kwargs["max_tokens"] = max(config.max_tokens, config.thinking_budget + 1024)
    elif config.temperature is not None:
        kwargs["temperature"] = config.temperature
    return kwargs


def extract_response_text(response: Any) -> str:
    """Join the text blocks of a messages response, skipping thinking blocks."""
    parts: list[str] = []
    for block in getattr(response, "content", None) or []:
        if getattr(block, "type", None) == "text":
            parts.append(getattr(block, "text", "") or "")
    return "".join(parts).strip()


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Pull the first JSON object out of model output, tolerating code fences."""
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


class CompletionStream:
    """Async iterator over text deltas of one streamed completion.

    `text` and `usage` are complete only once iteration finishes. Breaking out
    early (or cancelling the consuming task) closes the underlying stream.
    """

    def __init__(self, anthropic_client: Any, request: dict[str, Any], caller: str):
        self._client = anthropic_client
        self._request = request
        self._caller = caller
        self.text = ""
        self.usage = TokenUsage()
        self.finished = False

    async def __aiter__(self) -> AsyncIterator[str]:
        t0 = time.monotonic()
        model = self._request.get("model", "")
        try:
            async with self._client.messages.stream(**self._request) as stream:
                async for delta in stream.text_stream:
                    if not delta:
                        continue
                    self.text += delta
                    yield delta
                final_msg = await stream.get_final_message()
        except Exception as exc:
            log_llm_call(
                model=model,
                caller=self._caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise
        self.usage = TokenUsage.from_response(final_msg)
        self.finished = True
        log_llm_call(
            model=model,
            caller=self._caller,
            input_tokens=self.usage.input_tokens,
            output_tokens=self.usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )


class ModelClient:
    """ModelCapability backed by the Anthropic messages API."""

    def __init__(self, anthropic_client: Any | None = None):
        self._client = anthropic_client

    @property
    def messages_client(self) -> Any:
        return self._client or client()

    async def complete(self, prompt: str, config: ModelConfig, *, caller: str) -> Completion:
        request = build_request(prompt, config)
        t0 = time.monotonic()
        try:
            response = await self.messages_client.messages.create(**request)
        except Exception as exc:
            log_llm_call(
                model=config.model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise
        usage = TokenUsage.from_response(response)
        log_llm_call(
            model=config.model,
            caller=caller,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return Completion(text=extract_response_text(response), usage=usage)

    def complete_streaming(self, prompt: str, config: ModelConfig, *, caller: str) -> CompletionStream:
        return CompletionStream(self.messages_client, build_request(prompt, config), caller)
