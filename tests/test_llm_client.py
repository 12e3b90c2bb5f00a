from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.llm_client import ModelClient, build_request, extract_json_object, extract_response_text
from app.models.llm import ModelConfig, TokenUsage


def _message(text: str, input_tokens: int = 12, output_tokens: int = 7):
    return SimpleNamespace(
        content=[
            SimpleNamespace(type="thinking", thinking="hmm"),
            SimpleNamespace(type="text", text=text),
        ],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


class FakeMessageStream:
    def __init__(self, deltas, final):
        self._deltas = deltas
        self._final = final

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    @property
    def text_stream(self):
        async def gen():
            for delta in self._deltas:
                yield delta

        return gen()

    async def get_final_message(self):
        return self._final


def test_build_request_plain():
    request = build_request("hi", ModelConfig(model="m", max_tokens=100, temperature=0.2, system="be brief"))
    assert request == {
        "model": "m",
        "max_tokens": 100,
        "messages": [{"role": "user", "content": "hi"}],
        "system": "be brief",
        "temperature": 0.2,
    }


def test_build_request_with_thinking_budget():
    request = build_request("hi", ModelConfig(model="m", max_tokens=1024, temperature=0.2, thinking_budget=2048))
    assert request["thinking"] == {"type": "enabled", "budget_tokens": 2048}
    assert request["max_tokens"] == 2048 + 1024
    assert "temperature" not in request


@pytest.mark.parametrize(
    "raw",
    [
        '{"a": 1}',
        '```json\n{"a": 1}\n```',
        'Here you go: {"a": 1} hope that helps',
    ],
)
def test_extract_json_object(raw):
    assert extract_json_object(raw) == {"a": 1}


@pytest.mark.parametrize("raw", ["", "no braces", "[1, 2]"])
def test_extract_json_object_rejects_non_objects(raw):
    with pytest.raises(json.JSONDecodeError):
        extract_json_object(raw)


def test_extract_response_text_skips_thinking_blocks():
    assert extract_response_text(_message(" answer ")) == "answer"


@pytest.mark.asyncio
async def test_complete_returns_text_and_usage():
    anthropic_client = MagicMock()
    anthropic_client.messages.create = AsyncMock(return_value=_message('{"tier": "fast"}'))
    client = ModelClient(anthropic_client)

    completion = await client.complete("classify", ModelConfig(model="m"), caller="tier_router")

    assert completion.text == '{"tier": "fast"}'
    assert completion.usage == TokenUsage(input_tokens=12, output_tokens=7)
    kwargs = anthropic_client.messages.create.call_args.kwargs
    assert kwargs["messages"] == [{"role": "user", "content": "classify"}]


@pytest.mark.asyncio
async def test_complete_propagates_errors():
    anthropic_client = MagicMock()
    anthropic_client.messages.create = AsyncMock(side_effect=RuntimeError("overloaded"))

    with pytest.raises(RuntimeError):
        await ModelClient(anthropic_client).complete("x", ModelConfig(model="m"), caller="test")


@pytest.mark.asyncio
async def test_streaming_yields_deltas_and_records_usage():
    anthropic_client = MagicMock()
    anthropic_client.messages.stream = MagicMock(
        return_value=FakeMessageStream(["Hel", "", "lo"], _message("Hello", 30, 2))
    )
    stream = ModelClient(anthropic_client).complete_streaming("q", ModelConfig(model="m"), caller="synthesizer")

    chunks = [chunk async for chunk in stream]

    assert chunks == ["Hel", "lo"]
    assert stream.text == "Hello"
    assert stream.usage == TokenUsage(input_tokens=30, output_tokens=2)
    assert stream.finished
