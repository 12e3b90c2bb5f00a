from __future__ import annotations

from typing import Any

from app.llm_client import ModelCapability, extract_json_object
from app.models.llm import Completion, ModelConfig, TokenUsage


class ModelAgent:
    """A pipeline stage backed by one model role.

    Subclasses set `name` (used as the caller in call logs) and build prompts;
    this base makes the call and keeps a running token count.
    """

    name: str = "agent"

    def __init__(self, model: ModelCapability, config: ModelConfig):
        self.model = model
        self.config = config
        self.usage = TokenUsage()

    async def _complete(self, prompt: str, config: ModelConfig | None = None) -> Completion:
        completion = await self.model.complete(prompt, config or self.config, caller=self.name)
        self.usage = self.usage + completion.usage
        return completion

    async def _complete_json(self, prompt: str, config: ModelConfig | None = None) -> dict[str, Any]:
        """Run a completion and parse the first JSON object out of it.

        Raises json.JSONDecodeError on malformed output; call errors propagate.
        """
        completion = await self._complete(prompt, config)
        return extract_json_object(completion.text)
