from __future__ import annotations

from typing import Sequence

from app.llm_client import CompletionStream, ModelCapability
from app.models.llm import ModelConfig
from app.models.research import ResearchPlan, SourceRecord
from app.services.prompt_store import render_prompt

CONTEXT_TURNS = 6


def format_sources(sources: Sequence[SourceRecord]) -> str:
    """Number sources [1]..[n] in selection order; the answer cites these numbers."""
    blocks = []
    for index, source in enumerate(sources, start=1):
        meta = source.provider_kind
        if source.published_at:
            meta = f"{meta}, {source.published_at}"
        lines = [f"[{index}] {source.title} ({meta})", f"URL: {source.url}"]
        if source.snippet:
            lines.append(source.snippet)
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _format_plan(plan: ResearchPlan | None) -> str:
    if plan is None or not (plan.strategy or plan.focus_areas):
        return ""
    focus = "".join(f"\n- {area}" for area in plan.focus_areas)
    return f"{plan.strategy}{focus}".strip()


class Synthesizer:
    """Builds the final-answer prompt and starts the streamed completion."""

    name = "synthesizer"

    def __init__(self, model: ModelCapability):
        self.model = model

    def build_prompt(
        self,
        query: str,
        selected: Sequence[SourceRecord],
        *,
        context: Sequence[str] = (),
        plan: ResearchPlan | None = None,
        researched: bool = True,
    ) -> str:
        context_text = "\n".join(f"- {turn}" for turn in list(context)[-CONTEXT_TURNS:])
        if selected:
            return render_prompt(
                "synthesis.sourced",
                query=query,
                context=context_text,
                plan=_format_plan(plan),
                sources=format_sources(selected),
            )
        key = "synthesis.unsourced" if researched else "synthesis.fast"
        return render_prompt(key, query=query, context=context_text)

    def synthesize(
        self,
        query: str,
        selected: Sequence[SourceRecord],
        config: ModelConfig,
        *,
        context: Sequence[str] = (),
        plan: ResearchPlan | None = None,
        researched: bool = True,
    ) -> CompletionStream:
        prompt = self.build_prompt(query, selected, context=context, plan=plan, researched=researched)
        return self.model.complete_streaming(prompt, config, caller=self.name)
