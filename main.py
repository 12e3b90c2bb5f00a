"""Tiered Research

Simple CLI for running research queries.
"""

import argparse
import asyncio

from app.agents.orchestrator import ResearchOrchestrator
from app.models.research import Tier
from app.models.schemas import ResearchRequest
from app.tools.web_utils import extract_domain


async def run_research(query: str, tier: str | None = None):
    """Run research on the given query."""
    print(f"Research query: {query}")
    print("-" * 50)

    orchestrator = ResearchOrchestrator()
    request = ResearchRequest(query=query, tier_override=tier)

    async for event in orchestrator.research(request):
        event_type = event.event.value
        data = event.data

        if event_type == "tier_selected":
            suffix = " (fallback)" if data.get("fallback") else ""
            print(f"[*] Tier: {data.get('tier')}{suffix} - {data.get('rationale', '')}")

        elif event_type == "planning_complete":
            print(f"\n[*] Plan (up to {data.get('max_rounds')} rounds):")
            for area in data.get("focus_areas", []):
                print(f"  - {area}")

        elif event_type == "round_started":
            print(f"\n[~] Round {data.get('round')}: {data.get('query', '')[:80]}")
            print(f"    allocation: {data.get('allocation')}")

        elif event_type == "provider_complete":
            status = "ok" if data.get("success") else f"failed ({data.get('error')})"
            print(f"  [+] {data.get('provider')}: {data.get('count')} sources, {status}")

        elif event_type == "round_complete":
            print(
                f"  [+] round {data.get('round')} complete: "
                f"{data.get('new_source_count')} new, {data.get('total_source_count')} total"
            )

        elif event_type == "reflection_complete":
            if data.get("has_gap"):
                print(f"  [?] gap: {data.get('gap_summary', '')[:100]}")
            else:
                print("  [=] no gap found")

        elif event_type == "research_stopped":
            print(f"\n[*] Stopped after round {data.get('round')}: {data.get('reason')}")

        elif event_type == "sources_ready":
            sources = data.get("sources", [])
            print(f"[*] {len(sources)} sources selected for synthesis")
            for index, source in enumerate(sources[:10], start=1):
                print(f"  [{index}] {source.get('title', '')[:70]} ({extract_domain(source.get('url', ''))})")

        elif event_type == "synthesis_started":
            print("\n[+] Synthesizing answer...\n")

        elif event_type == "token":
            print(data.get("text", ""), end="", flush=True)

        elif event_type == "complete":
            usage = data.get("token_usage", {})
            print(f"\n\n[*] Research Complete!")
            print(f"   Sources: {data.get('source_count')}")
            print(f"   Tokens: {usage.get('total_tokens')}")
            if data.get("no_external_sources"):
                print("   No external sources were used.")

        elif event_type == "cancelled":
            print(f"\n[!] Cancelled during {data.get('stage')}")

        elif event_type == "error":
            print(f"\n[!] Error in {data.get('stage')}: {data.get('message', 'Unknown error')}")


def main():
    parser = argparse.ArgumentParser(description="Tiered research orchestrator")
    parser.add_argument("query", help="Research question")
    parser.add_argument(
        "--tier",
        "-t",
        choices=[tier.value for tier in Tier],
        help="Skip classification and force a tier",
    )

    args = parser.parse_args()

    try:
        asyncio.run(run_research(args.query, args.tier))
    except KeyboardInterrupt:
        print("\n[!] Interrupted")


if __name__ == "__main__":
    main()
