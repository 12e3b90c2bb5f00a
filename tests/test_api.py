"""Tests for API routes."""
import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.config import build_orchestrator_config
from fakes import FakeProvider, ScriptedModel, make_settings


@pytest.fixture
def app():
    from app.main import app

    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def _parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.replace("\r\n", "\n").split("\n\n"):
        fields = {}
        for line in block.splitlines():
            if ":" in line and not line.startswith(":"):
                name, value = line.split(":", 1)
                fields[name] = value.strip()
        if "event" in fields:
            events.append((fields["event"], json.loads(fields["data"])))
    return events


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "tiered-research"


def test_startup_builds_config_and_providers(app):
    with patch("app.main.get_orchestrator_config", return_value=build_orchestrator_config(make_settings())), patch(
        "app.main.get_provider_registry", return_value={"general": FakeProvider("general")}
    ) as registry:
        with TestClient(app) as started:
            assert started.get("/api/health").status_code == 200
    registry.assert_called_once()


def test_list_tiers(client):
    with patch("app.api.routes.tiers.get_orchestrator_config", return_value=build_orchestrator_config(make_settings())):
        response = client.get("/api/tiers")
    assert response.status_code == 200
    tiers = {t["tier"]: t for t in response.json()["tiers"]}
    assert set(tiers) == {"fast", "hybrid", "deep"}
    assert tiers["fast"]["max_rounds"] == 0
    assert tiers["deep"]["uses_planner"] and tiers["deep"]["reflects"]


def test_stream_rejects_blank_query(client):
    response = client.post("/api/research/stream", json={"query": "  "})
    assert response.status_code == 422


def test_stream_emits_lifecycle_events(client):
    model = ScriptedModel()
    providers = {kind: FakeProvider(kind) for kind in ("general", "lit", "preprint", "trials")}
    config = build_orchestrator_config(make_settings())

    with patch("app.api.routes.research.get_orchestrator_config", return_value=config), patch(
        "app.api.routes.research.get_provider_registry", return_value=providers
    ), patch("app.agents.orchestrator.ModelClient", return_value=model):
        response = client.post(
            "/api/research/stream",
            json={"query": "statins and memory", "tier_override": "hybrid"},
        )

    assert response.status_code == 200
    events = _parse_sse(response.text)
    kinds = [name for name, _ in events]
    assert kinds[0] == "tier_selected"
    assert "round_started" in kinds
    assert "sources_ready" in kinds
    assert kinds[-1] == "complete"
    assert events[-1][1]["tier"] == "hybrid"
    assert events[-1][1]["source_count"] > 0
