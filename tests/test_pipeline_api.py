"""Integration tests for the Stageflow HTTP API.

Uses a real PipelineService (in-memory adapters, frozen clock) placed on
app.state and httpx AsyncClient over ASGITransport. The lifespan does not
run, so no scheduler loops or Redis connections are started.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.stageflow.config import ExitCriteriaPolicy
from src.stageflow.main import create_app
from src.stageflow.service import PipelineService
from tests.factories import FrozenClock, lead_qualified_won, make_settings

PIPELINE = lead_qualified_won().model_dump(mode="json")


def _make_app(service: PipelineService | None):
    app = create_app()
    app.state.pipeline_service = service
    return app


@pytest_asyncio.fixture
async def client_and_service():
    """Test client over an app whose engine runs with a frozen clock."""
    service = PipelineService(make_settings(), clock=FrozenClock())
    app = _make_app(service)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, service


@pytest_asyncio.fixture
async def client(client_and_service):
    client, _service = client_and_service
    response = await client.post("/v1/pipelines", json=PIPELINE)
    assert response.status_code == 201
    return client


# ── Pipelines ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_pipeline(client_and_service):
    """POST /v1/pipelines -> 201 with the stored configuration."""
    client, service = client_and_service

    response = await client.post("/v1/pipelines", json=PIPELINE)
    assert response.status_code == 201
    data = response.json()
    assert data["id"] == "sales"
    assert [s["id"] for s in data["stages"]] == ["lead", "qualified", "won"]
    assert (await service.get_pipeline("default", "sales")).name == "Sales"


@pytest.mark.asyncio
async def test_create_pipeline_invalid_stages(client_and_service):
    """POST /v1/pipelines with duplicate positions -> 422 listing problems."""
    client, _service = client_and_service
    payload = lead_qualified_won().model_dump(mode="json")
    payload["stages"][1]["position"] = 0

    response = await client.post("/v1/pipelines", json=payload)
    assert response.status_code == 422
    assert response.json()["problems"]


@pytest.mark.asyncio
async def test_get_pipeline_not_found(client):
    """GET /v1/pipelines/{unknown} -> 404."""
    response = await client.get("/v1/pipelines/missing")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_pipelines_are_tenant_scoped(client):
    """A pipeline created for one tenant is invisible to another."""
    response = await client.get("/v1/pipelines", headers={"X-Tenant-ID": "other"})
    assert response.status_code == 200
    assert response.json() == []

    response = await client.get("/v1/pipelines/sales", headers={"X-Tenant-ID": "other"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_active_pipeline(client):
    """GET /v1/pipelines/active -> the pipeline flagged active."""
    response = await client.get("/v1/pipelines/active")
    assert response.status_code == 200
    assert response.json()["id"] == "sales"


@pytest.mark.asyncio
async def test_templates(client_and_service):
    """Templates are listed and can be instantiated."""
    client, _service = client_and_service

    response = await client.get("/v1/pipelines/templates")
    assert {t["id"] for t in response.json()} == {
        "enterprise-b2b",
        "smb-transactional",
        "default-pipeline",
    }

    response = await client.post(
        "/v1/pipelines/from-template/smb-transactional",
        params={"pipeline_id": "smb", "activate": "true"},
    )
    assert response.status_code == 201
    data = response.json()
    assert data["id"] == "smb"
    assert data["is_active"] is True

    response = await client.post("/v1/pipelines/from-template/nope")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_pipeline(client):
    """DELETE /v1/pipelines/{id} -> 204, then 404."""
    response = await client.delete("/v1/pipelines/sales")
    assert response.status_code == 204
    response = await client.get("/v1/pipelines/sales")
    assert response.status_code == 404


# ── Stages ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_add_stage(client):
    """POST /v1/pipelines/{id}/stages inserts and renumbers positions."""
    response = await client.post(
        "/v1/pipelines/sales/stages",
        json={
            "stage": {"id": "proposal", "name": "Proposal", "position": 0},
            "position": 2,
            "dwell_target_days": 10,
        },
    )
    assert response.status_code == 201
    data = response.json()
    assert [(s["id"], s["position"]) for s in data["stages"]] == [
        ("lead", 0),
        ("qualified", 1),
        ("proposal", 2),
        ("won", 3),
    ]
    assert data["sales_cycle_targets"]["proposal"] == 10


@pytest.mark.asyncio
async def test_remove_default_stage_conflict(client):
    """DELETE of the default stage -> 409."""
    response = await client.delete("/v1/pipelines/sales/stages/lead")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_reorder_stages(client):
    """PUT /v1/pipelines/{id}/stages/order applies the new order."""
    response = await client.put(
        "/v1/pipelines/sales/stages/order", json={"order": ["qualified", "lead", "won"]}
    )
    assert response.status_code == 200
    assert [s["id"] for s in response.json()["stages"]] == ["qualified", "lead", "won"]


# ── Rules ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_rule_lifecycle(client):
    """Add, inspect, deactivate and delete a rule."""
    rule = {
        "id": "auto-win",
        "name": "Auto win",
        "trigger": {"type": "stage_changed", "configuration": {"to_stage": "qualified"}},
        "actions": [{"type": "move_stage", "configuration": {"target_stage": "Won"}}],
    }
    response = await client.post("/v1/pipelines/sales/rules", json={"rule": rule})
    assert response.status_code == 201
    assert response.json()["id"] == "auto-win"

    response = await client.get("/v1/pipelines/sales/rules/auto-win/state")
    assert response.json() == {"rule_id": "auto-win", "state": "armed"}

    response = await client.patch(
        "/v1/pipelines/sales/rules/auto-win", json={"is_active": False}
    )
    assert response.status_code == 200
    assert response.json()["is_active"] is False

    response = await client.get("/v1/pipelines/sales/rules/auto-win/state")
    assert response.json()["state"] == "inactive"

    response = await client.delete("/v1/pipelines/sales/rules/auto-win")
    assert response.status_code == 204
    response = await client.get("/v1/pipelines/sales/rules/auto-win/state")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_rule_with_missing_target_rejected(client):
    """A move_stage action naming a missing stage -> 422."""
    rule = {
        "id": "bad",
        "name": "Bad",
        "trigger": {"type": "deal_created"},
        "actions": [{"type": "move_stage", "configuration": {"target_stage": "Nowhere"}}],
    }
    response = await client.post("/v1/pipelines/sales/rules", json={"rule": rule})
    assert response.status_code == 422
    assert any("Nowhere" in p for p in response.json()["problems"])


# ── Opportunities ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_register_and_move(client):
    """Register, move, and read the movement history."""
    response = await client.post(
        "/v1/opportunities", json={"id": "opp-1", "title": "Acme", "value": 5000}
    )
    assert response.status_code == 201
    body = response.json()
    assert body["opportunity"]["current_stage_id"] == "lead"
    assert body["result"]["movements"][0]["from_stage_id"] is None

    response = await client.post(
        "/v1/opportunities/opp-1/move", json={"to_stage": "Qualified", "actor": "rep-1"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["opportunity"]["current_stage_id"] == "qualified"
    assert body["opportunity"]["probability"] == 40

    response = await client.get("/v1/opportunities/opp-1/movements")
    assert [m["to_stage_id"] for m in response.json()] == ["lead", "qualified"]


@pytest.mark.asyncio
async def test_move_to_unknown_stage(client):
    """Moving to a stage outside the pipeline -> 409, no movement."""
    await client.post("/v1/opportunities", json={"id": "opp-1"})
    response = await client.post(
        "/v1/opportunities/opp-1/move", json={"to_stage": "negotiation", "actor": "rep-1"}
    )
    assert response.status_code == 409

    response = await client.get("/v1/opportunities/opp-1/movements")
    assert len(response.json()) == 1


@pytest.mark.asyncio
async def test_update_field(client):
    """PATCH /fields writes typed values and rejects bad ones."""
    await client.post("/v1/opportunities", json={"id": "opp-1", "value": 100})

    response = await client.patch(
        "/v1/opportunities/opp-1/fields",
        json={"field": "value", "value": 2500, "actor": "rep-1"},
    )
    assert response.status_code == 200
    assert response.json()["opportunity"]["value"] == 2500
    assert response.json()["result"]["events_processed"] == 2

    response = await client.patch(
        "/v1/opportunities/opp-1/fields",
        json={"field": "probability", "value": "lots", "actor": "rep-1"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_submit_event(client):
    """POST /v1/events with a manual trigger runs matching rules."""
    rule = {
        "id": "escalate",
        "name": "Escalate",
        "trigger": {"type": "manual"},
        "actions": [
            {"type": "notify_user", "configuration": {"user_id": "vp", "message": "Look"}}
        ],
    }
    await client.post("/v1/pipelines/sales/rules", json={"rule": rule})
    await client.post("/v1/opportunities", json={"id": "opp-1"})

    response = await client.post(
        "/v1/events", json={"type": "manual", "opportunity_id": "opp-1", "actor": "rep-1"}
    )
    assert response.status_code == 200
    executions = response.json()["rule_executions"]
    assert [e["rule_id"] for e in executions] == ["escalate"]


@pytest.mark.asyncio
async def test_unknown_opportunity(client):
    """GET /v1/opportunities/{unknown} -> 404."""
    response = await client.get("/v1/opportunities/missing")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_strict_exit_criteria_conflict():
    """Under the strict policy a blocked forward move -> 409."""
    service = PipelineService(
        make_settings(EXIT_CRITERIA_POLICY=ExitCriteriaPolicy.strict), clock=FrozenClock()
    )
    payload = lead_qualified_won().model_dump(mode="json")
    payload["stages"][0]["required_fields"] = ["owner_id"]

    transport = ASGITransport(app=_make_app(service))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        await client.post("/v1/pipelines", json=payload)
        await client.post("/v1/opportunities", json={"id": "opp-1"})
        response = await client.post(
            "/v1/opportunities/opp-1/move", json={"to_stage": "qualified", "actor": "rep-1"}
        )
        assert response.status_code == 409
        assert "owner_id" in response.json()["detail"]


# ── Analytics ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_pipeline_analytics(client):
    """GET /v1/pipelines/{id}/analytics -> report with one entry per stage."""
    await client.post("/v1/opportunities", json={"id": "opp-1", "value": 1000})

    response = await client.get("/v1/pipelines/sales/analytics", params={"days": 7})
    assert response.status_code == 200
    data = response.json()
    assert data["pipeline_id"] == "sales"
    assert [m["stage_id"] for m in data["stage_metrics"]] == ["lead", "qualified", "won"]
    assert data["total_opportunities"] == 1


@pytest.mark.asyncio
async def test_pipeline_analytics_days_bounds(client):
    """days outside 1..365 -> 422."""
    response = await client.get("/v1/pipelines/sales/analytics", params={"days": 0})
    assert response.status_code == 422


# ── Infrastructure ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_api_503_when_not_initialized():
    """app.state.pipeline_service = None -> 503."""
    transport = ASGITransport(app=_make_app(None))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/pipelines")
        assert response.status_code == 503
        assert "not available" in response.json()["detail"]


@pytest.mark.asyncio
async def test_health(client):
    """GET /health and /health/ready -> ok with the in-memory engine."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"

    response = await client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["checks"] == {"engine": "ok", "redis": "disabled"}


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    """GET /metrics exposes the engine counters."""
    await client.post("/v1/opportunities", json={"id": "opp-1"})
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "stageflow_" in response.text
