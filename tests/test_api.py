"""Tests for the FastAPI API endpoints."""

import pytest
from fastapi.testclient import TestClient

from campaign_rules.api.app import create_app
from campaign_rules.audit.store import EffectExecutionLog
from campaign_rules.models.config import EngineConfig
from campaign_rules.world_model.store import CampaignStateStore


@pytest.fixture
def client():
    """Create a test client with fresh components."""
    store = CampaignStateStore()
    audit_log = EffectExecutionLog(db_path=":memory:")
    config = EngineConfig(log_level="DEBUG")

    app = create_app(store=store, audit_log=audit_log, config=config)
    return TestClient(app)


def _encounter(entity_id: str = "enc_1") -> dict:
    return {
        "entity_type": "encounter",
        "entity_id": entity_id,
        "campaign_id": "camp_1",
        "variables": {"loot": 0, "threat": 3},
        "attributes": {"name": "Bandit Ambush", "campaignId": "camp_1"},
    }


def _condition(condition_id: str = "dangerous", expression=None) -> dict:
    return {
        "id": condition_id,
        "entity_type": "encounter",
        "entity_id": "enc_1",
        "field": "is_dangerous",
        "expression": expression if expression is not None else {">=": [{"var": "threat"}, 3]},
    }


def _effect(effect_id: str = "loot", timing: str = "ON_RESOLVE", payload=None, **extra) -> dict:
    body = {
        "id": effect_id,
        "entity_type": "encounter",
        "entity_id": "enc_1",
        "timing": timing,
        "payload": payload if payload is not None else [
            {"op": "replace", "path": "/variables/loot", "value": 50},
        ],
    }
    body.update(extra)
    return body


class TestConditionEndpoints:
    def test_create_and_get(self, client):
        response = client.post("/conditions", json=_condition())
        assert response.status_code == 200
        assert response.json()["id"] == "dangerous"

        assert client.get("/conditions/dangerous").json()["field"] == "is_dangerous"
        assert len(client.get("/conditions").json()) == 1

    def test_invalid_expression_rejected(self, client):
        response = client.post("/conditions", json=_condition(expression={"summon": [1]}))
        assert response.status_code == 400
        assert "Unknown operator: summon" in response.json()["detail"]["errors"]

    def test_not_found(self, client):
        assert client.get("/conditions/nope").status_code == 404
        assert client.delete("/conditions/nope").status_code == 404
        assert client.post("/conditions/nope/evaluate", json={"context": {}}).status_code == 404

    def test_delete(self, client):
        client.post("/conditions", json=_condition())
        assert client.delete("/conditions/dangerous").json()["status"] == "deleted"
        assert client.get("/conditions/dangerous").status_code == 404

    def test_evaluate(self, client):
        client.post("/conditions", json=_condition())
        response = client.post("/conditions/dangerous/evaluate", json={"context": {"threat": 5}})
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["value"] is True
        assert data["condition_id"] == "dangerous"
        assert data["trace"][0]["operation"] == ">="

    def test_evaluate_type_mismatch_is_structured(self, client):
        client.post("/conditions", json=_condition(
            "trade_hub", {"==": [{"var": "settlement.tags"}, "trade_hub"]}
        ))
        response = client.post("/conditions/trade_hub/evaluate", json={
            "context": {"settlement": {"tags": ["trade_hub"]}},
        })
        assert response.status_code == 200
        assert response.json()["error_type"] == "TypeMismatchError"


class TestExpressionEndpoints:
    def test_validate(self, client):
        assert client.post("/expressions/validate", json={
            "expression": {"and": [True, {"var": "x"}]},
        }).json()["valid"] is True
        assert client.post("/expressions/validate", json={
            "expression": {"nope": []},
        }).json()["valid"] is False

    def test_evaluate(self, client):
        response = client.post("/expressions/evaluate", json={
            "expression": {"+": [{"var": "a"}, 2]},
            "context": {"a": 40},
        })
        assert response.json()["value"] == 42


class TestEffectEndpoints:
    def test_create_reports_validation(self, client):
        response = client.post("/effects", json=_effect(payload=[
            {"op": "replace", "path": "/campaignId", "value": "other"},
        ]))
        assert response.status_code == 200
        data = response.json()
        assert data["effect"]["id"] == "loot"
        assert data["validation"]["valid"] is False
        # Stored regardless
        assert client.get("/effects/loot").status_code == 200

    def test_preview(self, client):
        client.post("/entities", json=_encounter())
        client.post("/effects", json=_effect())
        response = client.get("/effects/loot/preview")
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["after"]["variables"]["loot"] == 50
        assert client.get("/entities/encounter/enc_1").json()["variables"]["loot"] == 0

    def test_preview_without_entity(self, client):
        client.post("/effects", json=_effect())
        assert client.get("/effects/loot/preview").status_code == 404

    def test_delete(self, client):
        client.post("/effects", json=_effect())
        assert client.delete("/effects/loot").status_code == 200
        assert client.get("/effects/loot").status_code == 404


class TestEntityEndpoints:
    def test_computed_fields(self, client):
        client.post("/entities", json=_encounter())
        client.post("/conditions", json=_condition())
        client.post("/conditions", json={
            **_condition("always", expression=False), "priority": 10,
        })
        client.post("/conditions", json={
            **_condition("broken", expression={"<": [{"var": "missing"}, 1]}), "priority": 20,
        })

        response = client.get("/entities/encounter/enc_1/computed")
        assert response.status_code == 200
        data = response.json()
        assert data["fields"] == {"is_dangerous": False}
        assert list(data["errors"]) == ["broken"]

    def test_computed_fields_unknown_entity(self, client):
        assert client.get("/entities/encounter/enc_9/computed").status_code == 404


class TestResolutionEndpoints:
    def test_resolve_encounter(self, client):
        client.post("/entities", json=_encounter())
        client.post("/conditions", json=_condition())
        client.post("/effects", json=_effect(
            "bad_pre", timing="PRE", payload=[{"op": "add", "path": "/variables/trap"}],
        ))
        client.post("/effects", json=_effect(condition_id="dangerous"))

        response = client.post("/encounters/enc_1/resolve")
        assert response.status_code == 200
        data = response.json()
        assert data["pre"]["failed"] == 1
        assert data["pre"]["status"] == "failed"
        assert data["on_resolve"]["succeeded"] == 1
        assert data["on_resolve"]["status"] == "succeeded"
        assert data["post"]["status"] == "empty"
        assert data["entity"]["variables"]["loot"] == 50
        assert data["entity"]["is_resolved"] is True

        executions = client.get("/entities/encounter/enc_1/executions").json()
        assert [e["effect_id"] for e in executions] == ["bad_pre", "loot"]
        assert len(client.get("/effects/loot/executions").json()) == 1

    def test_resolve_twice_conflicts(self, client):
        client.post("/entities", json=_encounter())
        assert client.post("/encounters/enc_1/resolve").status_code == 200
        assert client.post("/encounters/enc_1/resolve").status_code == 409

    def test_resolve_unknown(self, client):
        assert client.post("/events/evt_1/resolve").status_code == 404
        assert client.post("/encounters/enc_1/resolve?branch_id=alt").status_code == 404


class TestGraphEndpoints:
    def _seed(self, client):
        client.post("/entities", json=_encounter())
        client.post("/conditions", json=_condition())
        client.post("/effects", json=_effect(condition_id="dangerous"))

    def test_graph(self, client):
        self._seed(client)
        response = client.get("/campaigns/camp_1/graph")
        assert response.status_code == 200
        data = response.json()
        ids = {n["id"] for n in data["nodes"]}
        assert {"CONDITION:dangerous", "EFFECT:loot", "VARIABLE:loot", "VARIABLE:threat"} <= ids
        assert data["stats"]["node_counts"]["EFFECT"] == 1
        assert data["cycles"] == []

    def test_upstream_downstream(self, client):
        self._seed(client)
        upstream = client.get("/campaigns/camp_1/graph/nodes/VARIABLE:loot/upstream").json()
        assert "EFFECT:loot" in upstream
        downstream = client.get(
            "/campaigns/camp_1/graph/nodes/EFFECT:loot/downstream?max_depth=1"
        ).json()
        assert set(downstream) == {"VARIABLE:loot", "VARIABLE:threat"}

    def test_unknown_node(self, client):
        self._seed(client)
        response = client.get("/campaigns/camp_1/graph/nodes/VARIABLE:mana/upstream")
        assert response.status_code == 404

    def test_select(self, client):
        self._seed(client)
        response = client.post("/campaigns/camp_1/graph/select", json={
            "node_ids": ["CONDITION:dangerous"],
        })
        assert response.status_code == 200
        assert response.json()["downstream"] == ["VARIABLE:threat"]
        bad = client.post("/campaigns/camp_1/graph/select", json={"node_ids": ["nope"]})
        assert bad.status_code == 404

    def test_invalidate(self, client):
        self._seed(client)
        client.get("/campaigns/camp_1/graph")
        response = client.post("/campaigns/camp_1/graph/invalidate")
        assert response.json() == {"status": "invalidated", "dropped": 1}
