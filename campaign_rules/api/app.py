"""
Campaign Rules API — FastAPI endpoints.

Exposes the rules engine via a REST API for:
- Condition and effect authoring
- Campaign entity inspection
- Condition evaluation and expression validation
- Event / encounter resolution
- Dependency graph queries
- Effect execution history
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from campaign_rules.audit.store import EffectExecutionLog
from campaign_rules.graph.graph import UnknownNodeError
from campaign_rules.models.config import EngineConfig
from campaign_rules.models.rules import Condition, Effect
from campaign_rules.models.world import EntityState
from campaign_rules.resolution.pipeline import AlreadyResolvedError, ResolutionActionError
from campaign_rules.service.engine import NotFoundError, RulesEngine
from campaign_rules.world_model.store import CampaignStateStore


# --- Request/Response Models ---

class EvaluateRequest(BaseModel):
    context: Dict[str, Any] = {}


class ExpressionRequest(BaseModel):
    expression: Any
    context: Dict[str, Any] = {}


class SelectionRequest(BaseModel):
    node_ids: List[str]
    branch_id: Optional[str] = None
    max_depth: Optional[int] = None


# --- Application Factory ---

def create_app(
    store: Optional[CampaignStateStore] = None,
    audit_log: Optional[EffectExecutionLog] = None,
    config: Optional[EngineConfig] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Campaign Rules API",
        description="Condition evaluation, effect resolution and dependency graphs",
        version="0.1.0-alpha",
    )

    cfg = config or EngineConfig()
    logging.getLogger("campaign_rules").setLevel(cfg.log_level.upper())

    engine = RulesEngine(store=store, audit_log=audit_log, config=cfg)
    st = engine.store

    # Store components on app state for access in endpoints
    app.state.engine = engine
    app.state.store = st
    app.state.config = cfg

    # === CONDITIONS ===

    @app.post("/conditions")
    def upsert_condition(condition: Condition):
        """Create or replace a condition."""
        validation = engine.validate_expression(condition.expression)
        if not validation.valid:
            raise HTTPException(400, {"errors": validation.errors})
        st.upsert_condition(condition)
        return condition.model_dump(mode="json")

    @app.get("/conditions")
    def list_conditions():
        return [c.model_dump(mode="json") for c in st.list_conditions()]

    @app.get("/conditions/{condition_id}")
    def get_condition(condition_id: str):
        condition = st.get_condition(condition_id)
        if not condition:
            raise HTTPException(404, "Condition not found")
        return condition.model_dump(mode="json")

    @app.delete("/conditions/{condition_id}")
    def delete_condition(condition_id: str):
        if not st.remove_condition(condition_id):
            raise HTTPException(404, "Condition not found")
        return {"status": "deleted", "condition_id": condition_id}

    @app.post("/conditions/{condition_id}/evaluate")
    def evaluate_condition(condition_id: str, req: EvaluateRequest):
        """Evaluate a condition against a context, with its trace."""
        try:
            result = engine.evaluate_condition(condition_id, req.context)
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        return result.model_dump(mode="json")

    # === EXPRESSIONS ===

    @app.post("/expressions/validate")
    def validate_expression(req: ExpressionRequest):
        return engine.validate_expression(req.expression).model_dump(mode="json")

    @app.post("/expressions/evaluate")
    def evaluate_expression(req: ExpressionRequest):
        """Ad-hoc evaluation (for authoring tools)."""
        return engine.evaluate_expression(req.expression, req.context).model_dump(mode="json")

    # === EFFECTS ===

    @app.post("/effects")
    def upsert_effect(effect: Effect):
        """Create or replace an effect. The payload is checked but stored regardless."""
        validation = engine.patch_engine.validate(effect.payload, effect.entity_type)
        st.upsert_effect(effect)
        return {
            "effect": effect.model_dump(mode="json"),
            "validation": validation.model_dump(mode="json"),
        }

    @app.get("/effects/{effect_id}")
    def get_effect(effect_id: str):
        effect = st.get_effect(effect_id)
        if not effect:
            raise HTTPException(404, "Effect not found")
        return effect.model_dump(mode="json")

    @app.delete("/effects/{effect_id}")
    def delete_effect(effect_id: str):
        if not st.remove_effect(effect_id):
            raise HTTPException(404, "Effect not found")
        return {"status": "deleted", "effect_id": effect_id}

    @app.get("/effects/{effect_id}/preview")
    def preview_effect(effect_id: str, branch_id: Optional[str] = None):
        """What the effect would change, without applying it."""
        try:
            preview = engine.preview_effect(effect_id, branch_id)
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        return preview.model_dump(mode="json")

    @app.get("/effects/{effect_id}/executions")
    def get_effect_executions(effect_id: str, limit: int = 50):
        records = engine.get_execution_history(effect_id=effect_id, limit=limit)
        return [r.model_dump(mode="json") for r in records]

    # === ENTITIES ===

    @app.post("/entities")
    def upsert_entity(entity: EntityState):
        """Manual state update (for testing)."""
        st.upsert_entity(entity)
        return {"status": "ingested", "entity_id": entity.entity_id}

    @app.get("/entities/{entity_type}/{entity_id}")
    def get_entity(entity_type: str, entity_id: str, branch_id: Optional[str] = None):
        entity = st.get_entity(entity_type, entity_id, branch_id or cfg.default_branch)
        if not entity:
            raise HTTPException(404, "Entity not found")
        return entity.model_dump(mode="json")

    @app.get("/entities/{entity_type}/{entity_id}/computed")
    def get_computed_fields(entity_type: str, entity_id: str, branch_id: Optional[str] = None):
        try:
            result = engine.compute_fields(entity_type, entity_id, branch_id)
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        return result.model_dump(mode="json")

    @app.get("/entities/{entity_type}/{entity_id}/executions")
    def get_entity_executions(entity_type: str, entity_id: str, limit: int = 50):
        records = engine.get_execution_history(
            entity_type=entity_type, entity_id=entity_id, limit=limit
        )
        return [r.model_dump(mode="json") for r in records]

    # === RESOLUTION ===

    def _resolve(resolver, entity_id: str, branch_id: Optional[str]):
        try:
            result = resolver(entity_id, branch_id)
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        except AlreadyResolvedError as e:
            raise HTTPException(409, str(e))
        except ResolutionActionError as e:
            raise HTTPException(500, str(e))
        return result.model_dump(mode="json")

    @app.post("/events/{event_id}/resolve")
    def resolve_event(event_id: str, branch_id: Optional[str] = None):
        """Complete an event and run its PRE / ON_RESOLVE / POST effects."""
        return _resolve(engine.resolve_event, event_id, branch_id)

    @app.post("/encounters/{encounter_id}/resolve")
    def resolve_encounter(encounter_id: str, branch_id: Optional[str] = None):
        """Resolve an encounter and run its PRE / ON_RESOLVE / POST effects."""
        return _resolve(engine.resolve_encounter, encounter_id, branch_id)

    # === DEPENDENCY GRAPH ===

    @app.get("/campaigns/{campaign_id}/graph")
    def get_dependency_graph(campaign_id: str, branch_id: Optional[str] = None):
        return engine.get_dependency_graph(campaign_id, branch_id).model_dump(mode="json")

    @app.post("/campaigns/{campaign_id}/graph/invalidate")
    def invalidate_graph(campaign_id: str, branch_id: Optional[str] = None):
        dropped = engine.invalidate_graph(campaign_id, branch_id)
        return {"status": "invalidated", "dropped": dropped}

    @app.get("/campaigns/{campaign_id}/graph/nodes/{node_id}/upstream")
    def get_upstream(
        campaign_id: str,
        node_id: str,
        branch_id: Optional[str] = None,
        max_depth: Optional[int] = None,
    ):
        try:
            return engine.get_upstream(campaign_id, node_id, branch_id, max_depth)
        except UnknownNodeError:
            raise HTTPException(404, "Node not found")

    @app.get("/campaigns/{campaign_id}/graph/nodes/{node_id}/downstream")
    def get_downstream(
        campaign_id: str,
        node_id: str,
        branch_id: Optional[str] = None,
        max_depth: Optional[int] = None,
    ):
        try:
            return engine.get_downstream(campaign_id, node_id, branch_id, max_depth)
        except UnknownNodeError:
            raise HTTPException(404, "Node not found")

    @app.post("/campaigns/{campaign_id}/graph/select")
    def select_nodes(campaign_id: str, req: SelectionRequest):
        try:
            result = engine.select_nodes(
                campaign_id, req.node_ids, req.branch_id, req.max_depth
            )
        except UnknownNodeError:
            raise HTTPException(404, "Node not found")
        return result.model_dump(mode="json")

    return app


# Default application instance
app = create_app()
