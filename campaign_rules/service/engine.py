"""
Rules Engine — the query surface the API layer talks to.

Wires the evaluator, patch engine, graph builder and resolution pipeline to a
campaign state store and an audit log. Expression failures come back as
EvaluationResult(success=False); lookups of unknown records raise NotFoundError.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from campaign_rules.audit.store import EffectExecutionLog
from campaign_rules.dependencies.extractor import DependencyExtractor
from campaign_rules.expression.errors import ExpressionError
from campaign_rules.expression.evaluator import ExpressionEvaluator
from campaign_rules.expression.operators import CustomOperator, OperatorRegistry
from campaign_rules.expression.validator import ExpressionValidator
from campaign_rules.graph.builder import DependencyGraphBuilder
from campaign_rules.graph.graph import DependencyGraph
from campaign_rules.models.config import EngineConfig
from campaign_rules.models.evaluation import (
    ComputedFieldsResult,
    EvaluationResult,
    ExpressionValidationResult,
)
from campaign_rules.models.execution import (
    EffectExecutionRecord,
    EncounterResolutionResult,
    EventResolutionResult,
    ResolutionResult,
)
from campaign_rules.models.graph import DependencyGraphSnapshot, SelectionResult
from campaign_rules.models.patch import PatchPreview
from campaign_rules.models.world import EntityState
from campaign_rules.patch.engine import PatchEngine
from campaign_rules.resolution.pipeline import EffectResolutionPipeline
from campaign_rules.world_model.store import CampaignStateStore

logger = logging.getLogger(__name__)


class NotFoundError(Exception):
    """Raised when a condition, effect or entity does not exist."""
    pass


@dataclass
class _CachedGraph:
    revision: int
    graph: DependencyGraph
    snapshot: DependencyGraphSnapshot


class RulesEngine:
    def __init__(
        self,
        store: Optional[CampaignStateStore] = None,
        audit_log: Optional[EffectExecutionLog] = None,
        config: Optional[EngineConfig] = None,
        registry: Optional[OperatorRegistry] = None,
    ):
        self.config = config or EngineConfig()
        self.store = store or CampaignStateStore()
        self.audit_log = audit_log or EffectExecutionLog(db_path=self.config.audit_db_path)
        self.registry = registry or OperatorRegistry()

        depth = self.config.max_expression_depth
        self.evaluator = ExpressionEvaluator(self.registry, max_depth=depth)
        self.validator = ExpressionValidator(self.registry, max_depth=depth)
        self.extractor = DependencyExtractor()
        self.patch_engine = PatchEngine(self.config)
        self.builder = DependencyGraphBuilder(self.extractor)
        self.pipeline = EffectResolutionPipeline(
            evaluator=self.evaluator,
            patch_engine=self.patch_engine,
            audit_log=self.audit_log,
            config=self.config,
            extractor=self.extractor,
        )
        self._graph_cache: Dict[Tuple[str, str], _CachedGraph] = {}

    # === EXPRESSIONS ===

    def register_operator(
        self, name: str, implementation: Callable[..., Any], description: str = ""
    ) -> CustomOperator:
        return self.registry.register(name, implementation, description)

    def evaluate_condition(self, condition_id: str, context: Dict[str, Any]) -> EvaluationResult:
        """Evaluate a stored condition. Inactive conditions are not evaluated."""
        condition = self.store.get_condition(condition_id)
        if condition is None:
            raise NotFoundError(f"Condition not found: {condition_id}")
        if not condition.is_active:
            return EvaluationResult(
                success=False,
                error=f"Condition {condition_id} is inactive",
                error_type="InactiveCondition",
                condition_id=condition_id,
            )
        result = self.evaluate_expression(condition.expression, context)
        result.condition_id = condition_id
        return result

    def evaluate_expression(self, expression: Any, context: Dict[str, Any]) -> EvaluationResult:
        try:
            value, trace = self.evaluator.evaluate(expression, context)
        except ExpressionError as e:
            logger.debug("Expression evaluation failed: %s", e)
            return EvaluationResult(
                success=False,
                trace=e.trace,
                error=str(e),
                error_type=type(e).__name__,
            )
        return EvaluationResult(success=True, value=value, trace=trace)

    def validate_expression(self, expression: Any) -> ExpressionValidationResult:
        return self.validator.validate(expression)

    def compute_fields(
        self, entity_type: str, entity_id: str, branch_id: Optional[str] = None
    ) -> ComputedFieldsResult:
        """
        Derive field values for an entity from its active conditions.

        Type-level and instance conditions are evaluated against the entity's
        variables in descending priority (ties keep registration order). The
        first condition that evaluates successfully decides its field; failing
        conditions are recorded and the next one for that field is tried.
        """
        branch = branch_id or self.config.default_branch
        entity = self._require_entity(entity_type, entity_id, branch)
        conditions = sorted(
            (c for c in self.store.conditions_for_entity(entity) if c.is_active),
            key=lambda c: -c.priority,
        )

        result = ComputedFieldsResult(entity_type=entity_type, entity_id=entity_id)
        for condition in conditions:
            if condition.field in result.fields:
                continue
            evaluation = self.evaluate_expression(condition.expression, entity.variables)
            if evaluation.success:
                result.fields[condition.field] = evaluation.value
            else:
                result.errors[condition.id] = evaluation.error
        logger.debug(
            "Computed %d field(s) for %s %s from %d condition(s)",
            len(result.fields), entity_type, entity_id, len(conditions),
        )
        return result

    # === RESOLUTION ===

    def resolve_event(
        self,
        event_id: str,
        branch_id: Optional[str] = None,
        action: Optional[Callable[[EntityState], EntityState]] = None,
    ) -> EventResolutionResult:
        return self._resolve("event", event_id, branch_id, action, EventResolutionResult)

    def resolve_encounter(
        self,
        encounter_id: str,
        branch_id: Optional[str] = None,
        action: Optional[Callable[[EntityState], EntityState]] = None,
    ) -> EncounterResolutionResult:
        return self._resolve(
            "encounter", encounter_id, branch_id, action, EncounterResolutionResult
        )

    def _resolve(self, entity_type, entity_id, branch_id, action, result_cls) -> ResolutionResult:
        branch = branch_id or self.config.default_branch
        entity = self._require_entity(entity_type, entity_id, branch)
        result = self.pipeline.resolve(
            entity,
            self.store.effects_for_entity(entity_type, entity_id),
            self.store.list_conditions(),
            action=action,
            result_cls=result_cls,
        )
        self.store.upsert_entity(result.entity)
        return result

    def preview_effect(self, effect_id: str, branch_id: Optional[str] = None) -> PatchPreview:
        """What the effect would do to its entity right now, without applying it."""
        effect = self.store.get_effect(effect_id)
        if effect is None:
            raise NotFoundError(f"Effect not found: {effect_id}")
        entity = self._require_entity(
            effect.entity_type, effect.entity_id, branch_id or self.config.default_branch
        )
        return self.patch_engine.preview(entity.document(), effect.payload, entity.entity_type)

    def get_execution_history(
        self,
        effect_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[EffectExecutionRecord]:
        if effect_id:
            return self.audit_log.query_by_effect(effect_id, limit=limit)
        if entity_type and entity_id:
            return self.audit_log.query_by_entity(entity_type, entity_id, limit=limit)
        return self.audit_log.query_recent(limit=limit)

    def _require_entity(self, entity_type: str, entity_id: str, branch_id: str) -> EntityState:
        entity = self.store.get_entity(entity_type, entity_id, branch_id)
        if entity is None:
            raise NotFoundError(f"{entity_type} not found: {entity_id} (branch {branch_id})")
        return entity

    # === DEPENDENCY GRAPH ===

    def get_dependency_graph(
        self, campaign_id: str, branch_id: Optional[str] = None
    ) -> DependencyGraphSnapshot:
        return self._cached_graph(campaign_id, branch_id).snapshot

    def get_upstream(
        self,
        campaign_id: str,
        node_id: str,
        branch_id: Optional[str] = None,
        max_depth: Optional[int] = None,
    ) -> List[str]:
        return self._cached_graph(campaign_id, branch_id).graph.upstream(node_id, max_depth)

    def get_downstream(
        self,
        campaign_id: str,
        node_id: str,
        branch_id: Optional[str] = None,
        max_depth: Optional[int] = None,
    ) -> List[str]:
        return self._cached_graph(campaign_id, branch_id).graph.downstream(node_id, max_depth)

    def select_nodes(
        self,
        campaign_id: str,
        node_ids: Iterable[str],
        branch_id: Optional[str] = None,
        max_depth: Optional[int] = None,
    ) -> SelectionResult:
        return self._cached_graph(campaign_id, branch_id).graph.select(node_ids, max_depth)

    def invalidate_graph(
        self, campaign_id: Optional[str] = None, branch_id: Optional[str] = None
    ) -> int:
        """Drop cached graphs. With no campaign, drops all of them. Returns how many were dropped."""
        if campaign_id is None:
            dropped = len(self._graph_cache)
            self._graph_cache.clear()
            return dropped
        keys = [
            key for key in self._graph_cache
            if key[0] == campaign_id and (branch_id is None or key[1] == branch_id)
        ]
        for key in keys:
            del self._graph_cache[key]
        return len(keys)

    def _cached_graph(self, campaign_id: str, branch_id: Optional[str]) -> _CachedGraph:
        key = (campaign_id, branch_id or self.config.default_branch)
        cached = self._graph_cache.get(key)
        if (
            self.config.graph_cache_enabled
            and cached is not None
            and cached.revision == self.store.revision
        ):
            logger.debug("Dependency graph cache hit for %s/%s", *key)
            return cached

        logger.debug("Dependency graph cache miss for %s/%s", *key)
        entities, conditions, effects = self.store.scope(*key)
        graph, warnings = self.builder.build_graph(
            conditions, effects, [e.ref for e in entities]
        )
        cached = _CachedGraph(
            revision=self.store.revision,
            graph=graph,
            snapshot=self.builder.snapshot(graph, warnings, *key),
        )
        if self.config.graph_cache_enabled:
            self._graph_cache[key] = cached
        return cached
