"""
Effect Resolution Pipeline — runs an entity's effects around its resolution.

Phases run in a fixed order and never go back:

  PRE  ->  core resolution action  ->  ON_RESOLVE  ->  POST

Behavioral Contract:
- Within a phase, active effects for the entity run by descending priority,
  ties in the order they were supplied
- An effect with a guard condition runs only if the guard evaluates truthy
  against the entity's current variables; a guard that errors fails closed
- Each effect sees the state left by the one before it
- One effect failing is recorded in its phase summary and never stops the
  phase or later phases; only the core action is fatal
- Every attempted effect is written to the audit log, when one is configured
"""

import copy
import logging
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Type
from uuid import uuid4

from campaign_rules.audit.store import EffectExecutionLog
from campaign_rules.dependencies.extractor import DependencyExtractor
from campaign_rules.expression.errors import ExpressionError
from campaign_rules.expression.evaluator import ExpressionEvaluator, is_truthy
from campaign_rules.graph.builder import DependencyGraphBuilder
from campaign_rules.models.config import EngineConfig
from campaign_rules.models.execution import (
    EffectError,
    EffectExecutionRecord,
    EffectExecutionSummary,
    ResolutionResult,
)
from campaign_rules.models.patch import PatchDiff
from campaign_rules.models.rules import Condition, Effect, EffectTiming
from campaign_rules.models.world import EntityState
from campaign_rules.patch.engine import PatchEngine, PatchError

logger = logging.getLogger(__name__)


class ResolutionActionError(Exception):
    """Raised when the core resolution action fails. Nothing after PRE has run."""
    pass


class AlreadyResolvedError(Exception):
    """Raised when resolution is requested for an entity that is already resolved."""
    pass


def mark_resolved(entity: EntityState) -> EntityState:
    """Default core action: flag the entity resolved and bump its version."""
    now = datetime.utcnow()
    return entity.model_copy(update={
        "is_resolved": True,
        "resolved_at": now,
        "version": entity.version + 1,
        "last_updated": now,
    })


class EffectResolutionPipeline:
    def __init__(
        self,
        evaluator: Optional[ExpressionEvaluator] = None,
        patch_engine: Optional[PatchEngine] = None,
        audit_log: Optional[EffectExecutionLog] = None,
        config: Optional[EngineConfig] = None,
        extractor: Optional[DependencyExtractor] = None,
    ):
        self.config = config or EngineConfig()
        self.evaluator = evaluator or ExpressionEvaluator(
            max_depth=self.config.max_expression_depth
        )
        self.patch_engine = patch_engine or PatchEngine(self.config)
        self.audit_log = audit_log
        self.builder = DependencyGraphBuilder(extractor)

    def resolve(
        self,
        entity: EntityState,
        effects: Iterable[Effect],
        conditions: Iterable[Condition] = (),
        action: Optional[Callable[[EntityState], EntityState]] = None,
        result_cls: Type[ResolutionResult] = ResolutionResult,
    ) -> ResolutionResult:
        """
        Run PRE, the core action, ON_RESOLVE and POST for one entity.

        Raises AlreadyResolvedError before anything runs if the entity is
        already resolved, and ResolutionActionError if the core action fails.
        """
        if entity.is_resolved:
            raise AlreadyResolvedError(
                f"{entity.entity_type} {entity.entity_id} is already resolved"
            )

        effects = list(effects)
        guards = {c.id: c for c in conditions}
        refused = self.cyclic_effect_ids(effects, guards.values())
        core_action = action or mark_resolved

        pre, state = self.run_phase(EffectTiming.PRE, entity, effects, guards, refused)

        try:
            resolved = core_action(state)
        except Exception as e:
            logger.error(
                "Core resolution action failed for %s %s: %s",
                entity.entity_type, entity.entity_id, e,
            )
            raise ResolutionActionError(
                f"Resolution of {entity.entity_type} {entity.entity_id} failed: {e}"
            ) from e
        state = resolved if resolved is not None else state

        on_resolve, state = self.run_phase(EffectTiming.ON_RESOLVE, state, effects, guards, refused)
        post, state = self.run_phase(EffectTiming.POST, state, effects, guards, refused)

        logger.info(
            "Resolved %s %s: PRE %s, ON_RESOLVE %s, POST %s",
            entity.entity_type, entity.entity_id,
            pre.status.value, on_resolve.status.value, post.status.value,
        )
        return result_cls(
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            entity=state,
            pre=pre,
            on_resolve=on_resolve,
            post=post,
        )

    def cyclic_effect_ids(
        self, effects: List[Effect], conditions: Iterable[Condition]
    ) -> FrozenSet[str]:
        """Ids of effects that take part in an effect write cycle, if refusal is enabled."""
        if not self.config.refuse_cyclic_effects or len(effects) < 2:
            return frozenset()
        graph, _ = self.builder.build_graph(list(conditions), effects)
        prefix = "EFFECT:"
        return frozenset(
            node_id[len(prefix):]
            for component in graph.effect_write_cycles()
            for node_id in component
        )

    def run_phase(
        self,
        phase: EffectTiming,
        entity: EntityState,
        effects: Iterable[Effect],
        conditions: Dict[str, Condition],
        refused: FrozenSet[str] = frozenset(),
    ) -> Tuple[EffectExecutionSummary, EntityState]:
        """Apply one phase's effects in order. Returns the summary and the resulting entity."""
        summary = EffectExecutionSummary(phase=phase)
        state = entity

        candidates = [
            e for e in effects
            if e.is_active
            and e.timing == phase
            and e.entity_type == entity.entity_type
            and e.entity_id == entity.entity_id
        ]
        # sorted() is stable, so equal priorities keep their supplied order
        for effect in sorted(candidates, key=lambda e: -e.priority):
            summary.execution_order.append(effect.id)

            if not self._guard_allows(effect, state, conditions, summary):
                summary.skipped += 1
                continue

            if effect.id in refused:
                message = "Effect participates in an effect write cycle and was not applied"
                self._record_failure(summary, effect, state, phase, message)
                continue

            try:
                result = self.patch_engine.apply_document(
                    state.document(), effect.payload, state.entity_type
                )
            except PatchError as e:
                self._record_failure(summary, effect, state, phase, str(e))
                continue

            before = state
            state = state.with_document(result.state)
            summary.succeeded += 1
            summary.warnings.extend(f"Effect {effect.id}: {w}" for w in result.warnings)
            self._audit(effect, before, phase, True, diff=result.diff)

        if summary.succeeded or summary.failed:
            logger.info(
                "%s phase for %s %s: %d succeeded, %d failed, %d skipped",
                phase.value, entity.entity_type, entity.entity_id,
                summary.succeeded, summary.failed, summary.skipped,
            )
        return summary, state

    def _guard_allows(
        self,
        effect: Effect,
        state: EntityState,
        conditions: Dict[str, Condition],
        summary: EffectExecutionSummary,
    ) -> bool:
        if not effect.condition_id:
            return True

        condition = conditions.get(effect.condition_id)
        if condition is None:
            summary.warnings.append(
                f"Effect {effect.id} skipped: guard condition {effect.condition_id} not found"
            )
            return False
        if not condition.is_active:
            return False

        try:
            value, _ = self.evaluator.evaluate(condition.expression, state.variables)
        except ExpressionError as e:
            message = (
                f"Effect {effect.id} skipped: guard condition {condition.id} "
                f"failed to evaluate ({type(e).__name__}: {e})"
            )
            logger.warning(message)
            summary.warnings.append(message)
            return False
        return is_truthy(value)

    def _record_failure(
        self,
        summary: EffectExecutionSummary,
        effect: Effect,
        state: EntityState,
        phase: EffectTiming,
        message: str,
    ) -> None:
        logger.warning("Effect %s failed in %s phase: %s", effect.id, phase.value, message)
        summary.failed += 1
        summary.errors.append(EffectError(effect_id=effect.id, message=message))
        self._audit(effect, state, phase, False, error=message)

    def _audit(
        self,
        effect: Effect,
        state: EntityState,
        phase: EffectTiming,
        success: bool,
        error: Optional[str] = None,
        diff: Optional[PatchDiff] = None,
    ) -> None:
        if self.audit_log is None:
            return
        affected: List[str] = []
        if diff is not None:
            affected = [
                f"/variables/{name}"
                for name in sorted(set(diff.added) | set(diff.modified) | set(diff.removed))
            ]
        self.audit_log.append(EffectExecutionRecord(
            id=f"exec_{uuid4().hex[:12]}",
            effect_id=effect.id,
            entity_type=state.entity_type,
            entity_id=state.entity_id,
            phase=phase,
            success=success,
            error=error,
            patch_applied=effect.payload if success else None,
            affected_paths=affected,
            diff=diff,
            context_snapshot=copy.deepcopy(state.variables),
            executed_at=datetime.utcnow(),
        ))
