"""
Dependency Graph Builder — batch, read-only pass over conditions and effects.

Edges:
  CONDITION --READS--> VARIABLE       for each base variable the expression reads
  EFFECT    --READS--> VARIABLE       for each base variable the effect's guard reads
  EFFECT    --WRITES-> VARIABLE       for each base variable the effect's patch targets
  ENTITY    --DEPENDS_ON-> CONDITION / EFFECT it owns

Inactive records are left out. Records that cannot be parsed are skipped and
reported in `warnings` instead of aborting the build.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from campaign_rules.dependencies.extractor import DependencyExtractor
from campaign_rules.expression.errors import MalformedExpressionError
from campaign_rules.expression.parser import parse_expression
from campaign_rules.graph.graph import (
    DependencyGraph,
    condition_node_id,
    effect_node_id,
    entity_node_id,
    variable_node_id,
)
from campaign_rules.models.graph import DependencyGraphSnapshot, DependencyNode, EdgeType, NodeType
from campaign_rules.models.rules import Condition, Effect
from campaign_rules.models.world import EntityRef

logger = logging.getLogger(__name__)


class DependencyGraphBuilder:
    def __init__(self, extractor: Optional[DependencyExtractor] = None):
        self.extractor = extractor or DependencyExtractor()

    def build(
        self,
        conditions: Iterable[Any],
        effects: Iterable[Any],
        entities: Iterable[Any] = (),
        campaign_id: Optional[str] = None,
        branch_id: Optional[str] = None,
    ) -> DependencyGraphSnapshot:
        graph, warnings = self.build_graph(conditions, effects, entities)
        return self.snapshot(graph, warnings, campaign_id, branch_id)

    def snapshot(
        self,
        graph: DependencyGraph,
        warnings: List[str],
        campaign_id: Optional[str] = None,
        branch_id: Optional[str] = None,
    ) -> DependencyGraphSnapshot:
        return DependencyGraphSnapshot(
            campaign_id=campaign_id,
            branch_id=branch_id,
            nodes=graph.nodes,
            edges=graph.edges,
            stats=graph.stats(),
            cycles=graph.find_cycles(),
            warnings=warnings,
        )

    def build_graph(
        self,
        conditions: Iterable[Any],
        effects: Iterable[Any],
        entities: Iterable[Any] = (),
    ) -> Tuple[DependencyGraph, List[str]]:
        graph = DependencyGraph()
        warnings: List[str] = []

        for raw in entities:
            ref = self._entity_ref(raw)
            if ref is None:
                warnings.append(f"Skipped malformed entity reference: {raw!r}")
                continue
            self._entity_node(graph, ref.entity_type, ref.entity_id)

        guards: Dict[str, Condition] = {}
        for raw in conditions:
            condition = self._load(Condition, raw, "condition", warnings)
            if condition is None or not condition.is_active:
                continue
            try:
                parse_expression(condition.expression)
            except MalformedExpressionError as e:
                self._skip(warnings, f"Skipped condition {condition.id}: {e}")
                continue
            guards[condition.id] = condition
            self._add_condition(graph, condition)

        for raw in effects:
            effect = self._load(Effect, raw, "effect", warnings)
            if effect is None or not effect.is_active:
                continue
            self._add_effect(graph, effect, guards, warnings)

        graph.mark_cycles()
        return graph, warnings

    def _add_condition(self, graph: DependencyGraph, condition: Condition) -> None:
        node = graph.add_node(DependencyNode(
            id=condition_node_id(condition.id),
            type=NodeType.CONDITION,
            entity_id=condition.entity_id,
            label=condition.field or condition.id,
            metadata={
                "entity_type": condition.entity_type,
                "field": condition.field,
                "priority": condition.priority,
                "description": condition.description,
            },
        ))
        for name in sorted(self.extractor.extract_reads(condition.expression)):
            graph.connect(node.id, self._variable_node(graph, name), EdgeType.READS)
        owner = self._entity_node(graph, condition.entity_type, condition.entity_id)
        graph.connect(owner, node.id, EdgeType.DEPENDS_ON)

    def _add_effect(
        self,
        graph: DependencyGraph,
        effect: Effect,
        guards: Dict[str, Condition],
        warnings: List[str],
    ) -> None:
        node = graph.add_node(DependencyNode(
            id=effect_node_id(effect.id),
            type=NodeType.EFFECT,
            entity_id=effect.entity_id,
            label=effect.name or effect.id,
            metadata={
                "entity_type": effect.entity_type,
                "timing": effect.timing.value,
                "priority": effect.priority,
                "condition_id": effect.condition_id,
            },
        ))
        for name in sorted(self.extractor.extract_writes(effect)):
            graph.connect(node.id, self._variable_node(graph, name), EdgeType.WRITES)

        if effect.condition_id:
            guard = guards.get(effect.condition_id)
            if guard is None:
                warnings.append(
                    f"Effect {effect.id} references unknown or inactive condition "
                    f"{effect.condition_id}"
                )
            else:
                for name in sorted(self.extractor.extract_reads(guard.expression)):
                    graph.connect(
                        node.id, self._variable_node(graph, name), EdgeType.READS,
                        via=effect.condition_id,
                    )

        owner = self._entity_node(graph, effect.entity_type, effect.entity_id)
        graph.connect(owner, node.id, EdgeType.DEPENDS_ON)

    def _variable_node(self, graph: DependencyGraph, name: str) -> str:
        return graph.add_node(DependencyNode(
            id=variable_node_id(name), type=NodeType.VARIABLE, label=name,
        )).id

    def _entity_node(self, graph: DependencyGraph, entity_type: str, entity_id: Optional[str]) -> str:
        return graph.add_node(DependencyNode(
            id=entity_node_id(entity_type, entity_id),
            type=NodeType.ENTITY,
            entity_id=entity_id,
            label=f"{entity_type}:{entity_id or '*'}",
            metadata={"entity_type": entity_type},
        )).id

    def _load(self, model, raw: Any, kind: str, warnings: List[str]):
        if isinstance(raw, model):
            return raw
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            record_id = raw.get("id") if isinstance(raw, dict) else None
            self._skip(
                warnings,
                f"Skipped malformed {kind} {record_id or '<unknown>'}: "
                f"{e.error_count()} validation error(s)",
            )
            return None

    @staticmethod
    def _entity_ref(raw: Any) -> Optional[EntityRef]:
        if isinstance(raw, EntityRef):
            return raw
        if isinstance(raw, dict):
            try:
                return EntityRef.model_validate(raw)
            except ValidationError:
                return None
        entity_type = getattr(raw, "entity_type", None)
        if isinstance(entity_type, str):
            return EntityRef(entity_type=entity_type, entity_id=getattr(raw, "entity_id", None))
        return None

    @staticmethod
    def _skip(warnings: List[str], message: str) -> None:
        logger.warning(message)
        warnings.append(message)
