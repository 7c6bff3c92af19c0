"""Campaign rules data models."""

from campaign_rules.models.config import EngineConfig
from campaign_rules.models.evaluation import (
    ComputedFieldsResult,
    EvaluationResult,
    ExpressionValidationResult,
    TraceStep,
)
from campaign_rules.models.execution import (
    EffectError,
    EffectExecutionRecord,
    EffectExecutionSummary,
    EncounterResolutionResult,
    EventResolutionResult,
    PhaseStatus,
    ResolutionResult,
)
from campaign_rules.models.graph import (
    DependencyEdge,
    DependencyGraphSnapshot,
    DependencyNode,
    EdgeType,
    GraphStats,
    NodeType,
    SelectionResult,
    TopologicalOrder,
)
from campaign_rules.models.patch import PatchDiff, PatchPreview, PatchResult, PatchValidationResult
from campaign_rules.models.rules import Condition, Effect, EffectTiming, PatchOp, PatchOpKind
from campaign_rules.models.world import EntityRef, EntityState

__all__ = [
    "ComputedFieldsResult",
    "Condition",
    "DependencyEdge",
    "DependencyGraphSnapshot",
    "DependencyNode",
    "EdgeType",
    "Effect",
    "EffectError",
    "EffectExecutionRecord",
    "EffectExecutionSummary",
    "EffectTiming",
    "EncounterResolutionResult",
    "EngineConfig",
    "EntityRef",
    "EntityState",
    "EvaluationResult",
    "EventResolutionResult",
    "ExpressionValidationResult",
    "GraphStats",
    "NodeType",
    "PatchDiff",
    "PatchOp",
    "PatchOpKind",
    "PatchPreview",
    "PatchResult",
    "PatchValidationResult",
    "PhaseStatus",
    "ResolutionResult",
    "SelectionResult",
    "TopologicalOrder",
    "TraceStep",
]
