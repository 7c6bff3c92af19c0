"""Effect execution summaries, resolution results and audit records."""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, computed_field

from campaign_rules.models.patch import PatchDiff
from campaign_rules.models.rules import EffectTiming
from campaign_rules.models.world import EntityState


class PhaseStatus(str, Enum):
    EMPTY = "empty"                                     # No effect was attempted
    SUCCEEDED = "succeeded"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings" # Some effects failed, some applied
    FAILED = "failed"                                   # Every attempted effect failed


class EffectError(BaseModel):
    effect_id: str
    message: str


class EffectExecutionSummary(BaseModel):
    """Outcome of one timing phase."""

    phase: EffectTiming
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0                        # Guard condition false, errored or inactive
    errors: List[EffectError] = []
    warnings: List[str] = []
    execution_order: List[str] = []         # Effect ids in the order they were considered

    @computed_field
    @property
    def status(self) -> PhaseStatus:
        if self.failed == 0 and self.succeeded == 0:
            return PhaseStatus.EMPTY
        if self.failed == 0:
            return PhaseStatus.SUCCEEDED
        if self.succeeded > 0:
            return PhaseStatus.COMPLETED_WITH_WARNINGS
        return PhaseStatus.FAILED


class ResolutionResult(BaseModel):
    """Per-phase summaries plus the resolved entity snapshot."""

    entity_type: str
    entity_id: str
    entity: EntityState
    pre: EffectExecutionSummary
    on_resolve: EffectExecutionSummary
    post: EffectExecutionSummary

    @property
    def summaries(self) -> List[EffectExecutionSummary]:
        return [self.pre, self.on_resolve, self.post]


class EncounterResolutionResult(ResolutionResult):
    pass


class EventResolutionResult(ResolutionResult):
    pass


class EffectExecutionRecord(BaseModel):
    """Audit entry for one attempted effect application."""

    id: str
    effect_id: str
    entity_type: str
    entity_id: str
    phase: Optional[EffectTiming] = None
    success: bool
    error: Optional[str] = None
    patch_applied: Optional[List[Any]] = None
    affected_paths: List[str] = []
    diff: Optional[PatchDiff] = None
    context_snapshot: dict = {}             # Variables before execution
    executed_at: datetime
