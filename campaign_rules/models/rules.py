"""Conditions, Effects and patch operations — the persisted rule records."""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EffectTiming(str, Enum):
    """Timing phase in which an effect runs during resolution."""
    PRE = "PRE"
    ON_RESOLVE = "ON_RESOLVE"
    POST = "POST"


class PatchOpKind(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"
    MOVE = "move"
    COPY = "copy"
    TEST = "test"


class PatchOp(BaseModel):
    """A single RFC-6902 style patch instruction."""

    model_config = ConfigDict(populate_by_name=True)

    op: PatchOpKind
    path: str                               # JSON Pointer, e.g. "/variables/gold"
    value: Optional[Any] = None
    from_: Optional[str] = Field(default=None, alias="from")

    def to_wire(self) -> dict:
        """Wire form: only the fields that were actually supplied."""
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class Condition(BaseModel):
    """A narrative condition gating behavior on an entity field."""

    id: str
    entity_type: str                        # e.g. "settlement", "encounter"
    entity_id: Optional[str] = None         # None = applies to every instance of entity_type
    field: str
    expression: Any                         # Raw expression JSON
    description: str = ""
    priority: int = 0
    is_active: bool = True
    version: int = 1


class Effect(BaseModel):
    """A structured mutation applied when an event or encounter resolves."""

    id: str
    entity_type: str
    entity_id: str
    timing: EffectTiming = EffectTiming.ON_RESOLVE
    priority: int = 0
    payload: List[Any] = []                 # Raw patch ops, validated at apply time
    condition_id: Optional[str] = None      # Guard condition; None = unconditional
    name: str = ""
    description: str = ""
    is_active: bool = True
