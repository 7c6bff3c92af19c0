"""Patch validation, diff and preview results."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class PatchValidationResult(BaseModel):
    """Outcome of validating a patch payload. Warnings never make a patch invalid."""

    valid: bool
    errors: List[str] = []
    warnings: List[str] = []


class PatchDiff(BaseModel):
    """Structural diff of a VariableState, keyed by variable name."""

    added: Dict[str, Any] = {}
    modified: Dict[str, Dict[str, Any]] = {}    # name -> {"old": ..., "new": ...}
    removed: Dict[str, Any] = {}

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.removed)


class PatchResult(BaseModel):
    """A successfully applied patch: the new state and what changed."""

    state: Dict[str, Any]
    diff: PatchDiff
    warnings: List[str] = []


class PatchPreview(BaseModel):
    """Before/after view of a patch, computed without raising."""

    success: bool
    before: Dict[str, Any]
    after: Optional[Dict[str, Any]] = None
    changed_fields: List[str] = []
    diff: Optional[PatchDiff] = None
    errors: List[str] = []
