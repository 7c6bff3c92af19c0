"""Evaluation results and execution traces for condition expressions."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class TraceStep(BaseModel):
    """One visited expression node. Steps are numbered in visit (pre-order) order."""

    step: int
    operation: str                          # "literal", "var", or the operator name
    input: Any = None
    output: Any = None


class EvaluationResult(BaseModel):
    """Structured outcome of evaluating a condition; never raises across the engine boundary."""

    success: bool
    value: Any = None
    trace: List[TraceStep] = []
    error: Optional[str] = None
    error_type: Optional[str] = None        # e.g. "UnknownOperatorError"
    condition_id: Optional[str] = None


class ExpressionValidationResult(BaseModel):
    """Result of statically validating an expression without evaluating it."""

    valid: bool
    errors: List[str] = []


class ComputedFieldsResult(BaseModel):
    """Field values derived from an entity's conditions, highest priority first."""

    entity_type: str
    entity_id: str
    fields: Dict[str, Any] = {}             # Condition.field -> value of the winning condition
    errors: Dict[str, str] = {}             # Condition id -> evaluation error
