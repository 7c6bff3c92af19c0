"""Expression error taxonomy. Every error carries the trace recorded up to the failure."""

from typing import List, Optional


class ExpressionError(Exception):
    """Base class for expression evaluation failures."""

    def __init__(self, message: str, trace: Optional[List] = None):
        super().__init__(message)
        self.trace = trace or []


class UnknownOperatorError(ExpressionError):
    """An operator name is neither built in nor registered."""

    def __init__(self, operator: str, trace: Optional[List] = None):
        super().__init__(f"Unknown operator: {operator}", trace)
        self.operator = operator


class TypeMismatchError(ExpressionError):
    """An operator received operands it cannot work on (e.g. arithmetic on a list)."""


class MalformedExpressionError(ExpressionError):
    """An expression node has the wrong shape or arity."""
