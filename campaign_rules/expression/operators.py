"""
Operator registry — the set of operator names an evaluator understands.

Built-in operators are implemented by the evaluator itself. Custom operators
(e.g. "settlement.level") are plain callables over already-evaluated
arguments, registered per evaluator instance.
"""

from typing import Any, Callable, Dict, FrozenSet, List, Optional

from pydantic import BaseModel


# Operators whose arguments are evaluated lazily by the evaluator
LAZY_OPERATORS: FrozenSet[str] = frozenset({
    "and", "or", "if", "?:", "map", "filter", "reduce", "all", "none", "some",
})

BUILTIN_OPERATORS: FrozenSet[str] = LAZY_OPERATORS | frozenset({
    "var", "missing", "missing_some",
    "not", "!", "!!",
    "==", "===", "!=", "!==", ">", ">=", "<", "<=",
    "+", "-", "*", "/", "%", "max", "min",
    "in", "merge", "cat", "substr",
})


class CustomOperator(BaseModel):
    """A registered non-builtin operator."""

    name: str
    implementation: Callable[..., Any]
    description: str = ""


class OperatorRegistry:
    """Holds custom operators for one evaluator. No process-wide state."""

    def __init__(self):
        self._custom: Dict[str, CustomOperator] = {}

    def register(
        self,
        name: str,
        implementation: Callable[..., Any],
        description: str = "",
    ) -> CustomOperator:
        """Register a custom operator. Built-in names cannot be overridden."""
        if not name:
            raise ValueError("Operator name must be a non-empty string")
        if name in BUILTIN_OPERATORS:
            raise ValueError(f"Cannot override built-in operator: {name}")
        operator = CustomOperator(
            name=name, implementation=implementation, description=description
        )
        self._custom[name] = operator
        return operator

    def unregister(self, name: str) -> bool:
        return self._custom.pop(name, None) is not None

    def get(self, name: str) -> Optional[CustomOperator]:
        return self._custom.get(name)

    def is_known(self, name: str) -> bool:
        return name in BUILTIN_OPERATORS or name in self._custom

    def custom_operators(self) -> List[CustomOperator]:
        return list(self._custom.values())

    def clear(self) -> None:
        self._custom.clear()
