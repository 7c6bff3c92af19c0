"""
Expression Validator — static checks run before an expression is stored or evaluated.

Reports, without evaluating:
- malformed shapes (objects with several keys, bad var paths)
- operators that are neither built in nor registered (each name once)
- trees deeper than the configured maximum
"""

from typing import Any, List, Optional, Set

from campaign_rules.expression.errors import MalformedExpressionError
from campaign_rules.expression.operators import OperatorRegistry
from campaign_rules.expression.parser import Expression, Literal, Operation, Var, parse_expression
from campaign_rules.models.evaluation import ExpressionValidationResult


class ExpressionValidator:
    def __init__(
        self,
        registry: Optional[OperatorRegistry] = None,
        max_depth: int = 32,
    ):
        self.registry = registry or OperatorRegistry()
        self.max_depth = max_depth

    def validate(self, expression: Any) -> ExpressionValidationResult:
        if expression is None:
            return ExpressionValidationResult(
                valid=False, errors=["Expression must not be empty"]
            )
        try:
            tree = parse_expression(expression)
        except MalformedExpressionError as e:
            return ExpressionValidationResult(valid=False, errors=[str(e)])

        errors: List[str] = []
        unknown: Set[str] = set()
        depth = self._walk(tree, 0, unknown, errors)
        if depth > self.max_depth:
            errors.insert(
                0, f"Expression depth {depth} exceeds maximum of {self.max_depth}"
            )
        return ExpressionValidationResult(valid=not errors, errors=errors)

    def _walk(self, node: Expression, depth: int, unknown: Set[str], errors: List[str]) -> int:
        """Collect unknown operators and return the deepest level reached."""
        deepest = depth
        children: List[Expression] = []

        if isinstance(node, Literal) and node.is_array:
            children = list(node.value)
        elif isinstance(node, Var) and node.has_default:
            children = [node.default]
        elif isinstance(node, Operation):
            if not self.registry.is_known(node.operator) and node.operator not in unknown:
                unknown.add(node.operator)
                errors.append(f"Unknown operator: {node.operator}")
            children = list(node.args)

        for child in children:
            deepest = max(deepest, self._walk(child, depth + 1, unknown, errors))
        return deepest
