"""
Expression parser — turns the JSON wire format into a closed expression tree.

Every node is exactly one of:
  Literal    string / number / boolean / null, or an array of expressions
  Var        {"var": "path.to.field"} or {"var": ["path", default]}
  Operation  {"<operator>": [arg, ...]}

Parsing only checks shape. Operator names are not resolved here, so an
unknown operator inside a branch that is never evaluated does not fail.
Nesting deeper than MAX_PARSE_DEPTH is rejected as malformed.
"""

from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from campaign_rules.expression.errors import MalformedExpressionError

MAX_PARSE_DEPTH = 256


@dataclass(frozen=True)
class Literal:
    value: Any                              # Scalar, or tuple of Expression for arrays

    @property
    def is_array(self) -> bool:
        return isinstance(self.value, tuple)


@dataclass(frozen=True)
class Var:
    path: str
    default: Optional["Expression"] = None
    has_default: bool = False

    @property
    def base(self) -> str:
        return self.path.split(".")[0]


@dataclass(frozen=True)
class Operation:
    operator: str
    args: Tuple["Expression", ...]


Expression = Union[Literal, Var, Operation]


def parse_expression(raw: Any, max_depth: int = MAX_PARSE_DEPTH) -> Expression:
    """Parse raw expression JSON into an immutable tree."""
    return _parse(raw, 1, max_depth)


def _parse(raw: Any, depth: int, max_depth: int) -> Expression:
    if depth > max_depth:
        raise MalformedExpressionError(
            f"Expression nesting exceeds maximum depth of {max_depth}"
        )
    if isinstance(raw, (Literal, Var, Operation)):
        return raw

    if raw is None or isinstance(raw, (bool, int, float, str)):
        return Literal(raw)

    if isinstance(raw, (list, tuple)):
        return Literal(tuple(_parse(item, depth + 1, max_depth) for item in raw))

    if isinstance(raw, dict):
        if len(raw) != 1:
            raise MalformedExpressionError(
                f"Expression object must have exactly one operator key, got {len(raw)}"
            )
        operator, raw_args = next(iter(raw.items()))
        if not isinstance(operator, str) or not operator:
            raise MalformedExpressionError("Operator name must be a non-empty string")

        if operator == "var":
            return _parse_var(raw_args, depth, max_depth)

        # {"!": x} is shorthand for {"!": [x]}
        if not isinstance(raw_args, (list, tuple)):
            raw_args = [raw_args]
        return Operation(operator, tuple(_parse(a, depth + 1, max_depth) for a in raw_args))

    raise MalformedExpressionError(
        f"Unsupported expression value of type {type(raw).__name__}"
    )


def _parse_var(raw_args: Any, depth: int, max_depth: int) -> Var:
    if isinstance(raw_args, (list, tuple)):
        if len(raw_args) == 0:
            return Var("")
        if len(raw_args) > 2:
            raise MalformedExpressionError("var takes a path and an optional default")
        path = _var_path(raw_args[0])
        if len(raw_args) == 2:
            return Var(path, _parse(raw_args[1], depth + 1, max_depth), has_default=True)
        return Var(path)
    return Var(_var_path(raw_args))


def _var_path(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bool):
        raise MalformedExpressionError("var path must be a string or an integer")
    if isinstance(raw, (str, int)):
        return str(raw)
    raise MalformedExpressionError(
        f"var path must be a string or an integer, got {type(raw).__name__}"
    )


def to_json(expr: Expression) -> Any:
    """Render a parsed tree back to its wire form."""
    if isinstance(expr, Literal):
        if expr.is_array:
            return [to_json(item) for item in expr.value]
        return expr.value
    if isinstance(expr, Var):
        if expr.has_default:
            return {"var": [expr.path, to_json(expr.default)]}
        return {"var": expr.path}
    if isinstance(expr, Operation):
        return {expr.operator: [to_json(a) for a in expr.args]}
    raise MalformedExpressionError(f"Not an expression node: {expr!r}")
