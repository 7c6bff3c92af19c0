"""
Expression Evaluator — interprets condition expressions against a variable context.

Behavioral Contract:
- Pure: no I/O, never mutates the context
- Strict left-to-right, depth-first evaluation
- and / or / if / ?: and the collection quantifiers short-circuit; branches
  that are not evaluated are not visited and do not appear in the trace
- Unknown operators are a hard error when visited
- Every visited node produces one TraceStep (pre-order numbered)
- Failures raise an ExpressionError subclass carrying the partial trace

Coercion rules (JSON-logic style, made explicit):
- Falsy values: None, False, 0, "", []
- Numeric strings coerce to numbers for loose equality, ordering and arithmetic
- None, arrays and objects never coerce to numbers (TypeMismatchError)
- == / != between an array and a scalar is a TypeMismatchError
- === / !== compare type and value and never raise
- Division or modulo by zero is a TypeMismatchError
"""

import math
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from campaign_rules.expression.errors import (
    ExpressionError,
    MalformedExpressionError,
    TypeMismatchError,
    UnknownOperatorError,
)
from campaign_rules.expression.operators import OperatorRegistry
from campaign_rules.expression.parser import Expression, Literal, Operation, Var, parse_expression
from campaign_rules.models.evaluation import TraceStep

_MISSING = object()


def is_truthy(value: Any) -> bool:
    """JSON-logic truthiness: None, False, 0, "" and [] are falsy; everything else is truthy."""
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, (str, list, tuple)):
        return len(value) > 0
    return True


def resolve_path(context: Any, path: str) -> Any:
    """Resolve a dotted path. Returns the _MISSING sentinel when any segment is absent."""
    if path == "":
        return _MISSING
    current = context
    for segment in path.split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return _MISSING
    return current


def _category(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _parse_numeric(text: str) -> Optional[float]:
    stripped = text.strip()
    if stripped == "":
        return None
    try:
        return int(stripped)
    except ValueError:
        pass
    try:
        number = float(stripped)
    except ValueError:
        return None
    if math.isnan(number):
        return None
    return number


def _to_number(value: Any, operator: str) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        number = _parse_numeric(value)
        if number is not None:
            return number
    raise TypeMismatchError(
        f"Operator '{operator}' expects numeric operands, got {_category(value)} {value!r}"
    )


def _stringify(value: Any, operator: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float, str)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return ",".join(_stringify(v, operator) for v in value)
    raise TypeMismatchError(f"Operator '{operator}' cannot convert {_category(value)} to text")


def strict_equals(a: Any, b: Any) -> bool:
    if _category(a) != _category(b):
        return False
    if isinstance(a, (list, tuple)):
        return len(a) == len(b) and all(strict_equals(x, y) for x, y in zip(a, b))
    return a == b


def loose_equals(a: Any, b: Any) -> bool:
    ca, cb = _category(a), _category(b)
    if ca in ("array", "object") or cb in ("array", "object"):
        if ca == cb:
            return strict_equals(a, b)
        raise TypeMismatchError(f"Cannot compare {ca} with {cb} using loose equality")
    if ca == "null" or cb == "null":
        return ca == cb
    if ca == "string" and cb == "string":
        return a == b
    # Mixed scalars compare numerically; a non-numeric string is never equal
    left = a if ca != "string" else _parse_numeric(a)
    right = b if cb != "string" else _parse_numeric(b)
    if left is None or right is None:
        return False
    return float(left) == float(right)


def _ordered(a: Any, b: Any, operator: str) -> Tuple[Any, Any]:
    if isinstance(a, str) and isinstance(b, str):
        return a, b
    return _to_number(a, operator), _to_number(b, operator)


class ExpressionEvaluator:
    """
    Evaluates parsed or raw expressions. One instance owns one operator registry;
    instances hold no other state and are safe to share across entities.
    """

    def __init__(
        self,
        registry: Optional[OperatorRegistry] = None,
        max_depth: int = 32,
    ):
        self.registry = registry or OperatorRegistry()
        self.max_depth = max_depth

        self._eager: Dict[str, Callable[[List[Any], Any], Any]] = {
            "!": self._op_not,
            "not": self._op_not,
            "!!": self._op_double_not,
            "==": self._op_eq,
            "!=": self._op_ne,
            "===": self._op_strict_eq,
            "!==": self._op_strict_ne,
            ">": self._op_gt,
            ">=": self._op_ge,
            "<": self._op_lt,
            "<=": self._op_le,
            "+": self._op_add,
            "-": self._op_sub,
            "*": self._op_mul,
            "/": self._op_div,
            "%": self._op_mod,
            "max": self._op_max,
            "min": self._op_min,
            "in": self._op_in,
            "merge": self._op_merge,
            "cat": self._op_cat,
            "substr": self._op_substr,
            "missing": self._op_missing,
            "missing_some": self._op_missing_some,
        }
        self._lazy = {
            "and": self._op_and,
            "or": self._op_or,
            "if": self._op_if,
            "?:": self._op_ternary,
            "map": self._op_map,
            "filter": self._op_filter,
            "reduce": self._op_reduce,
            "all": self._op_all,
            "none": self._op_none,
            "some": self._op_some,
        }

    def evaluate(self, expression: Any, context: Any) -> Tuple[Any, List[TraceStep]]:
        """
        Evaluate an expression against a context.

        Returns (value, trace). Raises ExpressionError (with .trace) on failure.
        """
        tree = parse_expression(expression)
        trace: List[TraceStep] = []
        try:
            value = self._eval(tree, context, trace, 0)
        except ExpressionError as e:
            e.trace = list(trace)
            raise
        return value, trace

    # --- Tree walk ---

    def _eval(self, node: Expression, context: Any, trace: List[TraceStep], depth: int) -> Any:
        if depth > self.max_depth:
            raise MalformedExpressionError(
                f"Expression exceeds maximum depth of {self.max_depth}"
            )

        if isinstance(node, Literal):
            step = self._open(trace, "literal", None)
            if node.is_array:
                value = [self._eval(item, context, trace, depth + 1) for item in node.value]
            else:
                value = node.value
            step.input = value
            step.output = value
            return value

        if isinstance(node, Var):
            step = self._open(trace, "var", node.path)
            value = resolve_path(context, node.path)
            if value is _MISSING or value is None:
                value = (
                    self._eval(node.default, context, trace, depth + 1)
                    if node.has_default else None
                )
            step.output = value
            return value

        if isinstance(node, Operation):
            return self._eval_operation(node, context, trace, depth)

        raise MalformedExpressionError(f"Not an expression node: {node!r}")

    def _eval_operation(
        self, node: Operation, context: Any, trace: List[TraceStep], depth: int
    ) -> Any:
        name = node.operator
        step = self._open(trace, name, None)

        lazy = self._lazy.get(name)
        if lazy is not None:
            inputs: List[Any] = []
            value = lazy(node.args, context, trace, depth + 1, inputs)
            step.input = inputs
            step.output = value
            return value

        eager = self._eager.get(name)
        custom = self.registry.get(name) if eager is None else None
        if eager is None and custom is None:
            raise UnknownOperatorError(name)

        values = [self._eval(arg, context, trace, depth + 1) for arg in node.args]
        step.input = values
        if eager is not None:
            value = eager(values, context)
        else:
            try:
                value = custom.implementation(*values)
            except ExpressionError:
                raise
            except Exception as e:
                raise ExpressionError(f"Custom operator '{name}' failed: {e}") from e
        step.output = value
        return value

    def _open(self, trace: List[TraceStep], operation: str, input_value: Any) -> TraceStep:
        step = TraceStep(step=len(trace) + 1, operation=operation, input=input_value)
        trace.append(step)
        return step

    # --- Arity helpers ---

    @staticmethod
    def _arity(name: str, args: Sequence[Any], low: int, high: Optional[int] = None) -> None:
        high = low if high is None else high
        if len(args) < low or (high >= 0 and len(args) > high):
            expected = str(low) if low == high else (
                f"at least {low}" if high < 0 else f"{low}-{high}"
            )
            raise MalformedExpressionError(
                f"Operator '{name}' expects {expected} arguments, got {len(args)}"
            )

    # --- Lazy operators ---

    def _op_and(
        self,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> Any:
        self._arity("and", args, 1, -1)
        value = None
        for arg in args:
            value = self._eval(arg, context, trace, depth)
            inputs.append(value)
            if not is_truthy(value):
                return value
        return value

    def _op_or(
        self,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> Any:
        self._arity("or", args, 1, -1)
        value = None
        for arg in args:
            value = self._eval(arg, context, trace, depth)
            inputs.append(value)
            if is_truthy(value):
                return value
        return value

    def _op_if(
        self,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> Any:
        # [cond, then, cond, then, ..., else]
        i = 0
        while i + 1 < len(args):
            test = self._eval(args[i], context, trace, depth)
            inputs.append(test)
            if is_truthy(test):
                return self._eval(args[i + 1], context, trace, depth)
            i += 2
        if i < len(args):
            return self._eval(args[i], context, trace, depth)
        return None

    def _op_ternary(
        self,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> Any:
        self._arity("?:", args, 3)
        return self._op_if(args, context, trace, depth, inputs)

    def _collection(
        self,
        name: str,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> List[Any]:
        items = self._eval(args[0], context, trace, depth)
        inputs.append(items)
        if items is None:
            return []
        if not isinstance(items, (list, tuple)):
            raise TypeMismatchError(
                f"Operator '{name}' expects an array, got {_category(items)}"
            )
        return list(items)

    def _op_map(
        self,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> Any:
        self._arity("map", args, 2)
        items = self._collection("map", args, context, trace, depth, inputs)
        return [self._eval(args[1], item, trace, depth) for item in items]

    def _op_filter(
        self,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> Any:
        self._arity("filter", args, 2)
        items = self._collection("filter", args, context, trace, depth, inputs)
        return [item for item in items if is_truthy(self._eval(args[1], item, trace, depth))]

    def _op_reduce(
        self,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> Any:
        self._arity("reduce", args, 2, 3)
        items = self._collection("reduce", args, context, trace, depth, inputs)
        accumulator = self._eval(args[2], context, trace, depth) if len(args) == 3 else None
        for item in items:
            accumulator = self._eval(
                args[1], {"current": item, "accumulator": accumulator}, trace, depth
            )
        return accumulator

    def _op_all(
        self,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> Any:
        self._arity("all", args, 2)
        items = self._collection("all", args, context, trace, depth, inputs)
        if not items:
            return False
        for item in items:
            if not is_truthy(self._eval(args[1], item, trace, depth)):
                return False
        return True

    def _op_none(
        self,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> Any:
        self._arity("none", args, 2)
        items = self._collection("none", args, context, trace, depth, inputs)
        for item in items:
            if is_truthy(self._eval(args[1], item, trace, depth)):
                return False
        return True

    def _op_some(
        self,
        args: Sequence[Expression],
        context: Any,
        trace: List[TraceStep],
        depth: int,
        inputs: List[Any],
    ) -> Any:
        self._arity("some", args, 2)
        items = self._collection("some", args, context, trace, depth, inputs)
        for item in items:
            if is_truthy(self._eval(args[1], item, trace, depth)):
                return True
        return False

    # --- Eager operators ---

    def _op_not(self, values: List[Any], context: Any) -> Any:
        self._arity("!", values, 1)
        return not is_truthy(values[0])

    def _op_double_not(self, values: List[Any], context: Any) -> Any:
        self._arity("!!", values, 1)
        return is_truthy(values[0])

    def _op_eq(self, values: List[Any], context: Any) -> Any:
        self._arity("==", values, 2)
        return loose_equals(values[0], values[1])

    def _op_ne(self, values: List[Any], context: Any) -> Any:
        self._arity("!=", values, 2)
        return not loose_equals(values[0], values[1])

    def _op_strict_eq(self, values: List[Any], context: Any) -> Any:
        self._arity("===", values, 2)
        return strict_equals(values[0], values[1])

    def _op_strict_ne(self, values: List[Any], context: Any) -> Any:
        self._arity("!==", values, 2)
        return not strict_equals(values[0], values[1])

    def _op_gt(self, values: List[Any], context: Any) -> Any:
        self._arity(">", values, 2)
        a, b = _ordered(values[0], values[1], ">")
        return a > b

    def _op_ge(self, values: List[Any], context: Any) -> Any:
        self._arity(">=", values, 2)
        a, b = _ordered(values[0], values[1], ">=")
        return a >= b

    def _op_lt(self, values: List[Any], context: Any) -> Any:
        # {"<": [a, b, c]} means a < b < c
        self._arity("<", values, 2, 3)
        a, b = _ordered(values[0], values[1], "<")
        if len(values) == 2:
            return a < b
        b, c = _ordered(values[1], values[2], "<")
        return a < b < c

    def _op_le(self, values: List[Any], context: Any) -> Any:
        self._arity("<=", values, 2, 3)
        a, b = _ordered(values[0], values[1], "<=")
        if len(values) == 2:
            return a <= b
        b, c = _ordered(values[1], values[2], "<=")
        return a <= b <= c

    def _op_add(self, values: List[Any], context: Any) -> Any:
        return sum((_to_number(v, "+") for v in values), 0)

    def _op_sub(self, values: List[Any], context: Any) -> Any:
        self._arity("-", values, 1, 2)
        if len(values) == 1:
            return -_to_number(values[0], "-")
        return _to_number(values[0], "-") - _to_number(values[1], "-")

    def _op_mul(self, values: List[Any], context: Any) -> Any:
        self._arity("*", values, 1, -1)
        result = 1
        for v in values:
            result *= _to_number(v, "*")
        return result

    def _op_div(self, values: List[Any], context: Any) -> Any:
        self._arity("/", values, 2)
        a, b = _to_number(values[0], "/"), _to_number(values[1], "/")
        if b == 0:
            raise TypeMismatchError("Division by zero")
        return a / b

    def _op_mod(self, values: List[Any], context: Any) -> Any:
        self._arity("%", values, 2)
        a, b = _to_number(values[0], "%"), _to_number(values[1], "%")
        if b == 0:
            raise TypeMismatchError("Modulo by zero")
        # Result takes the sign of the dividend
        result = math.fmod(a, b)
        if isinstance(a, int) and isinstance(b, int):
            return int(result)
        return result

    def _op_max(self, values: List[Any], context: Any) -> Any:
        numbers = [_to_number(v, "max") for v in values]
        return max(numbers) if numbers else None

    def _op_min(self, values: List[Any], context: Any) -> Any:
        numbers = [_to_number(v, "min") for v in values]
        return min(numbers) if numbers else None

    def _op_in(self, values: List[Any], context: Any) -> Any:
        self._arity("in", values, 2)
        needle, haystack = values
        if isinstance(haystack, (list, tuple)):
            return any(strict_equals(needle, item) for item in haystack)
        if isinstance(haystack, str):
            return _stringify(needle, "in") in haystack
        raise TypeMismatchError(
            f"Operator 'in' expects an array or string haystack, got {_category(haystack)}"
        )

    def _op_merge(self, values: List[Any], context: Any) -> Any:
        merged: List[Any] = []
        for v in values:
            if isinstance(v, (list, tuple)):
                merged.extend(v)
            else:
                merged.append(v)
        return merged

    def _op_cat(self, values: List[Any], context: Any) -> Any:
        return "".join(_stringify(v, "cat") for v in values)

    def _op_substr(self, values: List[Any], context: Any) -> Any:
        self._arity("substr", values, 2, 3)
        source = _stringify(values[0], "substr")
        start = int(_to_number(values[1], "substr"))
        if start < 0:
            start = max(len(source) + start, 0)
        tail = source[start:]
        if len(values) == 2:
            return tail
        length = int(_to_number(values[2], "substr"))
        if length < 0:
            return tail[:max(len(tail) + length, 0)]
        return tail[:length]

    def _op_missing(self, values: List[Any], context: Any) -> Any:
        names = values
        if names and isinstance(names[0], (list, tuple)):
            names = list(names[0])
        missing = []
        for name in names:
            if isinstance(name, (dict, list, tuple)) or name is None:
                raise TypeMismatchError("Operator 'missing' expects variable names")
            value = resolve_path(context, str(name))
            if value is _MISSING or value is None:
                missing.append(name)
        return missing

    def _op_missing_some(self, values: List[Any], context: Any) -> Any:
        self._arity("missing_some", values, 2)
        need = _to_number(values[0], "missing_some")
        names = values[1]
        if not isinstance(names, (list, tuple)):
            raise TypeMismatchError("Operator 'missing_some' expects an array of names")
        missing = self._op_missing([list(names)], context)
        if len(names) - len(missing) >= need:
            return []
        return missing
