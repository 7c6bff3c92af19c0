"""
Dependency Extractor — which variables an expression reads, and which an effect writes.

Tracking is at base-variable granularity: {"var": "settlement.population"}
and {"var": "settlement.tags"} both read "settlement". Writes are tracked at
the same granularity so READS and WRITES edges meet on the same nodes.
"""

from typing import Any, Iterable, List, Set, Union

from campaign_rules.expression.errors import MalformedExpressionError
from campaign_rules.expression.parser import MAX_PARSE_DEPTH, Literal, Operation, Var
from campaign_rules.models.rules import Effect

VARIABLES_PREFIX = "/variables/"

# raw JSON spends a dict level and a list level per operator the parser counts once
RAW_DEPTH_LIMIT = 2 * MAX_PARSE_DEPTH


def decode_pointer_segment(segment: str) -> str:
    """Undo JSON-Pointer escaping (~1 -> /, then ~0 -> ~)."""
    return segment.replace("~1", "/").replace("~0", "~")


def variable_name_for_path(path: Any) -> str:
    """Base variable name targeted by a JSON Pointer, or "" if it is not a variable path."""
    if not isinstance(path, str) or not path.startswith(VARIABLES_PREFIX):
        return ""
    segment = path[len(VARIABLES_PREFIX):].split("/", 1)[0]
    return decode_pointer_segment(segment)


class DependencyExtractor:
    """
    Stateless. Accepts raw expression JSON or parsed trees interchangeably.

    Raw JSON too deeply nested for the parser raises MalformedExpressionError.
    """

    def extract_reads(self, expression: Any) -> Set[str]:
        """Base variable names read anywhere in one expression."""
        reads: Set[str] = set()
        self._collect(expression, reads, 1)
        return reads

    def extract_reads_from_multiple(self, expressions: Iterable[Any]) -> Set[str]:
        """Union of the reads of several expressions."""
        reads: Set[str] = set()
        for expression in expressions:
            self._collect(expression, reads, 1)
        return reads

    def reads_variable(self, expression: Any, name: str) -> bool:
        """True if the expression reads the base variable `name`."""
        return name in self.extract_reads(expression)

    def extract_writes(self, effect: Union[Effect, dict]) -> Set[str]:
        """
        Base variable names an effect's patch targets.

        add / replace / remove / copy write the base of `path`; move also
        writes the base of `from` (the source is removed); test writes nothing.
        """
        payload = effect.payload if isinstance(effect, Effect) else (effect or {}).get("payload")
        writes: Set[str] = set()
        if not isinstance(payload, list):
            return writes

        for op in payload:
            if hasattr(op, "model_dump"):
                op = op.model_dump(by_alias=True)
            if not isinstance(op, dict):
                continue
            kind = op.get("op")
            kind = getattr(kind, "value", kind)
            if kind == "test":
                continue
            targets: List[Any] = [op.get("path")]
            if kind == "move":
                targets.append(op.get("from"))
            for path in targets:
                name = variable_name_for_path(path)
                if name:
                    writes.add(name)
        return writes

    def _collect(self, node: Any, reads: Set[str], depth: int) -> None:
        if depth > RAW_DEPTH_LIMIT:
            raise MalformedExpressionError(
                f"Expression nesting exceeds maximum depth of {MAX_PARSE_DEPTH}"
            )
        # Parsed trees
        if isinstance(node, Var):
            if node.base:
                reads.add(node.base)
            if node.has_default:
                self._collect(node.default, reads, depth + 1)
            return
        if isinstance(node, Operation):
            for arg in node.args:
                self._collect(arg, reads, depth + 1)
            return
        if isinstance(node, Literal):
            if node.is_array:
                for item in node.value:
                    self._collect(item, reads, depth + 1)
            return

        # Raw JSON
        if isinstance(node, (list, tuple)):
            for item in node:
                self._collect(item, reads, depth + 1)
            return
        if not isinstance(node, dict):
            return
        for key, value in node.items():
            if key == "var":
                self._collect_var(value, reads, depth + 1)
            else:
                self._collect(value, reads, depth + 1)

    def _collect_var(self, raw: Any, reads: Set[str], depth: int) -> None:
        path = raw
        if isinstance(raw, (list, tuple)):
            path = raw[0] if raw else None
            if len(raw) > 1:
                self._collect(raw[1], reads, depth + 1)
        if isinstance(path, bool) or path is None:
            return
        if isinstance(path, (str, int)):
            base = str(path).split(".")[0]
            if base:
                reads.add(base)
