"""
Patch Engine — validates and applies RFC-6902 style patches to entity state.

Behavioral Contract:
- Validation never mutates anything and reports every problem it finds
- Ops apply strictly in array order against a deep copy
- Application is atomic: any failing op (including a failed `test`) leaves
  the caller's state untouched
- Paths whose top-level field is protected (ids, timestamps, version,
  foreign keys) are rejected at validation time
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from campaign_rules.models.config import EngineConfig
from campaign_rules.models.patch import PatchDiff, PatchPreview, PatchResult, PatchValidationResult
from campaign_rules.models.rules import PatchOp

logger = logging.getLogger(__name__)

VALID_OPERATIONS = ("add", "remove", "replace", "move", "copy", "test")
KNOWN_FIELDS = {"op", "path", "value", "from"}
VARIABLES_ROOT = "/variables"

_ABSENT = object()


class PatchError(Exception):
    """Base class for patch failures."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class InvalidPatchSyntaxError(PatchError):
    """The patch failed validation; nothing was applied."""


class PatchTestFailedError(PatchError):
    """A `test` op did not match the current value."""


class PathNotFoundError(PatchError):
    """An op referenced a pointer that does not exist in the target document."""


def json_equal(a: Any, b: Any) -> bool:
    """JSON value equality: booleans never equal numbers, 1 == 1.0."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(json_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(json_equal(x, y) for x, y in zip(a, b))
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    return type(a) == type(b) and a == b


def parse_pointer(path: str) -> List[str]:
    """Split a JSON Pointer into decoded reference tokens."""
    if path == "":
        return []
    return [t.replace("~1", "/").replace("~0", "~") for t in path.split("/")[1:]]


def _is_variable_pointer(pointer: str) -> bool:
    return pointer == VARIABLES_ROOT or pointer.startswith(VARIABLES_ROOT + "/")


def diff_variables(before: Dict[str, Any], after: Dict[str, Any]) -> PatchDiff:
    """Structural diff keyed by top-level variable name."""
    diff = PatchDiff()
    for name, value in after.items():
        if name not in before:
            diff.added[name] = value
        elif not json_equal(before[name], value):
            diff.modified[name] = {"old": before[name], "new": value}
    for name, value in before.items():
        if name not in after:
            diff.removed[name] = value
    return diff


class PatchEngine:
    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    # --- Validation ---

    def validate(self, ops: Any, entity_type: Optional[str] = None) -> PatchValidationResult:
        """Check patch shape and protected paths without touching any state."""
        errors: List[str] = []
        warnings: List[str] = []

        if not isinstance(ops, list):
            return PatchValidationResult(
                valid=False, errors=["Patch must be an array of operations"]
            )

        for i, raw in enumerate(ops):
            op = self._normalize(raw)
            if op is None:
                errors.append(f"Operation {i} must be an object")
                continue

            kind = op.get("op")
            if not kind:
                errors.append(f"Operation {i} is missing the \"op\" field")
                continue
            if kind not in VALID_OPERATIONS:
                errors.append(
                    f"Invalid operation type \"{kind}\" at index {i}. "
                    f"Must be one of: {', '.join(VALID_OPERATIONS)}"
                )
                continue

            path = op.get("path")
            if not isinstance(path, str):
                errors.append(f"Operation {i} is missing a string \"path\" field")
                continue
            if not path.startswith("/"):
                errors.append(f"Operation {i} path \"{path}\" must start with '/'")
                continue

            if kind in ("add", "replace", "test") and "value" not in op:
                errors.append(f"Operation {i} (\"{kind}\") requires a \"value\" field")
                continue

            from_path = op.get("from")
            if kind in ("move", "copy"):
                if not isinstance(from_path, str) or not from_path.startswith("/"):
                    errors.append(
                        f"Operation {i} (\"{kind}\") requires a \"from\" pointer starting with '/'"
                    )
                    continue

            extra = sorted(set(op) - KNOWN_FIELDS)
            if extra:
                warnings.append(f"Operation {i} has unrecognized fields: {', '.join(extra)}")

            path_error = self._check_protected(path, entity_type)
            if path_error:
                errors.append(path_error)
            if kind in ("move", "copy"):
                from_error = self._check_protected(from_path, entity_type)
                if from_error:
                    errors.append(f"Source path error: {from_error}")

            if path == VARIABLES_ROOT and kind != "test":
                errors.append(
                    f"Operation {i} (\"{kind}\") cannot replace or remove the whole "
                    f"variable state; target {VARIABLES_ROOT}/<name> instead"
                )
            if kind == "move" and from_path == VARIABLES_ROOT:
                errors.append(
                    f"Operation {i} (\"move\") cannot move the whole variable state away"
                )

            if not path.startswith(VARIABLES_ROOT + "/"):
                warnings.append(
                    f"Operation {i} path \"{path}\" does not target /variables/"
                )

        return PatchValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def _check_protected(self, path: str, entity_type: Optional[str]) -> Optional[str]:
        parts = [p for p in path.split("/") if p]
        if not parts:
            return "Path cannot be empty or root"
        field = parts[0]
        if field in self.config.protected_fields:
            return f"Path \"{path}\" is not allowed: \"{field}\" is a protected field"
        if entity_type:
            entity_fields = self.config.entity_protected_fields.get(entity_type.lower(), [])
            if field in entity_fields:
                return (
                    f"Path \"{path}\" is not allowed: \"{field}\" is a protected field "
                    f"for {entity_type}"
                )
        return None

    @staticmethod
    def _normalize(raw: Any) -> Optional[Dict[str, Any]]:
        if isinstance(raw, PatchOp):
            return raw.to_wire()
        if not isinstance(raw, dict):
            return None
        op = dict(raw)
        if "op" in op:
            op["op"] = getattr(op["op"], "value", op["op"])
        return op

    # --- Application ---

    def apply(
        self,
        variables: Dict[str, Any],
        ops: Any,
        entity_type: Optional[str] = None,
    ) -> PatchResult:
        """
        Apply ops to a bare VariableState.

        Paths are still written as /variables/<name>/...; ops aimed anywhere
        else have nothing to land on and raise PathNotFoundError.
        """
        result = self._run({"variables": variables}, ops, entity_type, variables_only=True)
        return PatchResult(
            state=result.state["variables"], diff=result.diff, warnings=result.warnings
        )

    def apply_document(
        self,
        document: Dict[str, Any],
        ops: Any,
        entity_type: Optional[str] = None,
    ) -> PatchResult:
        """Validate, then apply ops to a full entity document. Atomic."""
        return self._run(document, ops, entity_type, variables_only=False)

    def _run(
        self,
        document: Dict[str, Any],
        ops: Any,
        entity_type: Optional[str],
        variables_only: bool,
    ) -> PatchResult:
        validation = self.validate(ops, entity_type)
        if not validation.valid:
            raise InvalidPatchSyntaxError(
                f"Invalid patch: {'; '.join(validation.errors)}", validation.errors
            )

        normalized = [self._normalize(op) for op in ops]
        if variables_only:
            for op in normalized:
                keys = ("path", "from") if op["op"] in ("move", "copy") else ("path",)
                for key in keys:
                    pointer = op.get(key)
                    if isinstance(pointer, str) and not _is_variable_pointer(pointer):
                        raise PathNotFoundError(
                            f"Path \"{pointer}\" is outside the variable state"
                        )

        working = copy.deepcopy(document)
        for op in normalized:
            working = self._apply_op(working, op)

        after_vars = working.get("variables", {})
        if not isinstance(after_vars, dict):
            raise InvalidPatchSyntaxError("Patch must leave variables as an object")
        before_vars = document.get("variables") or {}
        diff = diff_variables(
            before_vars if isinstance(before_vars, dict) else {},
            after_vars,
        )
        return PatchResult(state=working, diff=diff, warnings=validation.warnings)

    def preview(
        self,
        document: Dict[str, Any],
        ops: Any,
        entity_type: Optional[str] = None,
    ) -> PatchPreview:
        """Before/after view of a patch. Failures are reported, never raised."""
        try:
            result = self.apply_document(document, ops, entity_type)
        except PatchError as e:
            logger.debug("Patch preview failed: %s", e)
            return PatchPreview(success=False, before=document, errors=e.errors)

        after = result.state
        changed = [
            key for key in list(document) + [k for k in after if k not in document]
            if not json_equal(document.get(key, _ABSENT), after.get(key, _ABSENT))
        ]
        return PatchPreview(
            success=True,
            before=document,
            after=after,
            changed_fields=changed,
            diff=result.diff,
        )

    def _apply_op(self, doc: Any, op: Dict[str, Any]) -> Any:
        kind = op["op"]
        path = op["path"]

        if kind == "add":
            return self._add(doc, path, copy.deepcopy(op["value"]))
        if kind == "remove":
            self._remove(doc, path)
            return doc
        if kind == "replace":
            parent, token = self._locate(doc, path)
            self._get(doc, path)
            self._set(parent, token, copy.deepcopy(op["value"]), path)
            return doc
        if kind == "move":
            from_path = op["from"]
            if path.startswith(from_path + "/"):
                raise InvalidPatchSyntaxError(
                    f"Cannot move \"{from_path}\" into its own child \"{path}\""
                )
            value = self._get(doc, from_path)
            self._remove(doc, from_path)
            return self._add(doc, path, value)
        if kind == "copy":
            value = copy.deepcopy(self._get(doc, op["from"]))
            return self._add(doc, path, value)
        if kind == "test":
            actual = self._get(doc, path)
            if not json_equal(actual, op["value"]):
                raise PatchTestFailedError(
                    f"Test failed at \"{path}\": expected {op['value']!r}, found {actual!r}"
                )
            return doc
        raise InvalidPatchSyntaxError(f"Unsupported operation: {kind}")

    # --- JSON Pointer primitives ---

    def _locate(self, doc: Any, path: str) -> Tuple[Any, str]:
        """Return (parent container, final token) for a pointer."""
        tokens = parse_pointer(path)
        if not tokens:
            raise InvalidPatchSyntaxError("Path cannot be empty or root")
        current = doc
        for token in tokens[:-1]:
            current = self._child(current, token, path)
        return current, tokens[-1]

    def _child(self, container: Any, token: str, path: str) -> Any:
        if isinstance(container, dict):
            if token in container:
                return container[token]
        elif isinstance(container, list):
            index = self._index(container, token, path)
            if index < len(container):
                return container[index]
        raise PathNotFoundError(f"Path \"{path}\" does not exist")

    def _get(self, doc: Any, path: str) -> Any:
        current = doc
        for token in parse_pointer(path):
            current = self._child(current, token, path)
        return current

    @staticmethod
    def _index(container: List[Any], token: str, path: str) -> int:
        if not token.isdigit() or (len(token) > 1 and token.startswith("0")):
            raise PathNotFoundError(f"Path \"{path}\" has an invalid array index \"{token}\"")
        return int(token)

    def _set(self, parent: Any, token: str, value: Any, path: str) -> None:
        if isinstance(parent, dict):
            parent[token] = value
        elif isinstance(parent, list):
            parent[self._index(parent, token, path)] = value
        else:
            raise PathNotFoundError(f"Path \"{path}\" does not point into a container")

    def _add(self, doc: Any, path: str, value: Any) -> Any:
        parent, token = self._locate(doc, path)
        if isinstance(parent, dict):
            parent[token] = value
        elif isinstance(parent, list):
            if token == "-":
                parent.append(value)
            else:
                index = self._index(parent, token, path)
                if index > len(parent):
                    raise PathNotFoundError(f"Path \"{path}\" index is out of range")
                parent.insert(index, value)
        else:
            raise PathNotFoundError(f"Path \"{path}\" does not point into a container")
        return doc

    def _remove(self, doc: Any, path: str) -> None:
        parent, token = self._locate(doc, path)
        if isinstance(parent, dict) and token in parent:
            del parent[token]
            return
        if isinstance(parent, list):
            index = self._index(parent, token, path)
            if index < len(parent):
                parent.pop(index)
                return
        raise PathNotFoundError(f"Path \"{path}\" does not exist")


