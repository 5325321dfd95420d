"""Connection conditions, data mapping and next-node selection."""

from __future__ import annotations

import ast
import copy
import logging
import operator
import re
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from ..contracts import WorkflowDefinition
from ..errors import RoutingError, WorkflowDefinitionError

logger = logging.getLogger(__name__)

Condition = Callable[[Mapping[str, Any]], Any]

_MISSING = object()

_COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_LITERAL_NAMES = {"true": True, "false": False, "null": None, "None": None}

_OPERATOR_ALIASES = [
    (re.compile(r"===|=="), "=="),
    (re.compile(r"!==|!="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]

# String literals are left untouched; anything else may hold a dotted path
# whose segments are not Python identifiers (``visual-inspection.confidence``).
_TOKENS = re.compile(
    r"""(?P<string>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')"""
    r"""|(?<![\w.])(?P<path>[A-Za-z_](?:[\w-]*\w)?(?:\.[A-Za-z_](?:[\w-]*\w)?)*)"""
)


def normalize_expression(expression: str) -> Tuple[str, Dict[str, str]]:
    """Rewrite ``expression`` into Python source.

    ``===``, ``!==``, ``&&``, ``||`` and unary ``!`` become Python operators.
    Dotted paths with hyphenated segments are replaced by placeholder names;
    the returned mapping resolves each placeholder back to its path.
    """
    paths: Dict[str, str] = {}
    pieces = []
    position = 0
    for match in _TOKENS.finditer(expression):
        pieces.append(_alias_operators(expression[position:match.start()]))
        path = match.group("path")
        if path is not None and "-" in path:
            placeholder = f"_path_{len(paths)}"
            paths[placeholder] = path
            pieces.append(placeholder)
        else:
            pieces.append(match.group(0))
        position = match.end()
    pieces.append(_alias_operators(expression[position:]))
    return "".join(pieces).strip(), paths


def _alias_operators(fragment: str) -> str:
    for pattern, replacement in _OPERATOR_ALIASES:
        fragment = pattern.sub(replacement, fragment)
    return fragment


def get_nested(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted ``path`` inside nested mappings, or return ``default``."""
    current = data
    for key in path.split("."):
        if isinstance(current, Mapping) and key in current:
            current = current[key]
        else:
            return default
    return current


def set_nested(data: Dict[str, Any], path: str, value: Any) -> None:
    """Assign ``value`` at a dotted ``path``, creating intermediate dicts."""
    keys = path.split(".")
    target = data
    for key in keys[:-1]:
        nested = target.get(key)
        if not isinstance(nested, dict):
            nested = {}
            target[key] = nested
        target = nested
    target[keys[-1]] = value


def _dotted_path(node: ast.AST) -> Optional[str]:
    parts = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if isinstance(node, ast.Name):
        parts.append(node.id)
        return ".".join(reversed(parts))
    return None


def _compile_node(
    node: ast.AST, expression: str, paths: Mapping[str, str]
) -> Condition:
    if isinstance(node, ast.Expression):
        return _compile_node(node.body, expression, paths)

    if isinstance(node, ast.Constant):
        if not isinstance(node.value, (str, int, float, bool, type(None))):
            raise WorkflowDefinitionError(
                f"Unsupported literal in condition '{expression}'"
            )
        value = node.value
        return lambda state: value

    if isinstance(node, ast.Name) and node.id in _LITERAL_NAMES:
        value = _LITERAL_NAMES[node.id]
        return lambda state: value

    if isinstance(node, (ast.Name, ast.Attribute)):
        path = _dotted_path(node)
        if path is None:
            raise WorkflowDefinitionError(
                f"Unsupported attribute access in condition '{expression}'"
            )
        path = paths.get(path, path)
        return lambda state: get_nested(state, path)

    if isinstance(node, (ast.List, ast.Tuple)):
        items = [_compile_node(elt, expression, paths) for elt in node.elts]
        return lambda state: [item(state) for item in items]

    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.Not):
        operand = _compile_node(node.operand, expression, paths)
        return lambda state: not operand(state)

    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub):
        operand = _compile_node(node.operand, expression, paths)
        return lambda state: -operand(state)

    if isinstance(node, ast.BoolOp):
        values = [_compile_node(v, expression, paths) for v in node.values]
        if isinstance(node.op, ast.And):
            return lambda state: all(v(state) for v in values)
        return lambda state: any(v(state) for v in values)

    if isinstance(node, ast.Compare):
        left = _compile_node(node.left, expression, paths)
        ops = []
        for op, comparator in zip(node.ops, node.comparators):
            func = _COMPARISONS.get(type(op))
            if func is None:
                raise WorkflowDefinitionError(
                    f"Unsupported operator {type(op).__name__} in condition '{expression}'"
                )
            ops.append((func, _compile_node(comparator, expression, paths)))

        def compare(state: Mapping[str, Any]) -> bool:
            current = left(state)
            for func, right in ops:
                value = right(state)
                if not func(current, value):
                    return False
                current = value
            return True

        return compare

    raise WorkflowDefinitionError(
        f"Unsupported syntax {type(node).__name__} in condition '{expression}'"
    )


class WorkflowRouter:
    """Evaluates connection conditions and maps data between nodes."""

    def __init__(self) -> None:
        self._conditions: Dict[str, Condition] = {}

    def compile_condition(self, expression: str) -> Condition:
        """Compile ``expression`` once; raises ``WorkflowDefinitionError`` if invalid."""
        cached = self._conditions.get(expression)
        if cached is not None:
            return cached
        try:
            source, paths = normalize_expression(expression)
            tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            raise WorkflowDefinitionError(
                f"Invalid condition '{expression}': {e.msg}"
            ) from e
        condition = _compile_node(tree, expression, paths)
        self._conditions[expression] = condition
        logger.debug(f"Compiled condition '{expression}'")
        return condition

    def evaluate_condition(self, expression: str, state: Mapping[str, Any]) -> bool:
        condition = self.compile_condition(expression)
        try:
            return bool(condition(state))
        except Exception as e:
            logger.warning(f"Condition '{expression}' failed to evaluate, treating as false: {e}")
            return False

    def clear_cache(self) -> None:
        logger.debug(f"Clearing {len(self._conditions)} cached conditions")
        self._conditions.clear()

    # ------------------------------------------------------------------
    def resolve_inputs(
        self,
        definition: WorkflowDefinition,
        node_id: str,
        state: Mapping[str, Any],
    ) -> Dict[str, Any]:
        """Build the inputs for ``node_id`` from a copy of ``state``.

        Data mappings of inbound connections whose source node has already
        produced a result are applied on top of the copy.
        """
        inputs = copy.deepcopy(dict(state))
        for connection in definition.edges():
            if connection.to_node != node_id or connection.data_mapping is None:
                continue
            source = definition.agent_spec(connection.from_node)
            if source is not None and source.result_key not in state:
                continue
            mapping = connection.data_mapping
            value = get_nested(state, mapping.source_key, _MISSING)
            if value is _MISSING:
                logger.debug(
                    f"Mapping {mapping.source_key} -> {mapping.target_key} for "
                    f"{node_id} found no source value"
                )
                value = None
            set_nested(inputs, mapping.target_key, copy.deepcopy(value))
        return inputs

    def next_node(
        self,
        definition: WorkflowDefinition,
        node_id: str,
        state: Mapping[str, Any],
    ) -> Optional[str]:
        """Return the node after ``node_id`` or ``None`` when traversal is done.

        The first outbound connection in declaration order whose condition is
        absent or true wins.
        """
        if node_id == definition.resolved_finish_point:
            return None
        outbound = definition.outbound(node_id)
        if not outbound:
            return None
        for connection in outbound:
            if connection.condition is None or self.evaluate_condition(
                connection.condition, state
            ):
                return connection.to_node
        raise RoutingError(
            f"No outbound connection from {node_id} matched the current state",
            {
                "node": node_id,
                "conditions": [c.condition for c in outbound],
            },
        )
