"""Sandboxed condition expressions and ``${path}`` templating.

Conditions on edges and script tasks are parsed with :mod:`ast` and evaluated by
walking a whitelist of node types. Names resolve only against the supplied
variables; there is no access to builtins, attributes of host objects, calls,
comprehensions or I/O.

Example:
    >>> evaluator = ExpressionEvaluator()
    >>> evaluator.evaluate("amount < 100 and customer.tier == 'gold'", {
    ...     "amount": 50,
    ...     "customer": {"tier": "gold"},
    ... })
    True
    >>> render_template("Order ${order.id} for ${customer}", {"order": {"id": 7}})
    'Order 7 for ${customer}'
"""

from __future__ import annotations

import ast
import json
import logging
import operator
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from litestar_bpm.exceptions import BpmError, ExpressionError

__all__ = [
    "ConditionResult",
    "ExpressionEvaluator",
    "compile_expression",
    "lookup_path",
    "render_template",
    "render_value",
]

logger = logging.getLogger(__name__)

_BINARY_OPERATORS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPERATORS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPERATORS: dict[type[ast.cmpop], Callable[[Any, Any], Any]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
}

_ALLOWED_NODES: tuple[type[ast.AST], ...] = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.Compare,
    ast.IfExp,
    *_BINARY_OPERATORS,
    *_UNARY_OPERATORS,
    *_COMPARE_OPERATORS,
)

_LITERAL_NAMES: dict[str, Any] = {"true": True, "false": False, "null": None}

# Longest tokens first so "!==" is not consumed as "!=" followed by "=".
_ALIASES = (
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
)
_STRING_LITERAL = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""")
_WRAPPED = re.compile(r"\s*\$\{([^{}]*)\}\s*", re.DOTALL)
_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")

_MAX_SEQUENCE_LENGTH = 10_000
_MAX_EXPRESSION_LENGTH = 10_000
_MAX_EXPRESSION_DEPTH = 64


def _normalize(expression: str) -> str:
    """Rewrite accepted aliases into Python syntax, leaving string literals untouched."""
    wrapped = _WRAPPED.fullmatch(expression)
    if wrapped:
        expression = wrapped.group(1)
    parts = _STRING_LITERAL.split(expression)
    for index in range(0, len(parts), 2):
        for pattern, replacement in _ALIASES:
            parts[index] = pattern.sub(replacement, parts[index])
    return "".join(parts).strip()


def _depth(tree: ast.AST) -> int:
    deepest = 0
    stack = [(tree, 1)]
    while stack:
        node, depth = stack.pop()
        deepest = max(deepest, depth)
        stack.extend((child, depth + 1) for child in ast.iter_child_nodes(node))
    return deepest


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    """Parse and vet an expression.

    Args:
        expression: The expression source.

    Returns:
        The parsed expression tree.

    Raises:
        ExpressionError: If the expression is not valid syntax, is too long or
            too deeply nested, or uses a construct outside the whitelist.
    """
    source = _normalize(expression)
    if not source:
        msg = "expression is empty"
        raise ExpressionError(expression, msg)
    if len(source) > _MAX_EXPRESSION_LENGTH:
        msg = f"expression is longer than {_MAX_EXPRESSION_LENGTH} characters"
        raise ExpressionError(expression, msg)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(expression, exc.msg or "invalid syntax") from exc
    except (RecursionError, MemoryError) as exc:
        raise ExpressionError(expression, "expression is nested too deeply") from exc
    if _depth(tree) > _MAX_EXPRESSION_DEPTH:
        msg = f"expression is nested deeper than {_MAX_EXPRESSION_DEPTH} levels"
        raise ExpressionError(expression, msg)

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(expression, f"'{type(node).__name__}' is not allowed")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ExpressionError(expression, f"access to '{node.attr}' is not allowed")
    return tree


@dataclass(frozen=True)
class ConditionResult:
    """Outcome of a guarded condition evaluation.

    Attributes:
        value: Truth value of the condition.
        warning: Description of why evaluation failed, if it did.
    """

    value: bool
    warning: str | None = None


class ExpressionEvaluator:
    """Evaluates whitelisted expressions over a variable mapping.

    The evaluator holds no state between calls and can be shared by concurrent
    walks.
    """

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> Any:
        """Evaluate an expression.

        Args:
            expression: The expression source.
            variables: Bindings visible to the expression.

        Returns:
            The value of the expression.

        Raises:
            ExpressionError: If the expression is rejected or references an unknown name.
        """
        tree = compile_expression(expression)
        return self._eval(tree.body, variables, expression)

    def evaluate_condition(self, expression: str | None, variables: Mapping[str, Any]) -> ConditionResult:
        """Evaluate an edge condition without ever raising.

        An empty condition is true. Malformed or failing expressions are false
        and carry a warning.

        Args:
            expression: The condition source, if any.
            variables: Bindings visible to the condition.

        Returns:
            The condition result.
        """
        if expression is None or not expression.strip():
            return ConditionResult(True)
        try:
            return ConditionResult(bool(self.evaluate(expression, variables)))
        except (BpmError, ArithmeticError, LookupError, TypeError, ValueError, RecursionError) as exc:
            warning = f"Condition '{expression}' evaluated to false: {exc}"
            logger.warning(warning)
            return ConditionResult(False, warning)

    def _eval(self, node: ast.AST, variables: Mapping[str, Any], source: str) -> Any:  # noqa: PLR0911, PLR0912
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in variables:
                return variables[node.id]
            if node.id in _LITERAL_NAMES:
                return _LITERAL_NAMES[node.id]
            raise ExpressionError(source, f"name '{node.id}' is not defined")
        if isinstance(node, ast.Attribute):
            value = self._eval(node.value, variables, source)
            if not isinstance(value, Mapping):
                raise ExpressionError(source, f"cannot read '{node.attr}' of {type(value).__name__}")
            if node.attr not in value:
                raise ExpressionError(source, f"key '{node.attr}' is not defined")
            return value[node.attr]
        if isinstance(node, ast.Subscript):
            value = self._eval(node.value, variables, source)
            if not isinstance(value, (Mapping, Sequence)):
                raise ExpressionError(source, f"cannot index {type(value).__name__}")
            return value[self._eval(node.slice, variables, source)]
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(item, variables, source) for item in node.elts]
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value_node in node.values:
                    result = self._eval(value_node, variables, source)
                    if not result:
                        return result
                return result
            result = False
            for value_node in node.values:
                result = self._eval(value_node, variables, source)
                if result:
                    return result
            return result
        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPERATORS[type(node.op)](self._eval(node.operand, variables, source))
        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, variables, source)
            right = self._eval(node.right, variables, source)
            if isinstance(node.op, ast.Mult):
                _check_repeat(left, right, source)
            return _BINARY_OPERATORS[type(node.op)](left, right)
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, variables, source)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, variables, source)
                if not _COMPARE_OPERATORS[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            if self._eval(node.test, variables, source):
                return self._eval(node.body, variables, source)
            return self._eval(node.orelse, variables, source)
        raise ExpressionError(source, f"'{type(node).__name__}' is not allowed")


def _check_repeat(left: Any, right: Any, source: str) -> None:
    """Reject repetitions whose result would exceed the sequence length limit."""
    for sequence, count in ((left, right), (right, left)):
        if (
            isinstance(sequence, (str, list, tuple))
            and isinstance(count, int)
            and len(sequence) * count > _MAX_SEQUENCE_LENGTH
        ):
            raise ExpressionError(source, "sequence repetition is too large")


def lookup_path(variables: Mapping[str, Any], path: str) -> tuple[bool, Any]:
    """Resolve a dotted path through nested mappings and sequences.

    Args:
        variables: The root mapping.
        path: Dotted path such as ``order.items.0.sku``.

    Returns:
        A ``(found, value)`` pair.
    """
    current: Any = variables
    for part in path.strip().split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return False, None
            current = current[index]
        else:
            return False, None
    return True, current


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None or isinstance(value, (bool, dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Replace ``${path}`` placeholders with variable values.

    Unresolved placeholders are left verbatim. Never raises.

    Args:
        template: The template string.
        variables: Values available to placeholders.

    Returns:
        The rendered string.
    """

    def _substitute(match: re.Match[str]) -> str:
        found, value = lookup_path(variables, match.group(1))
        return _stringify(value) if found else match.group(0)

    return _PLACEHOLDER.sub(_substitute, template)


def render_value(value: Any, variables: Mapping[str, Any]) -> Any:
    """Render templates inside strings, lists and mappings.

    A string consisting of exactly one resolvable placeholder is replaced by the
    raw variable value so that numbers and structures keep their type.

    Args:
        value: The value to render.
        variables: Values available to placeholders.

    Returns:
        A rendered copy of ``value``.
    """
    if isinstance(value, str):
        single = _PLACEHOLDER.fullmatch(value)
        if single:
            found, resolved = lookup_path(variables, single.group(1))
            return resolved if found else value
        return render_template(value, variables)
    if isinstance(value, Mapping):
        return {key: render_value(item, variables) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(item, variables) for item in value]
    return value
