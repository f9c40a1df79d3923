from __future__ import annotations

import logging
import operator
import re
import time
from collections.abc import Callable
from functools import lru_cache
from typing import Any

from rulecraft.core.errors import ConfigurationError, DepthExceededError, ExpressionError

from .context import MISSING, RuleScope, stringify
from .expressions import evaluate_expression, parse, strict_equals
from .operators import (
    COMPARISON_OPERATORS,
    INCLUSION_OPERATORS,
    LOGICAL_OPERATORS,
    STRING_OPERATORS,
    OperatorRegistry,
)
from .schemas import ConditionNode, ConditionResult, ConditionTrace
from .timeouts import CancellationToken, TimeoutRunner


logger = logging.getLogger("rulecraft.rules.conditions")

_ORDERING: dict[str, Callable[[Any, Any], bool]] = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}
_STRING_CHECKS: dict[str, Callable[[str, str], bool]] = {
    "contains": lambda left, right: right in left,
    "startsWith": lambda left, right: left.startswith(right),
    "endsWith": lambda left, right: left.endswith(right),
}
_REFERENCE_RE = re.compile(r"\$\{[^}]+\}")


@lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigurationError(f"Invalid regular expression {pattern!r}: {exc}") from exc


def _children(node: dict[str, Any]) -> list[Any]:
    children = node.get("conditions")
    if children is None:
        children = node.get("operands")
    if children is None:
        return []
    if not isinstance(children, list):
        raise ConfigurationError(f"Operator {node.get('operator')!r} expects a list of conditions")
    return children


def _not_child(node: dict[str, Any]) -> Any:
    if "condition" in node:
        return node["condition"]
    children = _children(node)
    return children[0] if children else None


def _is_reference(value: Any) -> bool:
    return isinstance(value, str) and _REFERENCE_RE.fullmatch(value) is not None


def _ordered(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    try:
        return bool(_ORDERING[op](left, right))
    except TypeError:
        return False


def _in_range(value: Any, bounds: Any) -> bool:
    if not isinstance(bounds, (list, tuple)) or len(bounds) != 2:
        raise ConfigurationError("Operator 'between' expects a [min, max] pair")
    low, high = bounds
    return _ordered("gte", value, low) and _ordered("lte", value, high)


def _members(op: str, right: Any) -> list[Any]:
    if not isinstance(right, (list, tuple)):
        raise ConfigurationError(f"Operator {op!r} expects a list on the right-hand side")
    return list(right)


def _contains(values: list[Any], item: Any) -> bool:
    return any(strict_equals(candidate, item) for candidate in values)


class ConditionEvaluator:
    """Walks a condition tree against a rule scope and explains how it got its answer."""

    def __init__(
        self,
        operators: OperatorRegistry,
        runner: TimeoutRunner,
        max_depth: int = 10,
        function_timeout_s: float = 1.0,
        allow_unsafe_expressions: bool = False,
    ) -> None:
        self.operators = operators
        self.runner = runner
        self.max_depth = max_depth
        self.function_timeout_s = function_timeout_s
        self.allow_unsafe_expressions = allow_unsafe_expressions

    def evaluate(
        self,
        tree: ConditionNode,
        scope: RuleScope,
        token: CancellationToken | None = None,
    ) -> ConditionResult:
        started = time.perf_counter()
        token = token or CancellationToken(reason="condition evaluation")
        if tree is None:
            return ConditionResult(matched=True, trace=None, duration_ms=0.0)
        trace = self.evaluate_node(tree, scope, token, depth=0)
        return ConditionResult(
            matched=trace.value,
            trace=trace,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    def evaluate_node(
        self,
        node: ConditionNode,
        scope: RuleScope,
        token: CancellationToken,
        depth: int = 0,
    ) -> ConditionTrace:
        if depth > self.max_depth:
            raise DepthExceededError(depth, self.max_depth)
        token.raise_if_cancelled()

        if isinstance(node, bool):
            return ConditionTrace(type="literal", value=node)
        if isinstance(node, str):
            return self._expression(node, scope)
        if not isinstance(node, dict):
            return ConditionTrace(type="unknown", value=False, result=node)

        op = node.get("operator")
        if not isinstance(op, str) or not op:
            raise ConfigurationError("Condition node is missing an operator")
        if op in LOGICAL_OPERATORS:
            return self._logical(op, node, scope, token, depth)
        if op in COMPARISON_OPERATORS:
            return self._comparison(op, node, scope)
        if op in INCLUSION_OPERATORS:
            left = scope.resolve(node.get("left"))
            right = scope.resolve(node.get("right"))
            found = _contains(_members(op, right), left)
            return ConditionTrace(
                type="inclusion", operator=op, left=left, right=right, value=found if op == "in" else not found
            )
        if op in STRING_OPERATORS:
            left = stringify(scope.resolve(node.get("left")))
            right = stringify(scope.resolve(node.get("right")))
            return ConditionTrace(
                type="string", operator=op, left=left, right=right, value=_STRING_CHECKS[op](left, right)
            )
        if op == "matches":
            return self._matches(node, scope)
        if op == "between":
            value = scope.resolve(node.get("value", node.get("left")))
            bounds = scope.resolve(node.get("range", node.get("right")))
            return ConditionTrace(type="range", operator=op, left=value, right=bounds, value=_in_range(value, bounds))
        if op == "exists":
            field_name = node.get("field", node.get("left"))
            present = isinstance(field_name, str) and scope.lookup(field_name) is not MISSING
            return ConditionTrace(type="existence", operator=op, field=field_name, value=present)
        if op == "function":
            return self._function(node, scope, token)

        custom = self.operators.custom_operator(op)
        if custom is None:
            raise ConfigurationError(f"Unknown operator: {op}")
        result = self.runner.run(
            lambda: custom(node, scope),
            token.child(self.function_timeout_s, reason=f"operator {op}"),
        )
        return ConditionTrace(type="custom", operator=op, value=bool(result), result=result)

    def _expression(self, source: str, scope: RuleScope) -> ConditionTrace:
        if not self.allow_unsafe_expressions:
            raise ConfigurationError("String expressions are disabled; set allow_unsafe_expressions to enable them")
        substituted = scope.substitute_literals(source)
        return ConditionTrace(type="expression", expression=substituted, value=evaluate_expression(substituted))

    def _logical(
        self,
        op: str,
        node: dict[str, Any],
        scope: RuleScope,
        token: CancellationToken,
        depth: int,
    ) -> ConditionTrace:
        details: list[ConditionTrace] = []
        if op == "not":
            child = _not_child(node)
            if child is None:
                return ConditionTrace(type="logical", operator=op, value=True)
            inner = self.evaluate_node(child, scope, token, depth + 1)
            return ConditionTrace(type="logical", operator=op, value=not inner.value, details=[inner])

        children = _children(node)
        if op == "xor":
            if len(children) != 2:
                raise ConfigurationError("Operator 'xor' expects exactly two conditions")
            details = [self.evaluate_node(child, scope, token, depth + 1) for child in children]
            return ConditionTrace(
                type="logical", operator=op, value=details[0].value != details[1].value, details=details
            )

        # and: stop at the first false child; or: stop at the first true child.
        short_circuit_on = op == "or"
        for child in children:
            trace = self.evaluate_node(child, scope, token, depth + 1)
            details.append(trace)
            if trace.value is short_circuit_on:
                return ConditionTrace(type="logical", operator=op, value=short_circuit_on, details=details)
        return ConditionTrace(type="logical", operator=op, value=not short_circuit_on, details=details)

    def _comparison(self, op: str, node: dict[str, Any], scope: RuleScope) -> ConditionTrace:
        left = scope.resolve(node.get("left"))
        right = scope.resolve(node.get("right"))
        if op == "eq":
            value = strict_equals(left, right)
        elif op == "ne":
            value = not strict_equals(left, right)
        else:
            value = _ordered(op, left, right)
        return ConditionTrace(type="comparison", operator=op, left=left, right=right, value=value)

    def _matches(self, node: dict[str, Any], scope: RuleScope) -> ConditionTrace:
        left = stringify(scope.resolve(node.get("left")))
        pattern = node.get("right", node.get("pattern"))
        if isinstance(pattern, str):
            pattern = scope.resolve(pattern)
        if isinstance(pattern, str):
            compiled = _compile_pattern(pattern)
        elif isinstance(pattern, re.Pattern):
            compiled = pattern
        else:
            raise ConfigurationError("Operator 'matches' expects a pattern string")
        return ConditionTrace(
            type="regex", operator="matches", left=left, right=compiled.pattern, value=compiled.search(left) is not None
        )

    def _function(self, node: dict[str, Any], scope: RuleScope, token: CancellationToken) -> ConditionTrace:
        name = node.get("name")
        args = scope.resolve(list(node.get("args") or []))
        builtin = self.operators.builtin_function(name) if isinstance(name, str) else None
        if builtin is not None:
            result = builtin(*args)
        else:
            fn = self.operators.custom_function(name) if isinstance(name, str) else None
            if fn is None:
                raise ConfigurationError(f"Unknown function: {name}")
            result = self.runner.run(
                lambda: fn(*args),
                token.child(self.function_timeout_s, reason=f"function {name}"),
            )
        return ConditionTrace(type="function", name=name, args=args, value=bool(result), result=result)


def validate_condition(
    node: ConditionNode,
    operators: OperatorRegistry,
    allow_unsafe_expressions: bool = False,
) -> None:
    """Reject structurally malformed trees before a rule is stored.

    Nesting depth is not checked here; it is enforced while evaluating.
    """
    if node is None or isinstance(node, bool):
        return
    if isinstance(node, str):
        if not allow_unsafe_expressions:
            raise ConfigurationError("String expressions are disabled; set allow_unsafe_expressions to enable them")
        try:
            parse(_REFERENCE_RE.sub("null", node))
        except ExpressionError as exc:
            raise ConfigurationError(f"Invalid expression {node!r}: {exc}") from exc
        return
    if not isinstance(node, dict):
        raise ConfigurationError(f"Unsupported condition node: {type(node).__name__}")

    op = node.get("operator")
    if not isinstance(op, str) or not op:
        raise ConfigurationError("Condition node is missing an operator")

    if op in LOGICAL_OPERATORS:
        if op == "not":
            children = [] if (child := _not_child(node)) is None else [child]
        else:
            children = _children(node)
        if op == "xor" and len(children) != 2:
            raise ConfigurationError("Operator 'xor' expects exactly two conditions")
        for child in children:
            validate_condition(child, operators, allow_unsafe_expressions)
        return
    if op in INCLUSION_OPERATORS:
        right = node.get("right")
        if not _is_reference(right):
            _members(op, right)
        return
    if op == "between":
        bounds = node.get("range", node.get("right"))
        if not _is_reference(bounds) and (not isinstance(bounds, (list, tuple)) or len(bounds) != 2):
            raise ConfigurationError("Operator 'between' expects a [min, max] pair")
        return
    if op == "matches":
        pattern = node.get("right", node.get("pattern"))
        if isinstance(pattern, str) and not _is_reference(pattern):
            _compile_pattern(pattern)
        elif not isinstance(pattern, (str, re.Pattern)):
            raise ConfigurationError("Operator 'matches' expects a pattern string")
        return
    if op == "exists":
        field_name = node.get("field", node.get("left"))
        if not isinstance(field_name, str) or not field_name:
            raise ConfigurationError("Operator 'exists' expects a field name")
        return
    if op == "function":
        name = node.get("name")
        if not isinstance(name, str) or not operators.has_function(name):
            raise ConfigurationError(f"Unknown function: {name}")
        if not isinstance(node.get("args", []), list):
            raise ConfigurationError(f"Function {name!r} expects a list of args")
        return
    if op in COMPARISON_OPERATORS or op in STRING_OPERATORS:
        return
    if not operators.is_known_operator(op):
        raise ConfigurationError(f"Unknown operator: {op}")
