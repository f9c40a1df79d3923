from __future__ import annotations

import re
import time

import pytest

from rulecraft.core.errors import ConfigurationError, EvaluationTimeoutError
from rulecraft.core.rules.conditions import ConditionEvaluator, validate_condition
from rulecraft.core.rules.context import EvaluationContext
from rulecraft.core.rules.operators import OperatorRegistry
from rulecraft.core.rules.timeouts import TimeoutRunner


@pytest.fixture
def operators() -> OperatorRegistry:
    return OperatorRegistry()


@pytest.fixture
def evaluator(operators):
    runner = TimeoutRunner(max_workers=2)
    yield ConditionEvaluator(operators, runner, function_timeout_s=0.2)
    runner.shutdown()


def _matched(evaluator, node, data=None, variables=None) -> bool:
    scope = EvaluationContext(data=data or {}, variables=variables or {}).scope()
    return evaluator.evaluate(node, scope).matched


@pytest.mark.parametrize(
    ("operator", "left", "right", "expected"),
    [
        ("eq", 1, 1, True),
        ("eq", 1, 1.0, True),
        ("eq", 1, True, False),
        ("eq", "1", 1, False),
        ("ne", "a", "b", True),
        ("gt", 5, 3, True),
        ("gte", 3, 3, True),
        ("lt", "apple", "banana", True),
        ("lte", 4, 3, False),
        ("gt", "10", 3, False),
        ("lt", None, 3, False),
    ],
)
def test_comparison_operators(evaluator, operator, left, right, expected) -> None:
    assert _matched(evaluator, {"operator": operator, "left": left, "right": right}) is expected


def test_inclusion_operators(evaluator) -> None:
    node = {"operator": "in", "left": "${status}", "right": ["open", "pending"]}
    assert _matched(evaluator, node, data={"status": "open"}) is True
    assert _matched(evaluator, {**node, "operator": "nin"}, data={"status": "open"}) is False
    assert _matched(evaluator, {"operator": "in", "left": 1, "right": [True]}) is False


def test_inclusion_requires_list(evaluator, operators) -> None:
    with pytest.raises(ConfigurationError):
        _matched(evaluator, {"operator": "in", "left": "a", "right": "abc"})
    with pytest.raises(ConfigurationError):
        validate_condition({"operator": "nin", "left": "a", "right": 3}, operators)
    validate_condition({"operator": "in", "left": "a", "right": "${allowed}"}, operators)


def test_string_operators_stringify_operands(evaluator) -> None:
    assert _matched(evaluator, {"operator": "contains", "left": "Quarterly report", "right": "report"}) is True
    assert _matched(evaluator, {"operator": "startsWith", "left": 12345, "right": 123}) is True
    assert _matched(evaluator, {"operator": "endsWith", "left": True, "right": "ue"}) is True
    assert _matched(evaluator, {"operator": "contains", "left": None, "right": "x"}) is False


def test_matches_accepts_pattern_strings_and_compiled(evaluator, operators) -> None:
    assert _matched(evaluator, {"operator": "matches", "left": "INV-2024-001", "right": r"^INV-\d{4}"}) is True
    assert _matched(evaluator, {"operator": "matches", "left": "abc", "right": re.compile("B", re.I)}) is True
    with pytest.raises(ConfigurationError):
        validate_condition({"operator": "matches", "left": "x", "right": "("}, operators)


def test_between_is_inclusive(evaluator, operators) -> None:
    node = {"operator": "between", "left": "${amount}", "right": [10, 20]}
    assert _matched(evaluator, node, data={"amount": 10}) is True
    assert _matched(evaluator, node, data={"amount": 20}) is True
    assert _matched(evaluator, node, data={"amount": 21}) is False
    with pytest.raises(ConfigurationError):
        _matched(evaluator, {"operator": "between", "left": 1, "right": [1, 2, 3]})
    with pytest.raises(ConfigurationError):
        validate_condition({"operator": "between", "left": 1, "right": 5}, operators)


def test_exists_checks_variables_then_data(evaluator) -> None:
    assert _matched(evaluator, {"operator": "exists", "field": "user"}, variables={"user": None}) is True
    assert _matched(evaluator, {"operator": "exists", "field": "order.id"}, data={"order": {"id": 1}}) is True
    assert _matched(evaluator, {"operator": "exists", "field": "order.total"}, data={"order": {"id": 1}}) is False


def test_builtin_functions(evaluator) -> None:
    assert _matched(evaluator, {"operator": "function", "name": "isNumber", "args": ["${amount}"]}, data={"amount": 3}) is True
    assert _matched(evaluator, {"operator": "function", "name": "includes", "args": [["a", "b"], "b"]}) is True
    assert _matched(evaluator, {"operator": "function", "name": "isArray", "args": ["nope"]}) is False


def test_custom_function_runs_under_timeout(evaluator, operators) -> None:
    operators.register_function("isVip", lambda tier: tier in {"gold", "platinum"})
    operators.register_function("slow", lambda: time.sleep(1) or True)

    assert _matched(evaluator, {"operator": "function", "name": "isVip", "args": ["${tier}"]}, data={"tier": "gold"}) is True
    with pytest.raises(EvaluationTimeoutError):
        _matched(evaluator, {"operator": "function", "name": "slow"})


def test_unknown_function_fails(evaluator, operators) -> None:
    with pytest.raises(ConfigurationError):
        _matched(evaluator, {"operator": "function", "name": "missing"})
    with pytest.raises(ConfigurationError):
        validate_condition({"operator": "function", "name": "missing"}, operators)


def test_custom_operator_receives_node_and_scope(evaluator, operators) -> None:
    seen = {}

    def divisible_by(node, scope):
        seen["node"] = node
        return scope.resolve(node["left"]) % node["right"] == 0

    operators.register_operator("divisibleBy", divisible_by)

    assert _matched(evaluator, {"operator": "divisibleBy", "left": "${n}", "right": 3}, data={"n": 9}) is True
    assert seen["node"]["right"] == 3
    validate_condition({"operator": "divisibleBy", "left": 1, "right": 1}, operators)


def test_custom_operator_cannot_shadow_builtin(operators) -> None:
    with pytest.raises(ConfigurationError):
        operators.register_operator("eq", lambda node, scope: True)
