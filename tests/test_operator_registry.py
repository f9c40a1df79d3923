from __future__ import annotations

from rulecraft.core.rules.operators import OperatorRegistry


def test_builtin_functions_follow_rule_semantics() -> None:
    registry = OperatorRegistry()

    def call(name, *args):
        return registry.builtin_function(name)(*args)

    assert call("round", 2.5) == 3
    assert call("round", -2.5) == -2
    assert call("max", 1, 7, 3) == 7
    assert call("length", 12345) == 5
    assert call("size", "abc") == 0
    assert call("trim", "  hi ") == "hi"
    assert call("isNumber", True) is False
    assert call("isObject", {"a": 1}) is True
    assert call("isNull") is True
    assert len(call("today")) == 10


def test_builtins_can_be_disabled() -> None:
    registry = OperatorRegistry(include_builtins=False)

    assert registry.has_function("abs") is False
    assert registry.function_names() == []


def test_custom_registrations_round_trip() -> None:
    registry = OperatorRegistry()
    registry.register_function("double", lambda value: value * 2)
    registry.register_operator("near", lambda node, scope: True)

    assert registry.has_function("double")
    assert registry.is_known_operator("near")
    assert "near" in registry.operator_names()
    assert registry.unregister_operator("near") is True
    assert registry.unregister_operator("near") is False
    assert registry.is_known_operator("near") is False
