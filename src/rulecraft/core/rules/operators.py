from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from rulecraft.core.errors import ConfigurationError

from .context import stringify

LOGICAL_OPERATORS = frozenset({"and", "or", "not", "xor"})
COMPARISON_OPERATORS = frozenset({"eq", "ne", "gt", "gte", "lt", "lte"})
INCLUSION_OPERATORS = frozenset({"in", "nin"})
STRING_OPERATORS = frozenset({"contains", "startsWith", "endsWith"})
BUILTIN_OPERATORS = (
    LOGICAL_OPERATORS
    | COMPARISON_OPERATORS
    | INCLUSION_OPERATORS
    | STRING_OPERATORS
    | {"matches", "between", "exists", "function"}
)

CustomOperator = Callable[[dict[str, Any], Any], Any]
CustomFunction = Callable[..., Any]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _length(value: Any) -> int:
    return len(stringify(value))


def builtin_functions() -> dict[str, CustomFunction]:
    return {
        "abs": abs,
        "ceil": math.ceil,
        "floor": math.floor,
        "round": _round_half_up,
        "max": lambda *values: max(values),
        "min": lambda *values: min(values),
        "length": _length,
        "upper": lambda value: str(value).upper(),
        "lower": lambda value: str(value).lower(),
        "trim": lambda value: str(value).strip(),
        "size": lambda value: len(value) if isinstance(value, list) else 0,
        "includes": lambda values, item: item in values if isinstance(values, list) else False,
        "now": lambda: int(time.time() * 1000),
        "today": lambda: datetime.now(timezone.utc).date().isoformat(),
        "isString": lambda value: isinstance(value, str),
        "isNumber": _is_number,
        "isBoolean": lambda value: isinstance(value, bool),
        "isArray": lambda value: isinstance(value, list),
        "isObject": lambda value: isinstance(value, dict),
        "isNull": lambda value=None: value is None,
        "isUndefined": lambda value=None: value is None,
    }


class OperatorRegistry:
    """Built-in and caller-registered functions and operators consulted by the evaluator."""

    def __init__(self, include_builtins: bool = True) -> None:
        self._builtins: dict[str, CustomFunction] = builtin_functions() if include_builtins else {}
        self._functions: dict[str, CustomFunction] = {}
        self._operators: dict[str, CustomOperator] = {}
        self._lock = threading.Lock()

    def register_function(self, name: str, fn: CustomFunction) -> None:
        if not name or not callable(fn):
            raise ConfigurationError(f"Custom function {name!r} must be a named callable")
        with self._lock:
            self._functions[name] = fn

    def unregister_function(self, name: str) -> bool:
        with self._lock:
            return self._functions.pop(name, None) is not None

    def register_operator(self, name: str, fn: CustomOperator) -> None:
        if not name or not callable(fn):
            raise ConfigurationError(f"Custom operator {name!r} must be a named callable")
        if name in BUILTIN_OPERATORS:
            raise ConfigurationError(f"Cannot override built-in operator: {name}")
        with self._lock:
            self._operators[name] = fn

    def unregister_operator(self, name: str) -> bool:
        with self._lock:
            return self._operators.pop(name, None) is not None

    def builtin_function(self, name: str) -> CustomFunction | None:
        return self._builtins.get(name)

    def custom_function(self, name: str) -> CustomFunction | None:
        with self._lock:
            return self._functions.get(name)

    def custom_operator(self, name: str) -> CustomOperator | None:
        with self._lock:
            return self._operators.get(name)

    def has_function(self, name: str) -> bool:
        return self.builtin_function(name) is not None or self.custom_function(name) is not None

    def is_known_operator(self, name: str) -> bool:
        return name in BUILTIN_OPERATORS or self.custom_operator(name) is not None

    def function_names(self) -> list[str]:
        with self._lock:
            return sorted(set(self._builtins) | set(self._functions))

    def operator_names(self) -> list[str]:
        with self._lock:
            return sorted(BUILTIN_OPERATORS | set(self._operators))
