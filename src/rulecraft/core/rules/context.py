from __future__ import annotations

import json
import re
import threading
from collections import ChainMap
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any

from .schemas import now_iso

_REFERENCE_RE = re.compile(r"\$\{([^}]+)\}")
MISSING = object()


@dataclass
class EvaluationContext:
    """Per-call facts and variables a rule's conditions read and its actions mutate.

    ``variables`` holds the caller-supplied layer; ``variable`` actions write
    into it so later actions (and later rules in the same call) see the change.
    """

    data: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp_iso: str = field(default_factory=now_iso)

    @classmethod
    def from_input(cls, context: EvaluationContext | Mapping[str, Any] | None) -> EvaluationContext:
        if isinstance(context, EvaluationContext):
            return context
        raw = dict(context or {})
        return cls(
            data=dict(raw.get("data") or {}),
            variables=dict(raw.get("variables") or {}),
            metadata=dict(raw.get("metadata") or {}),
        )

    def scope(
        self,
        global_variables: Mapping[str, Any] | None = None,
        rule_variables: Mapping[str, Any] | None = None,
    ) -> RuleScope:
        return RuleScope(self, global_variables or {}, rule_variables or {})


class RuleScope:
    """Variable view for one rule: caller layer over rule locals over engine globals."""

    def __init__(
        self,
        context: EvaluationContext,
        global_variables: Mapping[str, Any],
        rule_variables: Mapping[str, Any],
    ) -> None:
        self.context = context
        self.variables: ChainMap[str, Any] = ChainMap(context.variables, dict(rule_variables), dict(global_variables))

    @property
    def data(self) -> dict[str, Any]:
        return self.context.data

    @property
    def metadata(self) -> dict[str, Any]:
        return self.context.metadata

    @property
    def writable(self) -> MutableMapping[str, Any]:
        return self.context.variables

    @property
    def global_layer(self) -> MutableMapping[str, Any]:
        return self.variables.maps[-1]

    def snapshot(self) -> dict[str, Any]:
        return dict(self.variables)

    def has(self, name: str) -> bool:
        return name in self.variables or name in self.data

    def lookup(self, name: str) -> Any:
        """Resolve ``name`` against variables, then data; dotted paths walk nested mappings."""
        if name in self.variables:
            return self.variables[name]
        if name in self.data:
            return self.data[name]
        head, _, rest = name.partition(".")
        if rest:
            if head == "data":
                return _walk(self.data, rest)
            if head in ("variables", "vars"):
                return _walk(self.variables, rest)
            found = _walk(self.variables, name)
            if found is not MISSING:
                return found
            return _walk(self.data, name)
        return MISSING

    def resolve(self, value: Any) -> Any:
        """Interpolate ``${name}`` references inside strings, lists and mappings.

        A string that is exactly one reference yields the referenced value with
        its type intact. Unresolved references are left in place as literal text.
        """
        if isinstance(value, str):
            return self._resolve_string(value)
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        if isinstance(value, tuple):
            return tuple(self.resolve(item) for item in value)
        if isinstance(value, dict):
            return {key: self.resolve(item) for key, item in value.items()}
        return value

    def _resolve_string(self, value: str) -> Any:
        whole = _REFERENCE_RE.fullmatch(value)
        if whole is not None:
            found = self.lookup(whole.group(1).strip())
            return value if found is MISSING else found

        def replace(match: re.Match[str]) -> str:
            found = self.lookup(match.group(1).strip())
            return match.group(0) if found is MISSING else stringify(found)

        return _REFERENCE_RE.sub(replace, value)

    def substitute_literals(self, expression: str) -> str:
        """Replace resolvable references with JSON literals for the expression parser."""

        def replace(match: re.Match[str]) -> str:
            found = self.lookup(match.group(1).strip())
            if found is MISSING:
                return match.group(0)
            return json.dumps(found, default=str, ensure_ascii=False)

        return _REFERENCE_RE.sub(replace, expression)


def stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, ensure_ascii=False)
    return str(value)


def _walk(root: Mapping[str, Any], path: str) -> Any:
    current: Any = root
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return MISSING
    return current


class GlobalVariables:
    """Engine-owned variables shared by every evaluation; guarded for concurrent writers."""

    def __init__(self, initial: Mapping[str, Any] | None = None, readonly: list[str] | None = None) -> None:
        self._values: dict[str, Any] = dict(initial or {})
        self.readonly = frozenset(readonly or [])
        self._lock = threading.Lock()

    def get(self, name: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(name, default)

    def set(self, name: str, value: Any) -> None:
        with self._lock:
            self._values[name] = value

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._values.pop(name, MISSING) is not MISSING

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._values)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._values
