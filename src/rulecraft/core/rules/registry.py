from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from rulecraft.core.config.settings import ExecutionMode, Priority
from rulecraft.core.errors import ConfigurationError, NotFoundError

from .actions import validate_actions
from .conditions import validate_condition
from .operators import OperatorRegistry
from .schemas import Rule, RuleFilter, RuleGroup, RuleMetadata, RuleStats, now_iso
from .selection import matches_filter


logger = logging.getLogger("rulecraft.rules.registry")

_UPDATABLE_FIELDS = ("name", "description", "enabled", "config", "conditions", "actions", "variables")
_CONFIG_SHORTCUTS = ("priority", "group", "tags", "timeout_s", "retry_on_failure")
_OWNED_FIELDS = ("conditions", "actions", "variables")


class RuleRegistry:
    """Owns Rule and group records. Stored rules are replaced, never mutated, on update."""

    def __init__(
        self,
        operators: OperatorRegistry,
        max_rules: int = 1000,
        max_actions_per_rule: int = 10,
        max_per_group: int = 100,
        default_priority: Priority = "normal",
        default_execution_mode: ExecutionMode = "sequential",
        allow_unsafe_expressions: bool = False,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        self.operators = operators
        self.max_rules = max_rules
        self.max_actions_per_rule = max_actions_per_rule
        self.max_per_group = max_per_group
        self.default_priority = default_priority
        self.default_execution_mode = default_execution_mode
        self.allow_unsafe_expressions = allow_unsafe_expressions
        self.on_change = on_change
        self._rules: dict[str, Rule] = {}
        self._groups: dict[str, RuleGroup] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)

    def create(self, definition: Rule | Mapping[str, Any]) -> Rule:
        raw = definition.model_dump() if isinstance(definition, Rule) else dict(definition)
        raw = _own_nested(_fold_config_shortcuts(raw))
        config = dict(raw.get("config") or {})
        config.setdefault("priority", self.default_priority)
        raw["config"] = config
        raw.pop("stats", None)
        raw["revision"] = 0
        raw["metadata"] = _fresh_metadata(raw.get("metadata"))

        self._validate_parts(raw)
        rule = _build_rule(raw)

        with self._lock:
            if rule.id in self._rules:
                raise ConfigurationError(f"Rule already exists: {rule.id}")
            if len(self._rules) >= self.max_rules:
                raise ConfigurationError(f"Maximum number of rules reached: {self.max_rules}")
            if rule.group is not None:
                self._attach(rule.id, rule.group)
            self._rules[rule.id] = rule

        logger.info("rule_created", extra={"extra_fields": {"rule_id": rule.id, "group": rule.group}})
        return rule.model_copy(deep=True)

    def update(self, rule_id: str, partial: Mapping[str, Any]) -> tuple[Rule, list[str]]:
        changes = _fold_config_shortcuts(dict(partial))
        changes = _own_nested({key: value for key, value in changes.items() if key in _UPDATABLE_FIELDS})
        self._validate_parts(changes)

        with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                raise NotFoundError("Rule", rule_id)
            raw = current.model_dump()
            raw.update({key: value for key, value in changes.items() if key != "config"})
            if "config" in changes:
                raw["config"] = {**raw["config"], **dict(changes["config"] or {})}
            raw["metadata"] = {**raw["metadata"], "updated_at_iso": now_iso()}
            raw["revision"] = current.revision + 1
            updated = _build_rule(raw).model_copy(update={"stats": current.stats})

            if updated.group != current.group:
                if updated.group is not None:
                    self._attach(rule_id, updated.group)
                if current.group is not None:
                    self._detach(rule_id, current.group)
            self._rules[rule_id] = updated

        fields = sorted(changes)
        self._changed(rule_id)
        logger.info("rule_updated", extra={"extra_fields": {"rule_id": rule_id, "fields": fields}})
        return updated.model_copy(deep=True), fields

    def delete(self, rule_id: str) -> bool:
        with self._lock:
            rule = self._rules.pop(rule_id, None)
            if rule is None:
                raise NotFoundError("Rule", rule_id)
            if rule.group is not None:
                self._detach(rule_id, rule.group)
        self._changed(rule_id)
        logger.info("rule_deleted", extra={"extra_fields": {"rule_id": rule_id}})
        return True

    def get(self, rule_id: str) -> Rule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise NotFoundError("Rule", rule_id)
            return rule.model_copy(deep=True)

    def list_rules(self, criteria: RuleFilter | Mapping[str, Any] | None = None) -> list[Rule]:
        criteria = _coerce_filter(criteria)
        with self._lock:
            rules = list(self._rules.values())
        return [rule.model_copy(deep=True) for rule in rules if matches_filter(rule, criteria)]

    def snapshot(self) -> list[Rule]:
        """Shallow copies in registration order; later updates replace, so these stay stable."""
        with self._lock:
            return [rule.model_copy() for rule in self._rules.values()]

    def record_evaluation(
        self,
        rule_id: str,
        duration_ms: float,
        matched: bool,
        actions_executed: int = 0,
        actions_failed: int = 0,
    ) -> None:
        timestamp = now_iso()
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                return
            stats = rule.stats
            evaluations = stats.evaluations + 1
            rule.stats = RuleStats(
                evaluations=evaluations,
                matches=stats.matches + (1 if matched else 0),
                actions_executed=stats.actions_executed + actions_executed,
                actions_failed=stats.actions_failed + actions_failed,
                average_evaluation_ms=stats.average_evaluation_ms + (duration_ms - stats.average_evaluation_ms) / evaluations,
                last_evaluated_iso=timestamp,
                last_matched_iso=timestamp if matched else stats.last_matched_iso,
            )

    def create_group(
        self,
        name: str,
        execution_mode: ExecutionMode | None = None,
        max_rules: int | None = None,
    ) -> RuleGroup:
        if not name:
            raise ConfigurationError("Group name is required")
        with self._lock:
            if name in self._groups:
                raise ConfigurationError(f"Group already exists: {name}")
            try:
                group = RuleGroup(
                    name=name,
                    execution_mode=execution_mode or self.default_execution_mode,
                    max_rules=max_rules if max_rules is not None else self.max_per_group,
                )
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid group {name!r}: {exc}") from exc
            self._groups[name] = group
            return group.model_copy(deep=True)

    def get_group(self, name: str) -> RuleGroup:
        with self._lock:
            group = self._groups.get(name)
            if group is None:
                raise NotFoundError("Group", name)
            return group.model_copy(deep=True)

    def list_groups(self) -> list[RuleGroup]:
        with self._lock:
            return [group.model_copy(deep=True) for group in self._groups.values()]

    def first_match_groups(self) -> list[str]:
        with self._lock:
            return [name for name, group in self._groups.items() if group.execution_mode == "first-match"]

    def counts(self) -> dict[str, int]:
        with self._lock:
            enabled = sum(1 for rule in self._rules.values() if rule.enabled)
            return {
                "total": len(self._rules),
                "enabled": enabled,
                "disabled": len(self._rules) - enabled,
                "groups": len(self._groups),
            }

    def _validate_parts(self, raw: Mapping[str, Any]) -> None:
        if "conditions" in raw:
            validate_condition(raw["conditions"], self.operators, self.allow_unsafe_expressions)
        if "actions" in raw:
            validate_actions(raw["actions"], self.max_actions_per_rule)

    def _attach(self, rule_id: str, group_name: str) -> None:
        group = self._groups.get(group_name)
        if group is None:
            group = RuleGroup(
                name=group_name,
                execution_mode=self.default_execution_mode,
                max_rules=self.max_per_group,
            )
            self._groups[group_name] = group
        if len(group.rule_ids) >= group.max_rules:
            raise ConfigurationError(f"Group {group_name} has reached maximum rules limit")
        group.rule_ids.append(rule_id)

    def _detach(self, rule_id: str, group_name: str) -> None:
        group = self._groups.get(group_name)
        if group is None:
            return
        if rule_id in group.rule_ids:
            group.rule_ids.remove(rule_id)
        if not group.rule_ids:
            del self._groups[group_name]

    def _changed(self, rule_id: str) -> None:
        if self.on_change is not None:
            self.on_change(rule_id)


def _fold_config_shortcuts(raw: dict[str, Any]) -> dict[str, Any]:
    shortcuts = {key: raw.pop(key) for key in _CONFIG_SHORTCUTS if key in raw}
    if shortcuts:
        raw["config"] = {**dict(raw.get("config") or {}), **shortcuts}
    return raw


def _own_nested(raw: dict[str, Any]) -> dict[str, Any]:
    # Callers keep their own dicts; functions and compiled patterns stay shared.
    for key in _OWNED_FIELDS:
        if key in raw:
            raw[key] = copy.deepcopy(raw[key])
    return raw


def _fresh_metadata(metadata: Any) -> dict[str, Any]:
    timestamp = now_iso()
    base = dict(metadata or {})
    base["created_at_iso"] = timestamp
    base["updated_at_iso"] = timestamp
    return RuleMetadata.model_validate(base).model_dump()


def _build_rule(raw: Mapping[str, Any]) -> Rule:
    try:
        rule = Rule.model_validate(dict(raw))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid rule definition: {exc}") from exc
    if rule.config.timeout_s is not None and rule.config.timeout_s <= 0:
        raise ConfigurationError("Rule timeout_s must be positive")
    return rule


def _coerce_filter(criteria: RuleFilter | Mapping[str, Any] | None) -> RuleFilter:
    if criteria is None:
        return RuleFilter()
    if isinstance(criteria, RuleFilter):
        return criteria
    try:
        return RuleFilter.model_validate(dict(criteria))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid rule filter: {exc}") from exc
