from __future__ import annotations

import pytest

from rulecraft.core.errors import ConfigurationError, NotFoundError
from rulecraft.core.rules.operators import OperatorRegistry
from rulecraft.core.rules.registry import RuleRegistry


def _registry(**kwargs) -> RuleRegistry:
    return RuleRegistry(OperatorRegistry(), **kwargs)


def test_create_assigns_id_defaults_and_zero_stats() -> None:
    registry = _registry(default_priority="low")

    rule = registry.create({"name": "r", "conditions": True})

    assert rule.id
    assert rule.priority == "low"
    assert rule.stats.evaluations == 0
    assert rule.metadata.created_by == "system"
    assert registry.get(rule.id).name == "r"


def test_create_accepts_top_level_config_shortcuts() -> None:
    registry = _registry()

    rule = registry.create({"id": "r1", "priority": "high", "group": "billing", "tags": ["a"], "timeout_s": 2})

    assert (rule.priority, rule.group, rule.tags, rule.config.timeout_s) == ("high", "billing", ["a"], 2)


def test_create_rejects_duplicates_capacity_and_bad_shapes() -> None:
    registry = _registry(max_rules=2, max_actions_per_rule=1)
    registry.create({"id": "a"})

    with pytest.raises(ConfigurationError):
        registry.create({"id": "a"})
    with pytest.raises(ConfigurationError):
        registry.create({"id": "b", "conditions": {"operator": "xor", "conditions": [True]}})
    with pytest.raises(ConfigurationError):
        registry.create({"id": "b", "actions": [{"type": "log"}, {"type": "log"}]})
    with pytest.raises(ConfigurationError):
        registry.create({"id": "b", "priority": "urgent"})

    registry.create({"id": "b"})
    with pytest.raises(ConfigurationError):
        registry.create({"id": "c"})


def test_groups_are_created_capped_and_removed_when_empty() -> None:
    registry = _registry(max_per_group=2)
    registry.create({"id": "a", "group": "g"})
    registry.create({"id": "b", "group": "g"})

    with pytest.raises(ConfigurationError):
        registry.create({"id": "c", "group": "g"})
    assert registry.get_group("g").rule_ids == ["a", "b"]

    registry.delete("a")
    assert registry.get_group("g").rule_ids == ["b"]
    registry.delete("b")
    with pytest.raises(NotFoundError):
        registry.get_group("g")


def test_explicit_group_settings_are_kept() -> None:
    registry = _registry()
    registry.create_group("fraud", execution_mode="first-match", max_rules=1)
    registry.create({"id": "a", "group": "fraud"})

    with pytest.raises(ConfigurationError):
        registry.create({"id": "b", "group": "fraud"})
    with pytest.raises(ConfigurationError):
        registry.create_group("fraud")
    assert registry.first_match_groups() == ["fraud"]


def test_update_applies_allow_listed_fields_and_moves_groups() -> None:
    changed: list[str] = []
    registry = _registry(on_change=changed.append)
    created = registry.create({"id": "a", "name": "old", "group": "g1", "tags": ["x"]})

    updated, fields = registry.update(
        "a",
        {"name": "new", "group": "g2", "stats": {"evaluations": 99}, "id": "hijack", "metadata": {"version": "9"}},
    )

    assert fields == ["config", "name"]
    assert updated.id == "a"
    assert updated.name == "new"
    assert updated.group == "g2"
    assert updated.tags == ["x"]
    assert updated.stats.evaluations == 0
    assert updated.metadata.version == "1.0.0"
    assert updated.metadata.created_at_iso == created.metadata.created_at_iso
    assert [group.name for group in registry.list_groups()] == ["g2"]
    assert changed == ["a"]


def test_update_revalidates_conditions_and_unknown_ids() -> None:
    registry = _registry()
    registry.create({"id": "a"})

    with pytest.raises(ConfigurationError):
        registry.update("a", {"conditions": {"operator": "between", "left": 1, "right": [1]}})
    with pytest.raises(NotFoundError):
        registry.update("missing", {"name": "x"})
    with pytest.raises(NotFoundError):
        registry.delete("missing")
    with pytest.raises(NotFoundError):
        registry.get("missing")


def test_list_rules_filters() -> None:
    registry = _registry()
    registry.create({"id": "a", "priority": "high", "group": "g", "tags": ["billing", "eu"]})
    registry.create({"id": "b", "priority": "low", "tags": ["eu"], "enabled": False})
    registry.create({"id": "c", "priority": "high", "tags": ["us"]})

    def ids(criteria) -> list[str]:
        return [rule.id for rule in registry.list_rules(criteria)]

    assert ids(None) == ["a", "b", "c"]
    assert ids({"priority": "high"}) == ["a", "c"]
    assert ids({"tags": ["eu", "apac"]}) == ["a", "b"]
    assert ids({"groups": ["g"]}) == ["a"]
    assert ids({"enabled": False}) == ["b"]
    assert ids({"rule_ids": ["c", "a"], "tags": ["us"]}) == ["c"]


def test_returned_rules_are_copies() -> None:
    registry = _registry()
    rule = registry.create({"id": "a", "tags": ["x"]})

    rule.tags.append("mutated")
    registry.get("a").tags.append("mutated")

    assert registry.get("a").tags == ["x"]


def test_snapshot_is_unaffected_by_later_updates() -> None:
    registry = _registry()
    registry.create({"id": "a", "conditions": True})
    snapshot = registry.snapshot()

    registry.update("a", {"conditions": False})

    assert snapshot[0].conditions is True
    assert registry.get("a").conditions is False


def test_record_evaluation_keeps_running_average() -> None:
    registry = _registry()
    registry.create({"id": "a"})

    registry.record_evaluation("a", 10.0, matched=True, actions_executed=2, actions_failed=1)
    registry.record_evaluation("a", 20.0, matched=False)

    stats = registry.get("a").stats
    assert stats.evaluations == 2
    assert stats.matches == 1
    assert stats.actions_executed == 2
    assert stats.actions_failed == 1
    assert stats.average_evaluation_ms == 15.0
    assert stats.last_matched_iso is not None


def test_update_bumps_revision() -> None:
    registry = _registry()
    assert registry.create({"id": "a", "revision": 7}).revision == 0

    updated, _ = registry.update("a", {"name": "renamed"})

    assert updated.revision == 1
    assert registry.get("a").revision == 1


def test_caller_dicts_are_not_shared_with_stored_rules() -> None:
    registry = _registry()
    conditions = {"operator": "eq", "left": "${x}", "right": 1}
    variables = {"limit": [1, 2]}
    registry.create({"id": "a", "conditions": conditions, "variables": variables})

    conditions["operator"] = "nope"
    variables["limit"].append(3)

    stored = registry.get("a")
    assert stored.conditions["operator"] == "eq"
    assert stored.variables == {"limit": [1, 2]}

    replacement = {"operator": "gt", "left": "${x}", "right": 5}
    registry.update("a", {"conditions": replacement})
    replacement["right"] = 500

    assert registry.get("a").conditions["right"] == 5
