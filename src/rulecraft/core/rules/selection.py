from __future__ import annotations

from collections.abc import Iterable

from .schemas import PRIORITY_RANK, EvaluationOptions, Rule, RuleFilter


def matches_filter(rule: Rule, criteria: RuleFilter | EvaluationOptions) -> bool:
    if criteria.rule_ids is not None and rule.id not in set(criteria.rule_ids):
        return False
    if criteria.groups is not None and (rule.group is None or rule.group not in set(criteria.groups)):
        return False
    if criteria.priority is not None and rule.priority != criteria.priority:
        return False
    if criteria.tags is not None and not set(criteria.tags) & set(rule.tags):
        return False
    enabled = getattr(criteria, "enabled", None)
    if enabled is not None and rule.enabled != enabled:
        return False
    return True


def order_by_priority(rules: Iterable[Rule]) -> list[Rule]:
    # sorted() is stable, so equal priorities keep registration order.
    return sorted(rules, key=lambda rule: PRIORITY_RANK.get(rule.priority, PRIORITY_RANK["normal"]))


def select_rules(rules: Iterable[Rule], options: EvaluationOptions) -> list[Rule]:
    """Enabled rules matching every supplied criterion, highest priority first."""
    return order_by_priority(rule for rule in rules if rule.enabled and matches_filter(rule, options))


class MatchLimiter:
    """Decides when the per-rule loop stops and which group members are skipped."""

    def __init__(self, options: EvaluationOptions, first_match_groups: Iterable[str] = ()) -> None:
        self.stop_on_first_match = options.stop_on_first_match
        self.max_matches = options.max_matches or None
        self.first_match_groups = set(first_match_groups)
        self.matched_groups: set[str] = set()
        self.matches = 0

    def exhausted(self) -> bool:
        if self.max_matches is not None and self.matches >= self.max_matches:
            return True
        return self.stop_on_first_match and self.matches > 0

    def skips(self, rule: Rule) -> bool:
        return rule.group is not None and rule.group in self.matched_groups

    def record_match(self, rule: Rule) -> None:
        self.matches += 1
        if rule.group is not None and rule.group in self.first_match_groups:
            self.matched_groups.add(rule.group)
