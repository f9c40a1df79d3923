from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from rulecraft.core.config.settings import ExecutionMode, Priority

ActionType = Literal["log", "variable", "webhook", "notification", "workflow", "custom"]
ActionStatus = Literal["success", "failed", "skipped"]

PRIORITY_RANK: dict[str, int] = {"critical": 0, "high": 1, "normal": 2, "low": 3}
ACTION_TYPES: tuple[str, ...] = ("log", "variable", "webhook", "notification", "workflow", "custom")

# Condition trees stay plain data: bool | str | dict nodes nested arbitrarily.
ConditionNode = Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Action(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: ActionType = "log"
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


class RuleConfig(BaseModel):
    priority: Priority = "normal"
    group: str | None = None
    tags: list[str] = Field(default_factory=list)
    timeout_s: float | None = None
    retry_on_failure: bool = True


class RuleMetadata(BaseModel):
    created_at_iso: str = Field(default_factory=now_iso)
    updated_at_iso: str = Field(default_factory=now_iso)
    created_by: str = "system"
    version: str = "1.0.0"


class RuleStats(BaseModel):
    evaluations: int = 0
    matches: int = 0
    actions_executed: int = 0
    actions_failed: int = 0
    average_evaluation_ms: float = 0.0
    last_evaluated_iso: str | None = None
    last_matched_iso: str | None = None


class Rule(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = "Unnamed Rule"
    description: str = ""
    enabled: bool = True
    config: RuleConfig = Field(default_factory=RuleConfig)
    conditions: ConditionNode = None
    actions: list[Action] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    metadata: RuleMetadata = Field(default_factory=RuleMetadata)
    stats: RuleStats = Field(default_factory=RuleStats)
    # Bumped by the registry on every update; part of the evaluation cache key.
    revision: int = 0

    @property
    def priority(self) -> str:
        return self.config.priority

    @property
    def group(self) -> str | None:
        return self.config.group

    @property
    def tags(self) -> list[str]:
        return self.config.tags


class RuleGroup(BaseModel):
    name: str
    execution_mode: ExecutionMode = "sequential"
    max_rules: int = 100
    rule_ids: list[str] = Field(default_factory=list)


class RuleFilter(BaseModel):
    rule_ids: list[str] | None = None
    groups: list[str] | None = None
    priority: Priority | None = None
    tags: list[str] | None = None
    enabled: bool | None = None


class EvaluationOptions(BaseModel):
    rule_ids: list[str] | None = None
    groups: list[str] | None = None
    priority: Priority | None = None
    tags: list[str] | None = None
    stop_on_first_match: bool = False
    # 0 and None both mean no limit.
    max_matches: int | None = Field(default=None, ge=0)


class ConditionTrace(BaseModel):
    """One node of the explanation tree for a condition evaluation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: str
    value: bool
    operator: str | None = None
    left: Any = None
    right: Any = None
    field: str | None = None
    name: str | None = None
    args: list[Any] | None = None
    expression: str | None = None
    result: Any = None
    details: list[ConditionTrace] = Field(default_factory=list)


class ConditionResult(BaseModel):
    matched: bool
    trace: ConditionTrace | None = None
    duration_ms: float = 0.0


class ActionResult(BaseModel):
    action_id: str
    action_type: str
    status: ActionStatus
    result: dict[str, Any] | None = None
    error: str | None = None
    error_type: str | None = None
    duration_ms: float = 0.0
    timestamp_iso: str = Field(default_factory=now_iso)


class RuleMatch(BaseModel):
    rule_id: str
    rule_name: str
    priority: str
    condition_trace: ConditionTrace | None = None
    action_results: list[ActionResult] = Field(default_factory=list)
    duration_ms: float = 0.0
    cache_hit: bool = False
    timestamp_iso: str = Field(default_factory=now_iso)


class RuleError(BaseModel):
    rule_id: str
    rule_name: str
    error: str
    error_type: str
    timestamp_iso: str = Field(default_factory=now_iso)


class EvaluationReport(BaseModel):
    evaluation_id: str = Field(default_factory=lambda: str(uuid4()))
    evaluated_count: int = 0
    matched_count: int = 0
    executed_actions: int = 0
    failed_actions: int = 0
    matches: list[RuleMatch] = Field(default_factory=list)
    errors: list[RuleError] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    duration_ms: float = 0.0
