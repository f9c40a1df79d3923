"""Configuration loader for the rule engine."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from rulecraft.core.errors import ConfigurationError

Priority = Literal["critical", "high", "normal", "low"]
ExecutionMode = Literal["sequential", "parallel", "first-match"]

_TRUE_VALUES = {"1", "true", "yes", "on"}


class EvaluationSettings(BaseModel):
    timeout_s: float = 5.0
    cache_results: bool = True
    cache_max_entries: int = 1000
    cache_ttl_s: int = 300
    cache_sweep_interval_s: int = 300


class FunctionSettings(BaseModel):
    builtin: bool = True
    allow_unsafe_expressions: bool = False
    timeout_s: float = 1.0


class VariableSettings(BaseModel):
    global_variables: dict[str, Any] = Field(default_factory=dict)
    readonly: list[str] = Field(default_factory=list)


class ActionSettings(BaseModel):
    max_per_rule: int = 10
    timeout_s: float = 30.0


class PrioritySettings(BaseModel):
    default_level: Priority = "normal"


class GroupSettings(BaseModel):
    max_per_group: int = 100
    execution_mode: ExecutionMode = "sequential"


class RuleEngineSettings(BaseModel):
    enabled: bool = True
    max_rules: int = 1000
    max_condition_depth: int = 10
    worker_threads: int = 8
    evaluation: EvaluationSettings = Field(default_factory=EvaluationSettings)
    functions: FunctionSettings = Field(default_factory=FunctionSettings)
    variables: VariableSettings = Field(default_factory=VariableSettings)
    actions: ActionSettings = Field(default_factory=ActionSettings)
    priorities: PrioritySettings = Field(default_factory=PrioritySettings)
    groups: GroupSettings = Field(default_factory=GroupSettings)

    @field_validator("max_rules", "max_condition_depth", "worker_threads")
    @classmethod
    def _must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than 0")
        return value


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().casefold() in _TRUE_VALUES


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    merged = dict(data)
    evaluation = dict(merged.get("evaluation") or {})
    functions = dict(merged.get("functions") or {})
    actions = dict(merged.get("actions") or {})

    merged["max_rules"] = _get_int_env("RULECRAFT_MAX_RULES", int(merged.get("max_rules", 1000)))
    merged["max_condition_depth"] = _get_int_env(
        "RULECRAFT_MAX_CONDITION_DEPTH", int(merged.get("max_condition_depth", 10))
    )
    evaluation["cache_results"] = _get_bool_env("RULECRAFT_CACHE_RESULTS", bool(evaluation.get("cache_results", True)))
    functions["allow_unsafe_expressions"] = _get_bool_env(
        "RULECRAFT_ALLOW_UNSAFE_EXPRESSIONS", bool(functions.get("allow_unsafe_expressions", False))
    )
    functions["timeout_s"] = _get_float_env("RULECRAFT_FUNCTION_TIMEOUT_S", float(functions.get("timeout_s", 1.0)))
    actions["timeout_s"] = _get_float_env("RULECRAFT_ACTION_TIMEOUT_S", float(actions.get("timeout_s", 30.0)))

    merged["evaluation"] = evaluation
    merged["functions"] = functions
    merged["actions"] = actions
    return merged


def load_settings(path: Optional[str | Path] = None) -> RuleEngineSettings:
    """Load engine settings from an optional YAML file plus RULECRAFT_* overrides."""
    data: dict[str, Any] = {}
    if path is not None:
        cfg_path = Path(path)
        if cfg_path.exists():
            with cfg_path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
            if not isinstance(loaded, dict):
                raise ConfigurationError(f"Settings file must contain a mapping: {cfg_path}")
            data = loaded
    try:
        return RuleEngineSettings.model_validate(_apply_env_overrides(data))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid rule engine settings: {exc}") from exc
