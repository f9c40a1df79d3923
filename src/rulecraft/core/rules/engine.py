from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from rulecraft.core.cache.evaluation import EvaluationCache
from rulecraft.core.config.settings import ExecutionMode, RuleEngineSettings
from rulecraft.core.errors import ConfigurationError
from rulecraft.core.logging.context import log_context
from rulecraft.core.scheduler.maintenance import CacheMaintenanceScheduler

from .actions import ActionExecutor
from .conditions import ConditionEvaluator
from .context import EvaluationContext, GlobalVariables, RuleScope
from .events import (
    EngineError,
    EvaluationCompleted,
    EventBus,
    RuleCreated,
    RuleDeleted,
    RuleMatched,
    RuleUpdated,
)
from .operators import CustomFunction, CustomOperator, OperatorRegistry
from .registry import RuleRegistry
from .schemas import (
    ConditionResult,
    EvaluationOptions,
    EvaluationReport,
    Rule,
    RuleError,
    RuleFilter,
    RuleGroup,
    RuleMatch,
)
from .selection import MatchLimiter, select_rules
from .timeouts import CancellationToken, TimeoutRunner
from .webhooks import HttpxWebhookTransport, WebhookTransport


logger = logging.getLogger("rulecraft.rules.engine")


class RuleEngine:
    """Registry, evaluator, executor and cache wired together behind one instance.

    Nothing here is module-global: construct an engine and pass it to whoever
    needs to create or evaluate rules.
    """

    def __init__(
        self,
        settings: RuleEngineSettings | None = None,
        events: EventBus | None = None,
        webhook_transport: WebhookTransport | None = None,
        runner: TimeoutRunner | None = None,
    ) -> None:
        self.settings = settings or RuleEngineSettings()
        self.enabled = self.settings.enabled
        self.events = events or EventBus()
        self.runner = runner or TimeoutRunner(max_workers=self.settings.worker_threads)
        self.operators = OperatorRegistry(include_builtins=self.settings.functions.builtin)
        self.global_variables = GlobalVariables(
            self.settings.variables.global_variables,
            readonly=self.settings.variables.readonly,
        )
        self.cache = EvaluationCache(
            max_entries=self.settings.evaluation.cache_max_entries,
            default_ttl_s=self.settings.evaluation.cache_ttl_s,
        )
        self.registry = RuleRegistry(
            operators=self.operators,
            max_rules=self.settings.max_rules,
            max_actions_per_rule=self.settings.actions.max_per_rule,
            max_per_group=self.settings.groups.max_per_group,
            default_priority=self.settings.priorities.default_level,
            default_execution_mode=self.settings.groups.execution_mode,
            allow_unsafe_expressions=self.settings.functions.allow_unsafe_expressions,
            on_change=self.cache.invalidate,
        )
        self.evaluator = ConditionEvaluator(
            operators=self.operators,
            runner=self.runner,
            max_depth=self.settings.max_condition_depth,
            function_timeout_s=self.settings.functions.timeout_s,
            allow_unsafe_expressions=self.settings.functions.allow_unsafe_expressions,
        )
        self.executor = ActionExecutor(
            runner=self.runner,
            events=self.events,
            global_variables=self.global_variables,
            operators=self.operators,
            transport=webhook_transport or HttpxWebhookTransport(),
            timeout_s=self.settings.actions.timeout_s,
        )
        self.maintenance = CacheMaintenanceScheduler(
            self.cache,
            interval_s=self.settings.evaluation.cache_sweep_interval_s,
        )
        self._stats_lock = threading.Lock()
        self._stats: dict[str, float] = {
            "rules_created": 0,
            "evaluations": 0,
            "rules_evaluated": 0,
            "rules_matched": 0,
            "actions_executed": 0,
            "actions_failed": 0,
            "errors": 0,
            "total_evaluation_ms": 0.0,
        }

    # Lifecycle

    def start(self) -> None:
        self.maintenance.start()
        logger.info("rule_engine_started")

    def shutdown(self) -> None:
        self.maintenance.shutdown()
        self.runner.shutdown()
        logger.info("rule_engine_stopped")

    # Rules

    def create_rule(self, definition: Rule | Mapping[str, Any]) -> Rule:
        rule = self.registry.create(definition)
        self._bump("rules_created")
        self.events.publish(RuleCreated(rule_id=rule.id, rule_name=rule.name))
        return rule

    def update_rule(self, rule_id: str, partial: Mapping[str, Any]) -> Rule:
        rule, fields = self.registry.update(rule_id, partial)
        self.events.publish(RuleUpdated(rule_id=rule_id, fields=fields))
        return rule

    def delete_rule(self, rule_id: str) -> bool:
        deleted = self.registry.delete(rule_id)
        self.events.publish(RuleDeleted(rule_id=rule_id))
        return deleted

    def get_rule(self, rule_id: str) -> Rule:
        return self.registry.get(rule_id)

    def list_rules(self, criteria: RuleFilter | Mapping[str, Any] | None = None) -> list[Rule]:
        return self.registry.list_rules(criteria)

    def create_group(
        self,
        name: str,
        execution_mode: ExecutionMode | None = None,
        max_rules: int | None = None,
    ) -> RuleGroup:
        return self.registry.create_group(name, execution_mode=execution_mode, max_rules=max_rules)

    def get_group(self, name: str) -> RuleGroup:
        return self.registry.get_group(name)

    def list_groups(self) -> list[RuleGroup]:
        return self.registry.list_groups()

    # Extension points

    def register_operator(self, name: str, fn: CustomOperator) -> None:
        self.operators.register_operator(name, fn)

    def register_function(self, name: str, fn: CustomFunction) -> None:
        self.operators.register_function(name, fn)

    def unregister_operator(self, name: str) -> bool:
        return self.operators.unregister_operator(name)

    def unregister_function(self, name: str) -> bool:
        return self.operators.unregister_function(name)

    # Global variables

    def set_global_variable(self, name: str, value: Any) -> None:
        if name in self.global_variables.readonly:
            raise ConfigurationError(f"Variable is read-only: {name}")
        self.global_variables.set(name, value)

    def get_global_variable(self, name: str, default: Any = None) -> Any:
        return self.global_variables.get(name, default)

    def delete_global_variable(self, name: str) -> bool:
        if name in self.global_variables.readonly:
            raise ConfigurationError(f"Variable is read-only: {name}")
        return self.global_variables.delete(name)

    def global_variables_snapshot(self) -> dict[str, Any]:
        return self.global_variables.snapshot()

    # Evaluation

    def evaluate_rules(
        self,
        context: EvaluationContext | Mapping[str, Any] | None = None,
        options: EvaluationOptions | Mapping[str, Any] | None = None,
    ) -> EvaluationReport:
        ctx = EvaluationContext.from_input(context)
        opts = _coerce_options(options)
        report = EvaluationReport()
        if not self.enabled:
            report.variables = dict(ctx.variables)
            return report

        started = time.perf_counter()
        correlation_id = ctx.metadata.get("correlation_id")
        with log_context(
            correlation_id=str(correlation_id) if correlation_id else None,
            evaluation_id=report.evaluation_id,
        ):
            logger.info("rules_evaluation_started")
            evaluation_token = CancellationToken(reason="evaluation")
            candidates = select_rules(self.registry.snapshot(), opts)
            limiter = MatchLimiter(opts, self.registry.first_match_groups())
            for rule in candidates:
                if limiter.exhausted():
                    break
                if limiter.skips(rule):
                    continue
                with log_context(rule_id=rule.id):
                    match = self._evaluate_rule(rule, ctx, report, evaluation_token)
                if match is not None:
                    limiter.record_match(rule)

            report.variables = dict(ctx.variables)
            report.duration_ms = (time.perf_counter() - started) * 1000
            self._record_report(report)
            logger.info(
                "rules_evaluation_completed",
                extra={
                    "extra_fields": {
                        "evaluated_count": report.evaluated_count,
                        "matched_count": report.matched_count,
                        "failed_actions": report.failed_actions,
                        "error_count": len(report.errors),
                    }
                },
            )
        self.events.publish(
            EvaluationCompleted(
                evaluation_id=report.evaluation_id,
                evaluated_count=report.evaluated_count,
                matched_count=report.matched_count,
                executed_actions=report.executed_actions,
                failed_actions=report.failed_actions,
                error_count=len(report.errors),
                duration_ms=report.duration_ms,
            )
        )
        return report

    def _evaluate_rule(
        self,
        rule: Rule,
        ctx: EvaluationContext,
        report: EvaluationReport,
        evaluation_token: CancellationToken,
    ) -> RuleMatch | None:
        started = time.perf_counter()
        scope = ctx.scope(self.global_variables.snapshot(), rule.variables)
        timeout_s = rule.config.timeout_s or self.settings.evaluation.timeout_s
        try:
            condition, cache_hit = self._evaluate_conditions(
                rule,
                scope,
                evaluation_token.child(timeout_s, reason=f"rule {rule.id}"),
            )
        except Exception as exc:
            logger.warning(
                "rule_evaluation_failed",
                extra={"extra_fields": {"error_type": type(exc).__name__, "error": str(exc)}},
            )
            report.errors.append(
                RuleError(rule_id=rule.id, rule_name=rule.name, error=str(exc), error_type=type(exc).__name__)
            )
            self.events.publish(
                EngineError(
                    evaluation_id=report.evaluation_id,
                    rule_id=rule.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            )
            return None

        report.evaluated_count += 1
        if not condition.matched:
            self.registry.record_evaluation(rule.id, (time.perf_counter() - started) * 1000, matched=False)
            return None

        action_results = self.executor.run(rule.actions, scope, evaluation_token, rule_id=rule.id)
        executed = sum(1 for result in action_results if result.status == "success")
        failed = sum(1 for result in action_results if result.status == "failed")
        duration_ms = (time.perf_counter() - started) * 1000
        match = RuleMatch(
            rule_id=rule.id,
            rule_name=rule.name,
            priority=rule.priority,
            condition_trace=condition.trace,
            action_results=action_results,
            duration_ms=duration_ms,
            cache_hit=cache_hit,
        )
        report.matches.append(match)
        report.matched_count += 1
        report.executed_actions += executed
        report.failed_actions += failed
        self.registry.record_evaluation(
            rule.id,
            duration_ms,
            matched=True,
            actions_executed=executed,
            actions_failed=failed,
        )
        logger.info(
            "rule_matched",
            extra={"extra_fields": {"priority": rule.priority, "executed": executed, "failed": failed}},
        )
        self.events.publish(
            RuleMatched(
                evaluation_id=report.evaluation_id,
                rule_id=rule.id,
                rule_name=rule.name,
                priority=rule.priority,
                cache_hit=cache_hit,
            )
        )
        return match

    def _evaluate_conditions(
        self,
        rule: Rule,
        scope: RuleScope,
        token: CancellationToken,
    ) -> tuple[ConditionResult, bool]:
        if not self.settings.evaluation.cache_results:
            return self.evaluator.evaluate(rule.conditions, scope, token), False
        variables = scope.snapshot()
        cached = self.cache.get(rule.id, scope.data, variables, revision=rule.revision)
        if isinstance(cached, ConditionResult):
            return cached.model_copy(deep=True), True
        result = self.evaluator.evaluate(rule.conditions, scope, token)
        self.cache.put(rule.id, scope.data, variables, result.model_copy(deep=True), revision=rule.revision)
        return result, False

    # Introspection

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("evaluation_cache_cleared", extra={"extra_fields": {"reason": "manual"}})

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            stats: dict[str, Any] = dict(self._stats)
        evaluated = stats["rules_evaluated"]
        stats["average_evaluation_ms"] = stats["total_evaluation_ms"] / stats["evaluations"] if stats["evaluations"] else 0.0
        stats["match_rate"] = stats["rules_matched"] / evaluated if evaluated else 0.0
        stats["rules"] = self.registry.counts()
        stats["cache"] = {
            "enabled": self.settings.evaluation.cache_results,
            "size": len(self.cache),
            "hits": self.cache.hits,
            "misses": self.cache.misses,
            "hit_rate": self.cache.hit_rate(),
        }
        stats["global_variables"] = len(self.global_variables.snapshot())
        stats["enabled"] = self.enabled
        return stats

    def _bump(self, key: str, amount: float = 1) -> None:
        with self._stats_lock:
            self._stats[key] += amount

    def _record_report(self, report: EvaluationReport) -> None:
        with self._stats_lock:
            self._stats["evaluations"] += 1
            self._stats["rules_evaluated"] += report.evaluated_count
            self._stats["rules_matched"] += report.matched_count
            self._stats["actions_executed"] += report.executed_actions
            self._stats["actions_failed"] += report.failed_actions
            self._stats["errors"] += len(report.errors)
            self._stats["total_evaluation_ms"] += report.duration_ms


def _coerce_options(options: EvaluationOptions | Mapping[str, Any] | None) -> EvaluationOptions:
    if options is None:
        return EvaluationOptions()
    if isinstance(options, EvaluationOptions):
        return options
    try:
        return EvaluationOptions.model_validate(dict(options))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid evaluation options: {exc}") from exc
