from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from rulecraft.core.errors import ConfigurationError
from rulecraft.core.logging.context import log_context

from .context import MISSING, GlobalVariables, RuleScope
from .events import ActionExecuted, ActionFailed, EventBus, NotificationRequested, WorkflowRequested
from .operators import OperatorRegistry
from .schemas import Action, ActionResult
from .timeouts import CancellationToken, TimeoutRunner
from .webhooks import WebhookRequest, WebhookTransport


logger = logging.getLogger("rulecraft.rules.actions")

_LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
_VARIABLE_OPERATIONS = ("set", "delete", "increment")
_VARIABLE_SCOPES = ("local", "global")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_actions(actions: list[Any] | None, max_per_rule: int) -> list[Action]:
    """Coerce and shape-check an action list; raises ConfigurationError on the first problem."""
    raw = list(actions or [])
    if len(raw) > max_per_rule:
        raise ConfigurationError(f"Too many actions: {len(raw)} > {max_per_rule}")
    validated: list[Action] = []
    for index, item in enumerate(raw):
        try:
            action = item if isinstance(item, Action) else Action.model_validate(item)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid action at position {index}: {exc}") from exc
        _validate_action_config(action)
        validated.append(action)
    return validated


def _validate_action_config(action: Action) -> None:
    config = action.config
    if action.type == "log":
        level = str(config.get("level", "info")).lower()
        if level not in _LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level: {level}")
    elif action.type == "variable":
        if not isinstance(config.get("name"), str) or not config["name"]:
            raise ConfigurationError("Variable action requires a name")
        if config.get("operation", "set") not in _VARIABLE_OPERATIONS:
            raise ConfigurationError(f"Unknown variable operation: {config.get('operation')}")
        if config.get("scope", "local") not in _VARIABLE_SCOPES:
            raise ConfigurationError(f"Unknown variable scope: {config.get('scope')}")
    elif action.type == "webhook":
        if not isinstance(config.get("url"), str) or not config["url"]:
            raise ConfigurationError("Webhook action requires a url")
    elif action.type == "workflow":
        if not (config.get("workflow_id") or config.get("workflowId")):
            raise ConfigurationError("Workflow action requires a workflow_id")
    elif action.type == "custom":
        fn = config.get("function")
        if not (callable(fn) or (isinstance(fn, str) and fn)):
            raise ConfigurationError("Custom action requires a function or registered function name")


class ActionExecutor:
    """Runs a rule's actions in order; a failing action never stops the ones after it."""

    def __init__(
        self,
        runner: TimeoutRunner,
        events: EventBus,
        global_variables: GlobalVariables,
        operators: OperatorRegistry,
        transport: WebhookTransport | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self.runner = runner
        self.events = events
        self.global_variables = global_variables
        self.operators = operators
        self.transport = transport
        self.timeout_s = timeout_s
        self._handlers: dict[str, Callable[[Action, dict[str, Any], RuleScope, CancellationToken, str | None], dict[str, Any]]] = {
            "log": self._log,
            "variable": self._variable,
            "webhook": self._webhook,
            "notification": self._notification,
            "workflow": self._workflow,
            "custom": self._custom,
        }

    def run(
        self,
        actions: list[Action],
        scope: RuleScope,
        token: CancellationToken | None = None,
        rule_id: str | None = None,
    ) -> list[ActionResult]:
        token = token or CancellationToken(reason="actions")
        return [self.execute(action, scope, token, rule_id) for action in actions]

    def execute(
        self,
        action: Action,
        scope: RuleScope,
        token: CancellationToken,
        rule_id: str | None = None,
    ) -> ActionResult:
        if not action.enabled:
            return ActionResult(action_id=action.id, action_type=action.type, status="skipped")

        started = time.perf_counter()
        with log_context(action_id=action.id):
            try:
                timeout_s = action.config.get("timeout_s", self.timeout_s)
                action_token = token.child(float(timeout_s), reason=f"{action.type} action")
                action_token.raise_if_cancelled()
                # Resolved immediately before running so earlier actions' writes are visible.
                config = scope.resolve(action.config)
                result = self._handlers[action.type](action, config, scope, action_token, rule_id)
            except Exception as exc:
                duration_ms = (time.perf_counter() - started) * 1000
                logger.warning(
                    "action_failed",
                    extra={
                        "extra_fields": {
                            "action_type": action.type,
                            "error_type": type(exc).__name__,
                            "error": str(exc),
                        }
                    },
                )
                self.events.publish(
                    ActionFailed(
                        rule_id=rule_id,
                        action_id=action.id,
                        action_type=action.type,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                )
                return ActionResult(
                    action_id=action.id,
                    action_type=action.type,
                    status="failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    duration_ms=duration_ms,
                )

        duration_ms = (time.perf_counter() - started) * 1000
        self.events.publish(
            ActionExecuted(rule_id=rule_id, action_id=action.id, action_type=action.type, duration_ms=duration_ms)
        )
        return ActionResult(
            action_id=action.id,
            action_type=action.type,
            status="success",
            result=result,
            duration_ms=duration_ms,
        )

    def _log(
        self,
        action: Action,
        config: dict[str, Any],
        scope: RuleScope,
        token: CancellationToken,
        rule_id: str | None,
    ) -> dict[str, Any]:
        level = str(config.get("level", "info")).lower()
        message = str(config.get("message", ""))
        logger.log(
            _LOG_LEVELS.get(level, logging.INFO),
            message,
            extra={"extra_fields": {"rule_action": "log", "data": config.get("data")}},
        )
        return {"level": level, "message": message}

    def _variable(
        self,
        action: Action,
        config: dict[str, Any],
        scope: RuleScope,
        token: CancellationToken,
        rule_id: str | None,
    ) -> dict[str, Any]:
        name = str(config["name"])
        operation = config.get("operation", "set")
        is_global = config.get("scope", "local") == "global"
        if name in self.global_variables.readonly:
            raise ConfigurationError(f"Variable is read-only: {name}")

        previous = self.global_variables.get(name, MISSING) if is_global else scope.variables.get(name, MISSING)
        if operation == "set":
            value = config.get("value")
        elif operation == "increment":
            base = 0 if previous is MISSING or previous is None else previous
            amount = config.get("amount", config.get("value", 1))
            if not _is_number(base) or not _is_number(amount):
                raise ConfigurationError(f"Cannot increment non-numeric variable: {name}")
            value = base + amount
        else:
            value = MISSING

        if is_global:
            if value is MISSING:
                self.global_variables.delete(name)
                scope.global_layer.pop(name, None)
            else:
                self.global_variables.set(name, value)
                scope.global_layer[name] = value
        elif value is MISSING:
            for layer in scope.variables.maps[:-1]:
                layer.pop(name, None)
        else:
            scope.writable[name] = value

        return {
            "name": name,
            "operation": operation,
            "scope": "global" if is_global else "local",
            "previous": None if previous is MISSING else previous,
            "value": None if value is MISSING else value,
        }

    def _webhook(
        self,
        action: Action,
        config: dict[str, Any],
        scope: RuleScope,
        token: CancellationToken,
        rule_id: str | None,
    ) -> dict[str, Any]:
        transport = self.transport
        if transport is None:
            raise ConfigurationError("No webhook transport configured")
        request = WebhookRequest(
            method=str(config.get("method", "POST")).upper(),
            url=config["url"],
            headers={str(key): str(value) for key, value in (config.get("headers") or {}).items()},
            body=config.get("body", config.get("payload")),
            timeout_s=config.get("request_timeout_s"),
            retries=int(config.get("retries", 0)),
            redact_url=bool(config.get("redact_url", False)),
        )
        return self.runner.run(lambda: transport.send(request, token), token)

    def _notification(
        self,
        action: Action,
        config: dict[str, Any],
        scope: RuleScope,
        token: CancellationToken,
        rule_id: str | None,
    ) -> dict[str, Any]:
        event = NotificationRequested(
            rule_id=rule_id,
            action_id=action.id,
            channel=str(config.get("channel", "default")),
            recipient=config.get("recipient"),
            title=str(config.get("title", "")),
            message=str(config.get("message", "")),
            payload=dict(config.get("payload") or config.get("data") or {}),
        )
        self.events.publish(event)
        return {"event": "notification", "channel": event.channel, "recipient": event.recipient}

    def _workflow(
        self,
        action: Action,
        config: dict[str, Any],
        scope: RuleScope,
        token: CancellationToken,
        rule_id: str | None,
    ) -> dict[str, Any]:
        workflow_id = str(config.get("workflow_id") or config.get("workflowId"))
        context = config.get("context")
        if context is None:
            context = {"data": dict(scope.data), "variables": scope.snapshot()}
        self.events.publish(
            WorkflowRequested(rule_id=rule_id, action_id=action.id, workflow_id=workflow_id, context=dict(context))
        )
        return {"event": "workflow", "workflow_id": workflow_id}

    def _custom(
        self,
        action: Action,
        config: dict[str, Any],
        scope: RuleScope,
        token: CancellationToken,
        rule_id: str | None,
    ) -> dict[str, Any]:
        fn = config.get("function")
        if isinstance(fn, str):
            name = fn
            fn = self.operators.custom_function(name)
            if fn is None:
                raise ConfigurationError(f"Unknown function: {name}")
        parameters = dict(config.get("parameters") or {})
        result = self.runner.run(lambda: fn(parameters, scope), token)
        return {"result": result}
