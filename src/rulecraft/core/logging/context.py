from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
evaluation_id_var: ContextVar[str | None] = ContextVar("evaluation_id", default=None)
rule_id_var: ContextVar[str | None] = ContextVar("rule_id", default=None)
action_id_var: ContextVar[str | None] = ContextVar("action_id", default=None)

_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    "correlation_id": correlation_id_var,
    "evaluation_id": evaluation_id_var,
    "rule_id": rule_id_var,
    "action_id": action_id_var,
}


def set_context(**kwargs: str | None) -> dict[str, Token[str | None]]:
    tokens: dict[str, Token[str | None]] = {}
    for key, value in kwargs.items():
        var = _CONTEXT_VARS.get(key)
        if var is None or value is None:
            continue
        tokens[key] = var.set(value)
    return tokens


def reset_context(tokens: dict[str, Token[str | None]]) -> None:
    for key, token in tokens.items():
        var = _CONTEXT_VARS.get(key)
        if var is not None:
            var.reset(token)


@contextmanager
def log_context(
    correlation_id: str | None = None,
    evaluation_id: str | None = None,
    rule_id: str | None = None,
    action_id: str | None = None,
) -> Iterator[None]:
    # None leaves an outer binding in place so nested scopes only add fields.
    tokens = set_context(
        correlation_id=correlation_id,
        evaluation_id=evaluation_id,
        rule_id=rule_id,
        action_id=action_id,
    )
    try:
        yield
    finally:
        reset_context(tokens)


def get_log_context() -> dict[str, str]:
    values = {key: var.get() for key, var in _CONTEXT_VARS.items()}
    return {key: value for key, value in values.items() if value is not None}
