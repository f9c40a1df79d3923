from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from .schemas import now_iso


logger = logging.getLogger("rulecraft.rules.events")


class RuleEvent(BaseModel):
    ts_iso: str = Field(default_factory=now_iso)


class RuleCreated(RuleEvent):
    rule_id: str
    rule_name: str


class RuleUpdated(RuleEvent):
    rule_id: str
    fields: list[str] = Field(default_factory=list)


class RuleDeleted(RuleEvent):
    rule_id: str


class NotificationRequested(RuleEvent):
    rule_id: str | None = None
    action_id: str
    channel: str = "default"
    recipient: str | None = None
    title: str = ""
    message: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


class WorkflowRequested(RuleEvent):
    rule_id: str | None = None
    action_id: str
    workflow_id: str
    context: dict[str, Any] = Field(default_factory=dict)


class RuleMatched(RuleEvent):
    evaluation_id: str
    rule_id: str
    rule_name: str
    priority: str
    cache_hit: bool = False


class ActionExecuted(RuleEvent):
    rule_id: str | None = None
    action_id: str
    action_type: str
    duration_ms: float = 0.0


class ActionFailed(RuleEvent):
    rule_id: str | None = None
    action_id: str
    action_type: str
    error: str
    error_type: str


class EvaluationCompleted(RuleEvent):
    evaluation_id: str
    evaluated_count: int
    matched_count: int
    executed_actions: int
    failed_actions: int
    error_count: int
    duration_ms: float


class EngineError(RuleEvent):
    evaluation_id: str | None = None
    rule_id: str | None = None
    error: str
    error_type: str


E = TypeVar("E", bound=RuleEvent)
Handler = Callable[[RuleEvent], None]


class EventBus:
    """Synchronous in-process channel; handlers run in publish order on the publishing thread."""

    def __init__(self) -> None:
        self._handlers: dict[type[RuleEvent], list[Handler]] = {}
        self._wildcard: list[Handler] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)  # type: ignore[arg-type]

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)  # type: ignore[arg-type]

        return unsubscribe

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._wildcard.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._wildcard:
                    self._wildcard.remove(handler)

        return unsubscribe

    def publish(self, event: RuleEvent) -> None:
        with self._lock:
            handlers = [
                handler
                for event_type, registered in self._handlers.items()
                if isinstance(event, event_type)
                for handler in registered
            ]
            handlers.extend(self._wildcard)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    extra={"extra_fields": {"event_type": type(event).__name__}},
                )
