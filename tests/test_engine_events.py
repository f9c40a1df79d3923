from __future__ import annotations

import logging

from rulecraft.core.rules.engine import RuleEngine
from rulecraft.core.rules.events import (
    ActionExecuted,
    ActionFailed,
    EngineError,
    EvaluationCompleted,
    EventBus,
    RuleCreated,
    RuleDeleted,
    RuleMatched,
    RuleUpdated,
    WorkflowRequested,
)


class BrokenTransport:
    def send(self, request, token):
        raise RuntimeError("no route")


def test_subscribe_filters_by_type_and_unsubscribes() -> None:
    bus = EventBus()
    created: list[RuleCreated] = []
    everything: list[object] = []
    unsubscribe = bus.subscribe(RuleCreated, created.append)
    bus.subscribe_all(everything.append)

    bus.publish(RuleCreated(rule_id="a", rule_name="A"))
    bus.publish(RuleDeleted(rule_id="a"))
    unsubscribe()
    bus.publish(RuleCreated(rule_id="b", rule_name="B"))

    assert [event.rule_id for event in created] == ["a"]
    assert [type(event).__name__ for event in everything] == ["RuleCreated", "RuleDeleted", "RuleCreated"]


def test_failing_handler_is_logged_and_others_still_run(monkeypatch) -> None:
    bus = EventBus()
    received: list[object] = []
    logged: list[str] = []

    def broken(event) -> None:
        raise RuntimeError("subscriber bug")

    monkeypatch.setattr(
        logging.getLogger("rulecraft.rules.events"),
        "exception",
        lambda msg, *args, **kwargs: logged.append(msg),
    )
    bus.subscribe(RuleDeleted, broken)
    bus.subscribe(RuleDeleted, received.append)

    bus.publish(RuleDeleted(rule_id="a"))

    assert len(received) == 1
    assert logged == ["event_handler_failed"]


def test_engine_emits_lifecycle_and_evaluation_events() -> None:
    engine = RuleEngine(webhook_transport=BrokenTransport())
    events: list[object] = []
    engine.events.subscribe_all(events.append)
    try:
        engine.create_rule(
            {
                "id": "r",
                "actions": [
                    {"type": "workflow", "config": {"workflow_id": "wf-1", "context": {"order": "${order}"}}},
                    {"type": "webhook", "config": {"url": "http://hooks.local"}},
                ],
            }
        )
        engine.update_rule("r", {"description": "updated"})
        engine.evaluate_rules({"data": {"order": 9}})
        engine.delete_rule("r")
    finally:
        engine.shutdown()

    kinds = [type(event) for event in events]
    assert kinds == [
        RuleCreated,
        RuleUpdated,
        WorkflowRequested,
        ActionExecuted,
        ActionFailed,
        RuleMatched,
        EvaluationCompleted,
        RuleDeleted,
    ]
    workflow = events[2]
    assert workflow.workflow_id == "wf-1"
    assert workflow.context == {"order": 9}
    completed = events[6]
    assert (completed.matched_count, completed.executed_actions, completed.failed_actions) == (1, 1, 1)


def test_engine_error_event_for_failed_rule() -> None:
    engine = RuleEngine()
    errors: list[EngineError] = []
    engine.events.subscribe(EngineError, errors.append)
    engine.register_function("boom", lambda: 1 / 0)
    try:
        engine.create_rule({"id": "bad", "conditions": {"operator": "function", "name": "boom"}})
        report = engine.evaluate_rules()
    finally:
        engine.shutdown()

    assert report.errors[0].error_type == "ZeroDivisionError"
    assert [(error.rule_id, error.error_type) for error in errors] == [("bad", "ZeroDivisionError")]
