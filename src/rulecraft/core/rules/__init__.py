from .context import EvaluationContext
from .engine import RuleEngine
from .events import EventBus
from .schemas import Action, EvaluationOptions, EvaluationReport, Rule, RuleFilter, RuleGroup
from .timeouts import CancellationToken
from .webhooks import HttpxWebhookTransport, WebhookRequest

__all__ = [
    "Action",
    "CancellationToken",
    "EvaluationContext",
    "EvaluationOptions",
    "EvaluationReport",
    "EventBus",
    "HttpxWebhookTransport",
    "Rule",
    "RuleEngine",
    "RuleFilter",
    "RuleGroup",
    "WebhookRequest",
]
