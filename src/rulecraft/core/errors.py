from __future__ import annotations


class RuleEngineError(RuntimeError):
    """Base error for rule registry and evaluation failures."""


class ConfigurationError(RuleEngineError):
    """Malformed rule, unknown operator or function, bad arity, or capacity exceeded."""


class ExpressionError(ConfigurationError):
    pass


class DepthExceededError(RuleEngineError):
    def __init__(self, depth: int, max_depth: int) -> None:
        super().__init__(f"Maximum condition depth exceeded: {depth} > {max_depth}")
        self.depth = depth
        self.max_depth = max_depth


class EvaluationTimeoutError(RuleEngineError, TimeoutError):
    def __init__(self, message: str, timeout_s: float | None = None) -> None:
        super().__init__(message)
        self.timeout_s = timeout_s


class CancelledError(RuleEngineError):
    pass


class NotFoundError(RuleEngineError, KeyError):
    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier

    def __str__(self) -> str:
        return str(self.args[0])
