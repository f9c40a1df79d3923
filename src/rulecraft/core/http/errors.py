from __future__ import annotations

from rulecraft.core.errors import RuleEngineError


class WebhookHTTPError(RuleEngineError):
    """Outbound webhook call failed; ``url`` is already redacted."""

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class WebhookStatusError(WebhookHTTPError):
    def __init__(self, message: str, status_code: int | None = None, url: str | None = None) -> None:
        super().__init__(message, url=url)
        self.status_code = status_code


class WebhookNetworkError(WebhookHTTPError):
    pass
