from .client import get_http_client, request_with_retry
from .errors import WebhookHTTPError, WebhookNetworkError, WebhookStatusError

__all__ = [
    "get_http_client",
    "request_with_retry",
    "WebhookHTTPError",
    "WebhookNetworkError",
    "WebhookStatusError",
]
