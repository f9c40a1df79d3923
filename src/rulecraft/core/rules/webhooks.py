from __future__ import annotations

import logging
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from rulecraft.core.http.client import request_with_retry
from rulecraft.core.logging.redact import redact_headers

from .timeouts import CancellationToken


logger = logging.getLogger("rulecraft.rules.webhooks")

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]


class WebhookRequest(BaseModel):
    method: HttpMethod = "POST"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_s: float | None = None
    retries: int = 0
    redact_url: bool = False


class WebhookTransport(Protocol):
    def send(self, request: WebhookRequest, token: CancellationToken) -> dict[str, Any]:
        ...


class HttpxWebhookTransport:
    """Delivers webhook actions over the shared httpx client with bounded retries."""

    def send(self, request: WebhookRequest, token: CancellationToken) -> dict[str, Any]:
        token.raise_if_cancelled()
        json_body: object | None = None
        content: str | bytes | None = None
        if isinstance(request.body, (dict, list)):
            json_body = request.body
        elif isinstance(request.body, (str, bytes)):
            content = request.body
        elif request.body is not None:
            json_body = request.body

        response = request_with_retry(
            request.method,
            request.url,
            headers=request.headers,
            json=json_body,
            content=content,
            timeout_override=request.timeout_s,
            retries=request.retries,
            redact_url=request.redact_url,
            deadline=token.deadline,
        )
        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        logger.info(
            "webhook_delivered",
            extra={"extra_fields": {"method": request.method, "status_code": response.status_code}},
        )
        return {
            "status_code": response.status_code,
            "method": request.method,
            "url": "[redacted-url]" if request.redact_url else request.url,
            "headers": redact_headers(request.headers),
            "response": payload,
        }
