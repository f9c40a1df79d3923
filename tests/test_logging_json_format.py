from __future__ import annotations

import io
import json
import logging

from rulecraft.core.logging.context import log_context
from rulecraft.core.logging.json_formatter import JSONFormatter


def _capture(name: str) -> tuple[logging.Logger, io.StringIO]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())

    logger = logging.getLogger(name)
    logger.handlers = []
    logger.setLevel(logging.INFO)
    logger.propagate = False
    logger.addHandler(handler)
    return logger, stream


def test_logging_json_line_with_evaluation_context() -> None:
    logger, stream = _capture("rulecraft.test.json")

    with log_context(correlation_id="c1", evaluation_id="e1"):
        with log_context(rule_id="r1"):
            logger.info("rule_matched", extra={"extra_fields": {"priority": "high"}})

    payload = json.loads(stream.getvalue().strip())
    assert payload["msg"] == "rule_matched"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "rulecraft.test.json"
    assert payload["correlation_id"] == "c1"
    assert payload["evaluation_id"] == "e1"
    assert payload["rule_id"] == "r1"
    assert payload["priority"] == "high"
    assert "ts_iso_utc" in payload


def test_logging_json_redacts_secrets_in_message() -> None:
    logger, stream = _capture("rulecraft.test.redact")

    logger.info("calling hook with token=abc123 and Bearer xyz")

    payload = json.loads(stream.getvalue().strip())
    assert "abc123" not in payload["msg"]
    assert "xyz" not in payload["msg"]


def test_log_context_restores_outer_values() -> None:
    logger, stream = _capture("rulecraft.test.nested")

    with log_context(rule_id="outer"):
        with log_context(rule_id="inner"):
            pass
        logger.info("after")

    payload = json.loads(stream.getvalue().strip())
    assert payload["rule_id"] == "outer"


def test_logging_json_masks_secret_extra_fields() -> None:
    logger, stream = _capture("rulecraft.test.extra")

    logger.info(
        "webhook_sent",
        extra={"extra_fields": {"api_key": "k-1", "detail": "password=hunter2", "status_code": 200}},
    )

    payload = json.loads(stream.getvalue().strip())
    assert payload["api_key"] == "***"
    assert "hunter2" not in payload["detail"]
    assert payload["status_code"] == 200
