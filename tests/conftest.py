from __future__ import annotations

import logging

import pytest


@pytest.fixture(autouse=True)
def isolate_rulecraft_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "RULECRAFT_MAX_RULES",
        "RULECRAFT_MAX_CONDITION_DEPTH",
        "RULECRAFT_CACHE_RESULTS",
        "RULECRAFT_ALLOW_UNSAFE_EXPRESSIONS",
        "RULECRAFT_ACTION_TIMEOUT_S",
        "RULECRAFT_FUNCTION_TIMEOUT_S",
        "RULECRAFT_LOG_DIR",
        "RULECRAFT_HTTP_RETRIES",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RULECRAFT_LOG_TO_FILE", "off")
    monkeypatch.setenv("RULECRAFT_TEST_MODE", "1")


@pytest.fixture(autouse=True)
def restore_rulecraft_logger():
    logger = logging.getLogger("rulecraft")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield
    logger.handlers, logger.level, logger.propagate = saved[0], saved[1], saved[2]
