from __future__ import annotations

import logging

from rulecraft.core.logging.setup import configure_logging


def test_configure_logging_is_idempotent(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("RULECRAFT_LOG_TO_FILE", "off")

    logger = logging.getLogger("rulecraft")
    logger.handlers = []

    configure_logging(tmp_path)
    first_count = len(logger.handlers)

    configure_logging(tmp_path)
    assert len(logger.handlers) == first_count


def test_configure_logging_reads_level_from_env(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("RULECRAFT_LOG_LEVEL", "warning")

    logger = logging.getLogger("rulecraft")
    logger.handlers = []

    configure_logging(tmp_path)
    assert logger.level == logging.WARNING
