from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from flatmate_chat.chat.errors import FetchError
from flatmate_chat.core.logging_utils import log_event, setup_logging


def test_log_event_emits_single_json_line(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("test.flatmate.log_event")
    with caplog.at_level(logging.INFO, logger=logger.name):
        log_event(
            logger,
            logging.INFO,
            "chat.rooms.loaded",
            count=2,
            skipped=None,
            users=frozenset({9, 8}),
            exc=FetchError("offline"),
        )

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload == {
        "event": "chat.rooms.loaded",
        "count": 2,
        "users": [8, 9],
        "exc": "FetchError: offline",
    }


def test_log_event_skips_disabled_levels(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("test.flatmate.disabled")
    logger.setLevel(logging.WARNING)
    with caplog.at_level(logging.WARNING, logger=logger.name):
        log_event(logger, logging.DEBUG, "chat.noise")
    assert caplog.records == []


def test_setup_logging_adds_handlers_once(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "chat.log"
    name = "test.flatmate.setup"

    logger = setup_logging("debug", log_file=log_file, logger_name=name)
    setup_logging("debug", log_file=log_file, logger_name=name)

    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 2
    log_event(logger, logging.INFO, "chat.session.started")
    for handler in logger.handlers:
        handler.flush()
    assert "chat.session.started" in log_file.read_text(encoding="utf-8")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
