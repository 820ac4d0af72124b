"""Tests for logging setup."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator

import pytest

from searchindex.config.settings import ObservabilitySettings
from searchindex.observability.logging import setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    def test_json_records(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging(ObservabilitySettings(log_level="debug", log_format="json"))

        logging.getLogger("searchindex.sync").info("Synced %d documents", 3)

        record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert record["event"] == "Synced 3 documents"
        assert record["level"] == "info"
        assert record["logger"] == "searchindex.sync"
        assert logging.getLogger().level == logging.DEBUG

    def test_quiets_http_client_loggers(self) -> None:
        setup_logging(ObservabilitySettings(log_level="debug"))
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_defaults(self) -> None:
        setup_logging()
        assert logging.getLogger().level == logging.INFO
        assert len(logging.getLogger().handlers) == 1
