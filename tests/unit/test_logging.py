"""Unit tests for the JSON log formatter."""

import json
import logging

from sce.core.models import Phase
from sce.utils.logging import JSONFormatter, get_logger


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("sce.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Tests for JSONFormatter."""

    def test_basic_fields(self) -> None:
        """Test the message is rendered with its level and logger."""
        data = json.loads(JSONFormatter().format(_record()))
        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["logger"] == "sce.test"
        assert "study_id" not in data

    def test_context_fields(self) -> None:
        """Test engine identifiers become top-level keys and enums are unwrapped."""
        data = json.loads(
            JSONFormatter().format(_record(study_id="std_1", phase=Phase.FULL_TEXT, other="x"))
        )
        assert data["study_id"] == "std_1"
        assert data["phase"] == "full_text"
        assert "other" not in data


def test_get_logger_installs_one_handler() -> None:
    logger = get_logger("sce.test.handlers")
    assert get_logger("sce.test.handlers") is logger
    assert len(logger.handlers) == 1
