"""Structured logging configuration.

Log records are written to stderr so CLI tables on stdout stay clean.
Identifiers passed through ``extra`` (project, study, reviewer, conflict
and calibration round) become top-level keys of the JSON record, which
lets a log pipeline follow one study through screening.
"""

import json
import logging
import sys
from typing import Any, Dict

from ..config.settings import settings

CONTEXT_FIELDS = ("project_id", "study_id", "reviewer_id", "conflict_id", "round_id", "phase")

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """Format logs as JSON, lifting engine identifiers to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = getattr(value, "value", value)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        if settings.log_format == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(TEXT_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger
