"""Structured logging for the manual QA service."""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic_settings import BaseSettings

LOGGER_NAME = "manual_qa"

PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Attributes passed through ``extra={...}`` that end up in the JSON line
EXTRA_FIELDS = (
    "document_id",
    "status",
    "chunk_count",
    "processed",
    "errors",
    "remaining",
    "attempt",
    "delay",
    "similarity_scores",
    "cited_pages",
    "extracted_length",
    "response_time_ms",
)


class LogSettings(BaseSettings):
    """Logging configuration settings."""

    log_level: str = "INFO"
    log_json: bool = True  # False gives plain lines for local runs

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


class JSONFormatter(logging.Formatter):
    """Formats each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            {name: getattr(record, name) for name in EXTRA_FIELDS if hasattr(record, name)}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logger(settings: Optional[LogSettings] = None) -> logging.Logger:
    """
    Configure the service logger.

    Args:
        settings: Level and format; read from the environment when omitted

    Returns:
        The ``manual_qa`` logger writing to stdout
    """
    settings = settings or LogSettings()

    service_logger = logging.getLogger(LOGGER_NAME)
    service_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    service_logger.propagate = False
    service_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.log_json else logging.Formatter(PLAIN_FORMAT))
    service_logger.addHandler(handler)

    return service_logger


logger = setup_logger()
