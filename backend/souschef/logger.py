"""
Logging setup
Text or JSON output, selected with LOG_TYPE; level from LOG_LEVEL
"""

import json
import logging
import sys
from typing import Any

from config import LOG_LEVEL, LOG_TYPE


class JSONFormatter(logging.Formatter):
    """One JSON object per log line"""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        # Set through `extra=` by the dispatcher and transports
        if hasattr(record, "user_id"):
            log_data["user_id"] = record.user_id
        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Plain console lines: timestamp, level, logger name, message"""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        message = f"{timestamp} {record.levelname:<8} {record.name:<24} {record.getMessage()}"
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger; handlers are attached only once per name"""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = getattr(logging, LOG_LEVEL.upper(), logging.INFO)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if LOG_TYPE.lower() == "json" else TextFormatter())
    logger.addHandler(handler)
    return logger


# Quiet per-request logging of the HTTP client
logging.getLogger("httpx").setLevel(logging.WARNING)
