"""Service logging setup.

Development gets coloured single-line output, staging and production get one
JSON object per line for log aggregation. Library code under ``models`` and
``clients`` logs through stdlib loggers and is formatted by the same handler.
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Optional

_JSON_ENVIRONMENTS = ("production", "prod", "staging")


class ColoredFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "ENDC": "\033[0m",
    }

    def format(self, record):
        level_color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        module_name = record.name if record.name != "__main__" else "main"
        line = f"[{timestamp}] {level_color}{record.levelname:8s}{self.COLORS['ENDC']} [{module_name}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
            "environment": os.getenv("ENVIRONMENT", "unknown"),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def init(level: str = "INFO", environment: Optional[str] = None) -> None:
    """Configure the root logger once for the whole process."""
    environment = (environment or os.getenv("ENVIRONMENT", "development")).lower()

    handler = logging.StreamHandler(sys.stdout)
    if environment in _JSON_ENVIRONMENTS:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ColoredFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # uvicorn installs its own handlers; route them through ours instead
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers.clear()
        logging.getLogger(name).propagate = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
