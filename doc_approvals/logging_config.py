"""
Logging setup

One JSON object per log line, carrying the workflow fields (instance, task,
actor, action) that engine and scheduler attach as LogRecord extras.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


# Structured attributes picked up from LogRecord extras
STRUCTURED_FIELDS = ("instance_id", "task_id", "actor", "action", "extra")


class JSONFormatter(logging.Formatter):
    """Renders a LogRecord and its workflow extras as one JSON line"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            log_entry[name] = getattr(record, name, None)

        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "doc_approvals",
                  fmt: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the engine.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger
        fmt: "json" for one JSON object per line, "text" for plain lines
        log_file: Write to this file instead of stderr

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Calling this again replaces the handler instead of stacking a second one
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))

    # Root handlers would print every record twice
    logger.propagate = False

    return logger


def setup_logging_from_config(engine_config) -> logging.Logger:
    """Setup logging from an EngineConfig"""
    return setup_logging(engine_config.log_level, fmt=engine_config.log_format,
                         log_file=engine_config.log_file)
