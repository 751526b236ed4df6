"""
Structured Logging Configuration Module

JSON log lines for approval operations. Every engine transition, refused
action and retry is logged through ``log_action`` with the acting user and
the instance or definition it touched, so a log pipeline can follow one
approval from start to completion.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# LogRecord attributes set by log_action and picked up by JSONFormatter
CONTEXT_FIELDS = ("actor_id", "action", "resource", "context")

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; context fields are omitted when unset"""

    def format(self, record):
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "itsm_approvals",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Logger to configure; ``itsm_approvals.*`` loggers inherit its handler
        log_format: "json" for JSONFormatter, "text" for plain lines
        log_file: Optional file path; stderr when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Calling setup twice must not double every line
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "itsm_approvals") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               actor_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> None:
    """
    Log an approval operation with structured context.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, error, ...)
        message: Human readable message
        actor_id: User on whose behalf the operation ran ("system" for the scheduler)
        action: Operation name, e.g. "act" or "escalate"
        resource: Id of the instance, workflow, role or user acted upon
        extra: Additional structured data, emitted under "context"
    """
    fields = {'actor_id': actor_id, 'action': action, 'resource': resource, 'context': extra}
    logger.log(
        getattr(logging, level.upper()),
        message,
        extra={k: v for k, v in fields.items() if v is not None},
        stacklevel=2
    )
