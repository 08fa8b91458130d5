"""
Structured Logging Configuration Module

One JSON object per line. Ledger, lifecycle and accrual code attach the
affected user, the action and the resource id; lines written while an
accrual run is in progress also carry that run's id.
"""

import logging
import json
import contextvars
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional


# Accrual run the current task is working for, if any
_current_run = contextvars.ContextVar('current_accrual_run', default=None)

STRUCTURED_FIELDS = ("user_id", "action", "resource", "run_id", "extra")


@contextmanager
def run_context(run_id: str):
    """Tag every log line written inside the block with run_id"""
    token = _current_run.set(run_id)
    try:
        yield
    finally:
        _current_run.reset(token)


class RunContextFilter(logging.Filter):
    def filter(self, record):
        if getattr(record, 'run_id', None) is None:
            record.run_id = _current_run.get()
        return True


class JSONFormatter(logging.Formatter):
    """Renders a record and its structured fields as a JSON line"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "cryptonest",
                  log_format: str = "json") -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Log level name
        logger_name: Parent logger of every cryptonest module
        log_format: "json" for structured lines, anything else for plain text

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.addFilter(RunContextFilter())
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(run_id)s]: %(message)s"
        ))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "cryptonest") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None):
    """Log message with whichever structured fields are set"""
    fields = {
        name: value for name, value in (
            ('user_id', user_id), ('action', action), ('resource', resource), ('extra', extra)
        ) if value
    }
    logger.log(getattr(logging, level.upper()), message, extra=fields)
