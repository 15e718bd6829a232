"""
Structured Logging Configuration Module

JSON logging for wallet operations. Every record carries the settlement
reference it belongs to: set explicitly through log_action, or inherited
from the enclosing correlation_context (webhook event, scheduler charge).
Credentials never reach the log stream.
"""

import contextvars
import logging
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

SERVICE_NAME = "banka-wallet"

SENSITIVE_KEYS = frozenset({
    "pin", "old_pin", "new_pin", "pin_hash", "authorization", "secret_key", "password", "token"
})
REDACTED = "***"

# Settlement reference or request id of the work in progress
_correlation_id = contextvars.ContextVar('correlation_id', default=None)


def current_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: Optional[str]):
    """Tag every log record emitted inside the block with correlation_id"""
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


def redact(data: Any) -> Any:
    """Mask credential-bearing keys, recursively"""
    if isinstance(data, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else redact(v)
            for k, v in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(v) for v in data]
    return data


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record):
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None) or current_correlation_id(),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "extra": redact(getattr(record, 'extra', None))
        }
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info and record.exc_info[0]:
            log_entry['exception'] = {
                "type": record.exc_info[0].__name__,
                "traceback": self.formatException(record.exc_info)
            }

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "banka",
                  log_file: Optional[str] = None) -> logging.Logger:
    """
    Route the service logger to stdout or log_file as JSON.

    Calling again replaces the previous handler.
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "banka") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a ledger-affecting action with structured fields.

    Args:
        logger: Logger instance
        level: Log level name (info, warning, critical, ...)
        message: Human-readable summary
        user_id: Owner of the account or goal touched
        action: Operation name, e.g. "internal_transfer" or "webhook_debit"
        resource: "<collection>:<id>" of the record touched
        correlation_id: Settlement reference; defaults to the enclosing context
        extra: Additional fields; credential keys are masked
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    logger.log(levelno, message, extra={
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    })
