"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for card ledger operations.
Card numbers and CVV codes never reach a log record in clear text; callers
log masked numbers and ids only, and CardNumberRedactor masks any digit run
that still looks like a card number before a handler writes it.
"""

import logging
import json
import re
from datetime import datetime, timezone
from typing import Optional

from .masking import mask_card_number


CARD_NUMBER_PATTERN = re.compile(r"(?<!\d)\d{13,19}(?!\d)")


def redact_card_numbers(text: str) -> str:
    return CARD_NUMBER_PATTERN.sub(lambda match: mask_card_number(match.group()), text)


class CardNumberRedactor(logging.Filter):
    """Masks card-number-like digit runs in the message and extra fields"""

    def filter(self, record):
        message = record.getMessage()
        redacted = redact_card_numbers(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()

        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            record.extra = {
                key: redact_card_numbers(value) if isinstance(value, str) else value
                for key, value in extra.items()
            }
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module if hasattr(record, 'module') else record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "extra": getattr(record, 'extra', None)
        }

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO", logger_name: str = "card_ledger",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the root application logger
        log_format: "json" for structured output, "text" for human readable lines
        log_file: Optional file path; stdout/stderr when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()

    if log_format == "text":
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    else:
        handler.setFormatter(JSONFormatter())
    handler.addFilter(CardNumberRedactor())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: ID of the user performing the action
        action: Action being performed
        resource: Resource being acted upon
        correlation_id: Correlation ID for request tracing
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (), None
    )

    if user_id is not None:
        record.user_id = str(user_id)
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if correlation_id:
        record.correlation_id = correlation_id
    if extra:
        record.extra = extra

    logger.handle(record)
