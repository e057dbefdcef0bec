"""Correlation ID based logging utilities.

Every webhook delivery and every matching run gets its own correlation ID so a
single event can be traced from decryption through to the ledger entries it
eventually produces.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Iterable, Optional

# Context variable to store correlation ID for the current request/task
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "***redacted***"


class CorrelationIdFilter(logging.Filter):
    """Add correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "no-correlation-id"
        return True


class SecretRedactionFilter(logging.Filter):
    """Mask configured secret values in rendered log messages."""

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        # Short values would mask unrelated text
        self.secrets = [s for s in secrets if s and len(s) >= 8]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True

        message = record.getMessage()
        redacted = message
        for secret in self.secrets:
            redacted = redacted.replace(secret, REDACTED)

        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    secrets: Iterable[str] = (),
) -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
        secrets: Secret values that must never appear in log output.
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"correlation_id": "%(correlation_id)s", "name": "%(name)s", '
            '"message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())
    handler.addFilter(SecretRedactionFilter(secrets))

    logger.addHandler(handler)


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current context."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID, or None if not set."""
    return correlation_id_var.get()


def generate_correlation_id(prefix: str = "corr") -> str:
    """Generate a new correlation ID.

    Args:
        prefix: Short tag describing what started the trace (``wh`` for
            webhook deliveries, ``match`` for matching runs).

    Returns:
        A new UUID-based correlation ID.
    """
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name (typically __name__)."""
    return logging.getLogger(name)


class CorrelationIdContext:
    """Context manager for setting correlation ID in a block of code."""

    def __init__(self, correlation_id: Optional[str] = None, prefix: str = "corr"):
        """Initialize the context manager.

        Args:
            correlation_id: The correlation ID to set. If None, generates a new one.
            prefix: Prefix used when generating a new ID.
        """
        self.correlation_id = correlation_id or generate_correlation_id(prefix)
        self.previous_correlation_id: Optional[str] = None

    def __enter__(self) -> str:
        self.previous_correlation_id = get_correlation_id()
        set_correlation_id(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.previous_correlation_id:
            set_correlation_id(self.previous_correlation_id)
        else:
            correlation_id_var.set(None)
