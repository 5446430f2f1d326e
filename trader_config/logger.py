"""
Structured logging for the configuration store.

This module provides structured logging with:
- JSON format for log aggregation (console rendering for development)
- Censoring of secret-looking fields before anything is rendered
- Optional log rotation
- Named store lifecycle events
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

import structlog
from structlog.processors import CallsiteParameter

# Global flag to track configuration
_CONFIGURED = False

SENSITIVE_KEYS = ("password", "api_key", "secret", "private_key", "token", "credential")


class LogEvent(str, Enum):
    """Standard log events for the configuration store."""

    # Store lifecycle
    STORE_OPENED = "store.opened"
    STORE_CLOSED = "store.closed"
    CONNECTION_FAILED = "store.connection_failed"

    # Schema events
    SCHEMA_CURRENT = "schema.current"
    MIGRATION_STARTED = "schema.migration_started"
    MIGRATION_APPLIED = "schema.migration_applied"
    MIGRATION_FAILED = "schema.migration_failed"
    BACKUP_CREATED = "schema.backup_created"
    BACKUP_FAILED = "schema.backup_failed"
    INTEGRITY_VIOLATION = "schema.integrity_violation"

    # Seeding
    SEED_INSERTED = "seed.inserted"
    SEED_COMPLETE = "seed.complete"

    # Vault
    VAULT_DISABLED = "vault.disabled"
    ENCRYPT_FAILED = "vault.encrypt_failed"
    DECRYPT_FAILED = "vault.decrypt_failed"


def add_timestamp(logger, method_name, event_dict):
    """Add timestamp to all log entries."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_environment(logger, method_name, event_dict):
    """Add environment information."""
    event_dict["environment"] = os.getenv("ENVIRONMENT", "dev")
    return event_dict


def censor_sensitive(logger, method_name, event_dict):
    """Censor sensitive information like API keys."""
    for key in list(event_dict.keys()):
        if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
            event_dict[key] = "***REDACTED***"

    return event_dict


def setup_structlog():
    """Configure structlog for the application."""

    log_format = os.getenv("STORE_LOG_FORMAT", "json").lower()

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_timestamp,
        add_environment,
        censor_sensitive,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                CallsiteParameter.FILENAME,
                CallsiteParameter.FUNC_NAME,
                CallsiteParameter.LINENO,
            ]
        ),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class JsonFormatter(logging.Formatter):
    """JSON formatter for stdlib records that bypass structlog."""

    _RESERVED = {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "thread", "threadName", "exc_info", "exc_text", "stack_info",
        "taskName",
    }

    def format(self, record):
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in self._RESERVED:
                log_obj[key] = value

        return json.dumps(log_obj, default=str)


def configure_stdlib_logging():
    """Configure standard library logging."""

    level_str = os.getenv("STORE_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_str, logging.INFO)
    log_format = os.getenv("STORE_LOG_FORMAT", "json").lower()

    if log_format == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    log_file = os.getenv("LOG_FILE")
    if log_file:
        from logging.handlers import RotatingFileHandler

        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    global _CONFIGURED

    if not _CONFIGURED:
        configure_stdlib_logging()
        setup_structlog()
        _CONFIGURED = True

    return structlog.get_logger(name)


def log_store_event(
    logger: structlog.BoundLogger,
    event: LogEvent,
    message: str,
    level: str = "info",
    **kwargs,
) -> None:
    """
    Log a store lifecycle event.

    Args:
        logger: Logger instance
        event: Store event type
        message: Event message
        level: Log method name (info, warning, error)
        **kwargs: Additional context
    """
    getattr(logger, level)(event.value, message=message, **kwargs)


__all__ = [
    "get_logger",
    "LogEvent",
    "log_store_event",
]
