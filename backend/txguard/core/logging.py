"""
Centralized logging with structured JSON output.

File: backend/txguard/core/logging.py
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import queue
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs structured JSON logs with correlation IDs.
    """

    # Context attributes promoted to top-level keys when present on a record
    CONTEXT_FIELDS = (
        'trace_id', 'source_id', 'sender', 'target', 'alert_id',
        'risk_level', 'decision', 'protocol', 'entry_id'
    )

    SENSITIVE_PATTERNS = (
        'key', 'secret', 'token', 'password', 'passphrase',
        'private', 'mnemonic', 'seed', 'jwt', 'oauth'
    )

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as structured JSON.

        Args:
            record: Log record to format

        Returns:
            JSON formatted log string
        """
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": getattr(record, 'module', record.name),
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, 'extra_data', None)
        if isinstance(extra_data, dict):
            log_data.update({
                k: self._redact_sensitive(k, v)
                for k, v in extra_data.items()
            })

        return json.dumps(log_data, default=str, separators=(',', ':'))

    def _redact_sensitive(self, key: str, value: Any) -> Any:
        """Redact values whose key looks like a credential."""
        if any(pattern in key.lower() for pattern in self.SENSITIVE_PATTERNS):
            return "[REDACTED]"
        return value


class SecurityEventFilter(logging.Filter):
    """Pass WARNING and above from the detection, response and audit loggers."""

    PREFIXES = ('txguard.security', 'txguard.monitoring', 'txguard.ledger')

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.WARNING and record.name.startswith(self.PREFIXES)


_queue_listener: Optional[logging.handlers.QueueListener] = None


def _rotating_handler(
    path: Path, level: int, formatter: logging.Formatter, backups: int
) -> logging.handlers.TimedRotatingFileHandler:
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(path), when='midnight', backupCount=backups, encoding='utf-8', utc=True
    )
    handler.setFormatter(formatter)
    handler.setLevel(level)
    return handler


def setup_logging(
    log_level: str = "INFO",
    debug: bool = False,
    environment: str = "development",
    logs_dir: str = "data/logs",
) -> None:
    """
    Set up the logging system with structured JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        debug: Enable console output
        environment: Environment name for logging context
        logs_dir: Directory for rotated log files

    Creates three daily-rotated log files:
    - app.jsonl: All log levels
    - errors.jsonl: ERROR and above only
    - security.jsonl: breaker trips, rejections, alerts and compliance events,
      kept as long as high-risk audit entries
    """
    global _queue_listener

    cleanup_logging()

    log_dir = Path(logs_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    formatter = StructuredFormatter()
    security_handler = _rotating_handler(log_dir / "security.jsonl", logging.WARNING, formatter, 365)
    security_handler.addFilter(SecurityEventFilter())
    handlers = (
        _rotating_handler(log_dir / "app.jsonl", logging.DEBUG, formatter, 90),
        _rotating_handler(log_dir / "errors.jsonl", logging.ERROR, formatter, 90),
        security_handler,
    )

    log_queue: queue.Queue = queue.Queue(-1)
    root_logger.addHandler(logging.handlers.QueueHandler(log_queue))
    _queue_listener = logging.handlers.QueueListener(log_queue, *handlers, respect_handler_level=True)
    _queue_listener.start()

    if debug:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        console_handler.setLevel(logging.INFO)
        root_logger.addHandler(console_handler)

    logging.info("Logging system initialized", extra={
        'extra_data': {
            'log_level': log_level,
            'debug': debug,
            'environment': environment
        }
    })


def cleanup_logging() -> None:
    """Stop the queue listener on shutdown."""
    global _queue_listener

    if _queue_listener is not None:
        _queue_listener.stop()
        _queue_listener = None


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the specified name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def new_trace_id() -> str:
    """Generate a trace ID for correlating one analysis across components."""
    return uuid.uuid4().hex[:16]
