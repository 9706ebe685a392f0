"""
Exception taxonomy for the threat detection engine.

File: backend/txguard/core/exceptions.py
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional


class TxGuardError(Exception):
    """Base exception for TxGuard."""

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
        trace_id: Optional[str] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.trace_id = trace_id or str(uuid.uuid4())
        super().__init__(self.message)


class ValidationRejected(TxGuardError):
    """Raised when a compliance rule or protocol policy blocks an action.

    Not retryable by the same caller without changing the transaction.
    """

    def __init__(self, message: str, reason: str = "", **kwargs: Any):
        kwargs.setdefault("error_code", "VALIDATION_REJECTED")
        super().__init__(message, **kwargs)
        self.reason = reason or message


class AnalysisDegraded(TxGuardError):
    """Raised when an external dependency failed and strict mode was requested."""

    def __init__(self, message: str, sources: Optional[list] = None, **kwargs: Any):
        kwargs.setdefault("error_code", "ANALYSIS_DEGRADED")
        super().__init__(message, **kwargs)
        self.sources = list(sources or [])


class ConfigurationError(TxGuardError):
    """Raised for references to unregistered resources or invalid configuration."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("error_code", "CONFIGURATION_ERROR")
        super().__init__(message, **kwargs)


class UnknownAlertError(ConfigurationError):
    """Raised when resolving an alert id that is not active."""

    def __init__(self, alert_id: str, **kwargs: Any):
        kwargs.setdefault("error_code", "UNKNOWN_ALERT")
        kwargs.setdefault("details", {"alert_id": alert_id})
        super().__init__(f"Alert not found: {alert_id}", **kwargs)
        self.alert_id = alert_id


class TransientIOError(TxGuardError):
    """Raised when a network call to an external collaborator fails."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("error_code", "TRANSIENT_IO_ERROR")
        super().__init__(message, **kwargs)


def create_safe_error_dict(error: Exception, trace_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Create a log-safe error dictionary.

    Args:
        error: Exception that occurred
        trace_id: Optional trace ID

    Returns:
        Dictionary safe for structured logging
    """
    if isinstance(error, TxGuardError):
        return {
            "error_code": error.error_code,
            "message": error.message,
            "trace_id": trace_id or error.trace_id,
            "details": error.details,
        }
    return {
        "error_code": "INTERNAL_ERROR",
        "message": str(error),
        "error_type": type(error).__name__,
        "trace_id": trace_id or str(uuid.uuid4()),
    }
