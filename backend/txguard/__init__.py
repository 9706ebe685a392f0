"""TxGuard - transaction threat detection, risk scoring and audit engine."""

__version__ = "1.0.0"
