"""Observability: structured JSON-lines logging."""

from buildwave.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    configure_logging,
    default_log_redactor,
)

__all__ = ["LoggingConfig", "LoggingHandle", "configure_logging", "default_log_redactor"]
