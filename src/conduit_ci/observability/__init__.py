"""Structured logging and correlation context."""

from conduit_ci.observability.logging import (
    DEFAULT_LOG_FILENAME,
    LoggingConfig,
    RunLogHandle,
    configure_structlog,
    correlation_scope,
    get_correlation_context,
    redact_text,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "DEFAULT_LOG_FILENAME",
    "LoggingConfig",
    "RunLogHandle",
    "configure_structlog",
    "correlation_scope",
    "get_correlation_context",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
