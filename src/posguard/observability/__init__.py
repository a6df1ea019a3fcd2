"""Logging sinks for the startup pipeline."""

from posguard.observability.logging import (
    LogSession,
    LogSessionConfig,
    Redactor,
    active_log_session,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    flush_logging,
    setup_logging,
    shutdown_logging,
    start_log_session,
)

__all__ = [
    "LogSession",
    "LogSessionConfig",
    "Redactor",
    "active_log_session",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "setup_logging",
    "shutdown_logging",
    "start_log_session",
]
