"""Structured logging, the audit trail and run metrics."""

from keycloak_migrator.observability.audit import (
    AuditEvent,
    AuditRecord,
    AuditSink,
    AuditTrail,
    DispatchError,
    JsonlAuditSink,
)
from keycloak_migrator.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    redact_text,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)
from keycloak_migrator.observability.metrics import (
    MetricsFormat,
    MetricsRegistry,
    MigrationMetrics,
)

__all__ = [
    "AuditEvent",
    "AuditRecord",
    "AuditSink",
    "AuditTrail",
    "DispatchError",
    "JsonlAuditSink",
    "LoggingConfig",
    "MetricsFormat",
    "MetricsRegistry",
    "MigrationMetrics",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
