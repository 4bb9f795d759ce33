"""Structured audit logging for GPU DevBox operations."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from gpu_devbox.utils.logging import get_logger

SENSITIVE_WORDS = ("password", "passwd", "token", "secret", "credentials", "private")


class AuditEventType(str, Enum):
    """Types of audit events."""

    # Container lifecycle events
    CONTAINER_CREATE = "container_create"
    CONTAINER_RESET = "container_reset"
    CONTAINER_START = "container_start"
    CONTAINER_STOP = "container_stop"
    CONTAINER_RESTART = "container_restart"
    CONTAINER_DELETE = "container_delete"
    CONTAINER_PASSWORD_CHANGE = "container_password_change"

    # Failure events
    LIFECYCLE_FAILURE = "lifecycle_failure"
    PARTIAL_FAILURE = "partial_failure"

    # Security events
    AUTHORIZATION_DENIED = "authorization_denied"

    # System events
    SYSTEM_STARTUP = "system_startup"
    SYSTEM_SHUTDOWN = "system_shutdown"
    SYSTEM_RECONCILE = "system_reconcile"


class AuditLogger:
    """Structured audit logger for tracking all operations."""

    def __init__(self):
        """Initialize the audit logger."""
        self._logger = get_logger("audit")
        # Audit events are always logged, whatever the root level
        self._logger.setLevel(logging.INFO)

    def log_event(
        self,
        event_type: AuditEventType,
        container_name: Optional[str] = None,
        user_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Log an audit event.

        Args:
            event_type: Type of event being logged
            container_name: Container name if relevant
            user_id: Acting user ID if relevant
            details: Additional event-specific details
        """
        sanitized_details = self._sanitize_details(details or {})

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
        }

        if container_name:
            event["container_name"] = container_name
        if user_id is not None:
            event["user_id"] = user_id
        if sanitized_details:
            event["details"] = sanitized_details

        self._logger.info("audit_event", extra=event)

    def _sanitize_details(self, details: dict[str, Any]) -> dict[str, Any]:
        """
        Sanitize sensitive information from event details.

        Args:
            details: Raw event details

        Returns:
            Sanitized details with sensitive fields redacted
        """
        sanitized = {}
        for key, value in details.items():
            if any(word in key.lower() for word in SENSITIVE_WORDS):
                sanitized[key] = "***REDACTED***"
            elif isinstance(value, dict):
                # Recursively sanitize nested dictionaries
                sanitized[key] = self._sanitize_details(value)
            elif isinstance(value, list):
                # Sanitize lists of dictionaries
                sanitized[key] = [
                    self._sanitize_details(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                sanitized[key] = value

        return sanitized


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """
    Get the global audit logger instance.

    Returns:
        AuditLogger instance
    """
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
