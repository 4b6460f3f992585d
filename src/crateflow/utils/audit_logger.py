"""Structured audit logging for CrateFlow operations."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from crateflow.utils.logging import get_logger


class AuditEventType(str, Enum):
    """Types of audit events."""

    # Lifecycle events
    CONTAINER_CREATE = "container_create"
    CONTAINER_START = "container_start"
    CONTAINER_STOP = "container_stop"
    CONTAINER_RESTART = "container_restart"
    CONTAINER_REMOVE = "container_remove"
    CONTAINER_STATE_CHANGE = "container_state_change"

    # Reconciler events
    RECONCILE_SYNC = "reconcile_sync"
    RECONCILE_IMPORT = "reconcile_import"
    RECONCILE_AUTO_RESTART = "reconcile_auto_restart"
    RECONCILE_ORPHAN = "reconcile_orphan"

    # Channel events
    CHANNEL_CONNECT = "channel_connect"
    CHANNEL_AUTHENTICATE = "channel_authenticate"
    CHANNEL_AUTH_FAILED = "channel_auth_failed"
    CHANNEL_UNAUTHORIZED = "channel_unauthorized"
    CHANNEL_COMMAND = "channel_command"
    CHANNEL_DISCONNECT = "channel_disconnect"

    # Log lifecycle events
    LOG_CLEAR = "log_clear"
    LOG_ROTATE = "log_rotate"
    LOG_RETENTION = "log_retention"

    # System events
    SYSTEM_STARTUP = "system_startup"
    SYSTEM_SHUTDOWN = "system_shutdown"


class AuditLogger:
    """Structured audit logger for lifecycle, reconciler and channel actions."""

    def __init__(self):
        """Initialize the audit logger."""
        self._logger = get_logger("audit")
        # Audit events are emitted regardless of the root level
        self._logger.setLevel(logging.INFO)

    def log_event(
        self,
        event_type: AuditEventType,
        container_id: Optional[str] = None,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Log an audit event.

        Args:
            event_type: Type of event being logged
            container_id: Container ID if relevant
            user_id: Identity the action was performed for
            client_id: Channel client that issued the action
            details: Additional event-specific details
        """
        sanitized_details = self._sanitize_details(details or {})

        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
        }

        if container_id:
            event["container_id"] = container_id
        if user_id:
            event["user_id"] = user_id
        if client_id:
            event["client_id"] = client_id
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
        sensitive_keys = {"password", "token", "secret", "credentials", "private"}

        sanitized = {}
        for key, value in details.items():
            if any(word in key.lower() for word in sensitive_keys):
                sanitized[key] = "***REDACTED***"
            elif isinstance(value, dict):
                sanitized[key] = self._sanitize_details(value)
            elif isinstance(value, list):
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
