"""
Shared FastAPI dependencies for collaborators.

Tests override these through app.dependency_overrides.
"""
from buildledger.infrastructure.collaborators import (
    AuditSink, NotificationSink, DatabaseAuditSink, DatabaseNotificationSink,
)
from buildledger.domain.events import RecalculationDispatcher, get_recalculation_dispatcher


def get_dispatcher() -> RecalculationDispatcher:
    return get_recalculation_dispatcher()


def get_audit_sink() -> AuditSink:
    return DatabaseAuditSink()


def get_notification_sink() -> NotificationSink:
    return DatabaseNotificationSink()
