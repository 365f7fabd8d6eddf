"""
Audit and notification sinks.

Both are fire-and-forget: each write runs in its own session, and any
failure is logged and swallowed so it can never undo or block the
financial mutation that triggered it.
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from sqlalchemy.orm import Session

from buildledger.models import SessionLocal, AuditLog, Notification

logger = logging.getLogger(__name__)


class AuditSink(ABC):
    """Receives before/after records of financial mutations."""

    def record(
        self,
        actor: Optional[str],
        action: str,
        entity_type: str,
        entity_id,
        changes: Optional[dict] = None,
        project_id: Optional[int] = None,
    ) -> None:
        try:
            self._write(actor, action, entity_type, str(entity_id), changes or {}, project_id)
        except Exception:
            logger.exception(f"Audit entry {action} for {entity_type} {entity_id} was not recorded")

    @abstractmethod
    def _write(self, actor, action, entity_type, entity_id, changes, project_id) -> None:
        pass


class NotificationSink(ABC):
    """Delivers user-facing notifications about settlement outcomes."""

    def notify(self, user_id: Optional[str], title: str, message: str, context: Optional[dict] = None) -> None:
        if not user_id:
            return
        try:
            self._send(user_id, title, message, context or {})
        except Exception:
            logger.exception(f"Notification '{title}' to user {user_id} was not delivered")

    @abstractmethod
    def _send(self, user_id, title, message, context) -> None:
        pass


class DatabaseAuditSink(AuditSink):
    """Writes audit_logs rows."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def _write(self, actor, action, entity_type, entity_id, changes, project_id) -> None:
        session = self.session_factory()
        try:
            session.add(AuditLog(
                actor=actor,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                project_id=project_id,
                changes=changes,
            ))
            session.commit()
        finally:
            session.close()


class DatabaseNotificationSink(NotificationSink):
    """Writes notifications rows for the in-app inbox."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def _send(self, user_id, title, message, context) -> None:
        session = self.session_factory()
        try:
            session.add(Notification(user_id=user_id, title=title, message=message, context=context))
            session.commit()
        finally:
            session.close()
