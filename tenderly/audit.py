# tenderly/audit.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .core.logging import scrub_pii

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """What happened, who did it, and to which resource."""
    action: str
    actor_id: Optional[int]
    resource_type: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink:
    """Append-only destination for audit events. Implementations never raise."""

    def record(self, event: AuditEvent) -> None:
        raise NotImplementedError


class DatabaseAuditSink(AuditSink):
    """Writes each event as an ``audit_logs`` row in its own session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record(self, event: AuditEvent) -> None:
        try:
            db = self.session_factory()
        except Exception as e:
            logger.error(f"Failed to open audit session: {e}")
            return
        try:
            db.add(models.AuditLog(
                user_id=event.actor_id,
                action=event.action,
                resource_type=event.resource_type,
                resource_id=event.resource_id,
                details=scrub_pii(event.details),
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                timestamp=event.timestamp,
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to save audit event {event.action}: {e}")
        finally:
            db.close()


class MemoryAuditSink(AuditSink):
    """Keeps events in a list; used when no database sink is wired."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [e.action for e in self.events]


def safe_record(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Record an event without ever interrupting the calling operation."""
    if sink is None:
        return
    try:
        sink.record(event)
    except Exception as e:
        logger.error(f"Audit sink failure for {event.action}: {e}")
