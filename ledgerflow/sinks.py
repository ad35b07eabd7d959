"""Fire-and-forget audit and notification sinks.

Failures inside a sink are logged and never reach the caller; a run's status
does not depend on whether its audit trail or notifications were delivered.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from .utils.clock import utcnow

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("ledgerflow.audit")


class AuditEvent(BaseModel):
    organization_id: Optional[str] = None
    run_id: Optional[str] = None
    step_id: Optional[str] = None
    action: str
    outcome: str = "success"
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    recipient_ids: List[str]
    subject: str
    body: str = ""
    run_id: Optional[str] = None
    step_id: Optional[str] = None


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None:
        """Persist or forward an audit event."""


class NotificationSink(Protocol):
    async def notify(self, notification: Notification) -> None:
        """Deliver a notification to its recipients."""


class LoggingAuditSink:
    """Writes audit events to the ``ledgerflow.audit`` logger."""

    async def record(self, event: AuditEvent) -> None:
        audit_logger.info(event.model_dump_json())


class LoggingNotificationSink:
    async def notify(self, notification: Notification) -> None:
        logger.info(
            f"Notify {','.join(notification.recipient_ids)}: {notification.subject}"
        )


class CollectingAuditSink:
    """Keeps audit events in memory; handy for tests and local runs."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> Sequence[str]:
        return [event.action for event in self.events]


class CollectingNotificationSink:
    def __init__(self) -> None:
        self.notifications: List[Notification] = []

    async def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)


async def emit_audit(sink: Optional[AuditSink], event: AuditEvent) -> None:
    if sink is None:
        return
    try:
        await sink.record(event)
    except Exception:
        logger.exception(f"Audit sink failed for action {event.action}")


async def emit_notification(
    sink: Optional[NotificationSink], notification: Notification
) -> None:
    if sink is None or not notification.recipient_ids:
        return
    try:
        await sink.notify(notification)
    except Exception:
        logger.exception(f"Notification sink failed for '{notification.subject}'")
