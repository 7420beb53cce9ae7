from __future__ import annotations

import uuid
from typing import Protocol

from opentelemetry import trace
from sqlalchemy.orm import Session

from dealdesk.context import get_correlation_id
from dealdesk.deals.lifecycle import NotificationRequest
from dealdesk.deals.models import NotificationIntent


tracer = trace.get_tracer("dealdesk.collaborators.notifications")


class NotificationSink(Protocol):
    def send(self, session: Session, request: NotificationRequest, *, deal_id: uuid.UUID | None) -> uuid.UUID: ...


class DbNotificationSink:
    """Queues outbound messages as ``NotificationIntent`` rows for a delivery worker."""

    def send(self, session: Session, request: NotificationRequest, *, deal_id: uuid.UUID | None) -> uuid.UUID:
        with tracer.start_as_current_span("notifications.send") as span:
            span.set_attribute("notification.intent_type", request.intent_type)
            intent = NotificationIntent(
                intent_type=request.intent_type,
                recipient_email=request.recipient_email,
                subject=request.subject,
                body=request.body,
                deal_id=deal_id,
                correlation_id=get_correlation_id(),
            )
            session.add(intent)
            session.flush()
            span.set_attribute("notification.tracking_id", str(intent.tracking_id))
            return intent.id
