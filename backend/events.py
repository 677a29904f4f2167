# events.py - Change events and email intents produced by the service layer
#
# Services never talk to sockets or mail providers. They return an Outbox
# describing what happened; routers hand it to Notifier.dispatch as a
# background task, which runs after the transaction has committed. Every
# broadcast and every send is attempted independently and failures are only
# logged.

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from email_service import EmailService, create_email_service, render_template
from realtime import manager
from telemetry import service_span

logger = logging.getLogger("stackflow.events")

APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:8000").rstrip("/")

# Actions
CREATED = "created"
UPDATED = "updated"
DELETED = "deleted"
COMMENTED = "commented"
ROLE_UPDATED = "roleUpdated"
VERIFIED = "verified"


@dataclass
class ChangeEvent:
    entity_type: str
    entity_id: int
    action: str
    old_status: Optional[str] = None

    def to_message(self) -> dict:
        message = {
            "type": "entity.changed",
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "action": self.action,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.old_status is not None:
            message["oldStatus"] = self.old_status
        return message


@dataclass
class EmailIntent:
    template: str
    subject: str
    recipients: List[str]
    placeholders: Dict[str, str] = field(default_factory=dict)


@dataclass
class Outbox:
    events: List[ChangeEvent] = field(default_factory=list)
    emails: List[EmailIntent] = field(default_factory=list)

    def record(self, entity_type: str, entity_id: int, action: str, old_status: Optional[str] = None):
        self.events.append(ChangeEvent(entity_type, entity_id, action, old_status))

    def email(self, template: str, subject: str, recipients: List[str], **placeholders):
        if not recipients:
            return
        placeholders.setdefault("CurrentYear", str(datetime.now(timezone.utc).year))
        self.emails.append(EmailIntent(
            template=template,
            subject=subject,
            recipients=list(recipients),
            placeholders={k: "" if v is None else str(v) for k, v in placeholders.items()},
        ))


def ticket_recipients(*users) -> List[str]:
    """Addresses of the given users, deduplicated, skipping deleted or unverified accounts."""
    seen = set()
    addresses = []
    for user in users:
        if user is None or user.is_deleted or not user.is_verified:
            continue
        if user.id in seen:
            continue
        seen.add(user.id)
        addresses.append(user.email)
    return addresses


def ticket_link(ticket_id: int) -> str:
    return f"{APP_BASE_URL}/tickets/{ticket_id}"


class Notifier:
    """Fans an Outbox out to connected clients and the email provider"""

    def __init__(self, broadcaster=None, email_service: Optional[EmailService] = None):
        self.broadcaster = broadcaster if broadcaster is not None else manager
        self.email_service = email_service or create_email_service()

    async def dispatch(self, outbox: Outbox) -> None:
        attributes = {"stackflow.events": len(outbox.events), "stackflow.emails": len(outbox.emails)}
        with service_span("notifier.dispatch", **attributes) as span:
            failures = 0
            for event in outbox.events:
                try:
                    await self.broadcaster.broadcast(event.to_message())
                except Exception as e:
                    failures += 1
                    logger.error(
                        f"Broadcast of {event.entity_type}/{event.entity_id} {event.action} failed: {e}"
                    )

            for intent in outbox.emails:
                try:
                    body = render_template(intent.template, intent.placeholders)
                except Exception as e:
                    failures += len(intent.recipients)
                    logger.error(f"{intent.template} email could not be rendered: {e}")
                    continue
                for to in intent.recipients:
                    try:
                        if not await self.email_service.send(to, intent.subject, body):
                            logger.warning(f"{intent.template} email to {to} was not delivered")
                    except Exception as e:
                        failures += 1
                        logger.error(f"{intent.template} email to {to} failed: {e}")

            span.set_attribute("stackflow.failures", failures)


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    """FastAPI dependency; tests override it to capture outboxes."""
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier
