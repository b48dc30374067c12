"""
Notification dispatch.

The alerting pipeline produces ``NotificationIntent`` values. Dispatching one
records it as a Communication (the in-app inbox entry, unread until the
recipient marks it) and then hands it to the egress collaborator that picks
email/SMS/push per recipient. Egress failures are logged and swallowed here:
they must never undo the clinical write that caused them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from prestrack.errors import ClinicalDataError, DependencyUnavailableError
from prestrack.references import Reference
from prestrack.store.base import ResourceStore, format_instant, utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_CATEGORY_SYSTEM = "http://prestack.com/fhir/CodeSystem/communication-category"
NOTIFICATION_TYPE_SYSTEM = "http://prestack.com/fhir/CodeSystem/notification-type"
UNREAD = "in-progress"
READ = "completed"


class Urgency(str, Enum):
    HIGH = "high"
    ROUTINE = "routine"


@dataclass(frozen=True)
class NotificationIntent:
    subject: Reference
    recipients: tuple[Reference, ...]
    message: str
    urgency: Urgency = Urgency.ROUTINE
    # the flag condition this notice announces, None for standalone notices
    condition_code: str | None = None
    category: str = "health"
    about: Reference | None = None


def communication_payload(intent: NotificationIntent) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "resourceType": "Communication",
        "status": UNREAD,
        "category": [{"coding": [{"system": NOTIFICATION_CATEGORY_SYSTEM, "code": "notification"}]}],
        "priority": "urgent" if intent.urgency is Urgency.HIGH else "routine",
        "subject": intent.subject.to_fhir(),
        "recipient": [r.to_fhir() for r in intent.recipients],
        "payload": [{"contentString": intent.message}],
        "reasonCode": [{"coding": [{"system": NOTIFICATION_TYPE_SYSTEM, "code": intent.category}]}],
        "sent": format_instant(utcnow()),
    }
    if intent.about is not None:
        payload["about"] = [intent.about.to_fhir()]
    return payload


class Notifier(Protocol):
    """Outbound delivery collaborator (email, SMS, push)."""

    def deliver(self, intent: NotificationIntent) -> None:
        ...


class LoggingNotifier:
    def deliver(self, intent: NotificationIntent) -> None:
        logger.info(
            "Notify %s about %s [%s]: %s",
            ", ".join(r.format() for r in intent.recipients),
            intent.subject,
            intent.urgency.value,
            intent.message,
        )


class NotificationDispatcher:
    def __init__(self, store: ResourceStore, notifier: Notifier | None = None):
        self.store = store
        self.notifier = notifier or LoggingNotifier()

    def dispatch(self, intent: NotificationIntent) -> dict[str, Any] | None:
        """Record and deliver ``intent``. Returns the Communication, or None if it could not be stored."""
        try:
            communication = self.store.create("Communication", communication_payload(intent))
        except ClinicalDataError as exc:
            logger.error("Could not record notification for %s: %s", intent.subject, exc.message)
            return None

        try:
            self.notifier.deliver(intent)
        except Exception as exc:
            failure = DependencyUnavailableError(
                f"Delivery of Communication/{communication['id']} failed: {exc}"
            )
            logger.error("%s: %s", failure.kind, failure.message)
        return communication
