"""
Missed appointment sweep.

Walks active CarePlans for scheduled activities whose window has closed and
for which no Encounter was recorded, and sends the patient and their care
team a routine notice. A notice already sent for the same activity is not
sent again, so the sweep can run on a schedule.

Run from cron with ``python -m prestrack.alerting.missed_appointments``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from prestrack.alerting.pipeline import care_team
from prestrack.config import settings
from prestrack.references import Reference, reference_of, resolve
from prestrack.search.translator import parse_instant
from prestrack.services.notifications import NotificationDispatcher, NotificationIntent, Urgency
from prestrack.store.base import ResourceStore, format_instant, utcnow

logger = logging.getLogger(__name__)


def _window(detail: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    period = ((detail.get("scheduledTiming") or {}).get("repeat") or {}).get("boundsPeriod")
    period = period or detail.get("scheduledPeriod") or {}
    return parse_instant(period.get("start")), parse_instant(period.get("end"))


def _already_notified(store: ResourceStore, subject: Reference, plan: Reference,
                      description: str) -> bool:
    return bool(
        store.search(
            "Communication",
            {"subject": subject.format(), "about": plan.format(), "_text": description},
        )
    )


def check_missed_appointments(
    store: ResourceStore,
    dispatcher: NotificationDispatcher,
    now: datetime | None = None,
) -> list[NotificationIntent]:
    now = now or utcnow()
    sent: list[NotificationIntent] = []

    for plan in store.search("CarePlan", {"status": "active"}):
        subject = reference_of(plan.get("subject"))
        if subject is None or subject.resource_type != "Patient":
            continue
        plan_ref = Reference.of(plan)

        for activity in plan.get("activity") or []:
            detail = (activity or {}).get("detail") or {}
            if detail.get("status") != "scheduled":
                continue
            start, end = _window(detail)
            if end is None or end >= now:
                continue

            date_terms = [f"le{format_instant(end)}"]
            if start is not None:
                date_terms.insert(0, f"ge{format_instant(start)}")
            encounters = store.search(
                "Encounter", {"subject": subject.format(), "date": ",".join(date_terms)}
            )
            if encounters:
                continue

            description = detail.get("description") or "scheduled visit"
            if _already_notified(store, subject, plan_ref, description):
                continue

            patient = resolve(store, subject)
            recipients = tuple([*care_team(patient or None), subject])
            intent = NotificationIntent(
                subject=subject,
                recipients=recipients,
                message=f"Missed appointment: {description}. Please reschedule.",
                urgency=Urgency.ROUTINE,
                category="appointment",
                about=plan_ref,
            )
            dispatcher.dispatch(intent)
            sent.append(intent)

    logger.info("Missed appointment sweep: %d notice(s) sent", len(sent))
    return sent


def main() -> None:
    from prestrack.api.routes import build_store

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(levelname)s | %(name)s | %(message)s",
    )
    store = build_store()
    check_missed_appointments(store, NotificationDispatcher(store))


if __name__ == "__main__":
    main()
