"""
Applies rule evaluations to the store.

For each observation written:
    1. resolve the patient and their care team (missing referents are tolerated)
    2. evaluate the threshold rules
    3. raise a Flag per breached condition unless one is already active
    4. dispatch the notices for flags actually raised, plus any routine notice

Re-running ``process`` on the same observation never raises a second Flag:
the search in step 3 catches the common case and the store's active-flag
index catches the race.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from prestrack.alerting.rules import FlagIntent, evaluate
from prestrack.auth.principal import Principal
from prestrack.config import settings
from prestrack.errors import ConflictError
from prestrack.references import Reference, reference_of, resolve
from prestrack.services.notifications import NotificationDispatcher, NotificationIntent
from prestrack.store.base import ResourceStore, format_instant, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AlertOutcome:
    flags: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    notifications: list[NotificationIntent] = field(default_factory=list)
    communications: list[dict[str, Any]] = field(default_factory=list)


def care_team(
    patient: dict[str, Any] | None,
    principal: Principal | None = None,
    fallback: Iterable[str] | None = None,
) -> list[Reference]:
    """Practitioners to notify about a patient, in priority order, without duplicates."""
    team: list[Reference] = []

    def add(ref: Reference | None) -> None:
        if ref is not None and ref not in team:
            team.append(ref)

    for gp in (patient or {}).get("generalPractitioner") or []:
        add(reference_of(gp))
    if principal is not None and not principal.is_patient:
        add(principal.reference)
    for value in settings.CARE_TEAM_FALLBACK if fallback is None else fallback:
        add(Reference.parse(value, "Practitioner"))
    return team


class AlertingPipeline:
    def __init__(
        self,
        store: ResourceStore,
        dispatcher: NotificationDispatcher | None = None,
        fallback_care_team: Iterable[str] | None = None,
    ):
        self.store = store
        self.dispatcher = dispatcher or NotificationDispatcher(store)
        self.fallback_care_team = fallback_care_team

    def process(
        self,
        observation: dict[str, Any],
        principal: Principal | None = None,
        today: date | None = None,
    ) -> AlertOutcome:
        outcome = AlertOutcome()
        subject = reference_of(observation.get("subject"))
        if subject is None or subject.resource_type != "Patient":
            logger.debug("Observation %s has no patient subject, skipping alerts",
                         observation.get("id"))
            return outcome

        patient = resolve(self.store, subject)
        team = care_team(patient or None, principal, self.fallback_care_team)
        evaluation = evaluate(observation, patient=patient or None, care_team=team, today=today)

        raised: set[str] = set()
        for intent in evaluation.flags:
            flag = self._raise_flag(intent)
            if flag is None:
                outcome.skipped.append(intent.condition.code)
                continue
            outcome.flags.append(flag)
            raised.add(intent.condition.code)

        for notice in evaluation.notifications:
            if notice.condition_code is not None and notice.condition_code not in raised:
                continue
            outcome.notifications.append(notice)
            communication = self.dispatcher.dispatch(notice)
            if communication is not None:
                outcome.communications.append(communication)

        if outcome.flags or outcome.notifications:
            logger.info(
                "Observation %s: %d flag(s) raised, %d already active, %d notice(s) sent",
                observation.get("id"), len(outcome.flags), len(outcome.skipped),
                len(outcome.notifications),
            )
        return outcome

    def _raise_flag(self, intent: FlagIntent) -> dict[str, Any] | None:
        existing = self.store.search(
            "Flag",
            {
                "subject": intent.subject.format(),
                "code": intent.condition.code,
                "status": "active",
            },
        )
        if existing:
            logger.info("Flag %s already active for %s", intent.condition.code, intent.subject)
            return None
        try:
            return self.store.create("Flag", intent.to_resource(format_instant(utcnow())))
        except ConflictError:
            logger.info("Lost race raising flag %s for %s", intent.condition.code,
                         intent.subject)
            return None
