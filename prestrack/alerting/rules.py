"""
Clinical threshold rules.

``evaluate`` is a pure function of an Observation (plus, for age-based rules,
the patient it is about). It decides which conditions a reading breaches and
which notices should go out; it never touches the store. Applying the result
is ``prestrack.alerting.pipeline``'s job.

Measurement codes are LOINC, condition codes SNOMED CT.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from prestrack.references import Reference, display_name, reference_of
from prestrack.services.notifications import NotificationIntent, Urgency

SNOMED = "http://snomed.info/sct"
FLAG_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/flag-category"
FLAG_DETAIL_EXTENSION = "http://hl7.org/fhir/StructureDefinition/flag-detail"

BP_PANEL = "55284-4"
SYSTOLIC = "8480-6"
DIASTOLIC = "8462-4"
HEART_RATE = "8867-4"
FETAL_HEART_RATE = "55283-6"
GLUCOSE_BLOOD = "2339-0"
GLUCOSE_RANDOM = "33747-0"
GLUCOSE_FASTING = "1558-6"
GLUCOSE_FASTING_PANEL = "88365-2"
BODY_TEMPERATURE = "8310-5"
PREGNANCY_STATUS = "82810-3"


@dataclass(frozen=True)
class Condition:
    code: str
    display: str
    text: str

    def to_codeable_concept(self) -> dict[str, Any]:
        return {
            "coding": [{"system": SNOMED, "code": self.code, "display": self.display}],
            "text": self.text,
        }


HYPERTENSION = Condition("38341003", "Hypertension", "High Blood Pressure")
ABNORMAL_FETAL_HEART_RATE = Condition(
    "364612004", "Abnormal fetal heart rate", "Abnormal Fetal Heart Rate"
)
HYPERGLYCEMIA = Condition("80394007", "Hyperglycemia", "High Blood Glucose")
FEVER = Condition("386661006", "Fever", "Fever")
HYPOTHERMIA = Condition("386689009", "Hypothermia", "Low Body Temperature")
TEENAGE_PREGNANCY = Condition("134441001", "Teenage pregnancy", "Teenage Pregnancy")
ADVANCED_MATERNAL_AGE = Condition("127364007", "Elderly primigravida", "Advanced Maternal Age")


@dataclass(frozen=True)
class Threshold:
    measurement: str
    above: float | None = None
    below: float | None = None

    def breached(self, value: float) -> bool:
        if self.above is not None and value > self.above:
            return True
        return self.below is not None and value < self.below


@dataclass(frozen=True)
class ThresholdRule:
    name: str
    codes: frozenset[str]
    thresholds: tuple[Threshold, ...]
    condition: Condition

    def breaches(self, readings: dict[str, float]) -> list[str]:
        """Codes of the readings that cross this rule's thresholds."""
        return [
            t.measurement
            for t in self.thresholds
            if t.measurement in readings and t.breached(readings[t.measurement])
        ]


THRESHOLD_RULES: tuple[ThresholdRule, ...] = (
    ThresholdRule(
        "hypertension",
        frozenset({BP_PANEL, SYSTOLIC, DIASTOLIC}),
        (Threshold(SYSTOLIC, above=140), Threshold(DIASTOLIC, above=90)),
        HYPERTENSION,
    ),
    ThresholdRule(
        "fetal-heart-rate",
        frozenset({HEART_RATE, FETAL_HEART_RATE}),
        (
            Threshold(HEART_RATE, above=160, below=110),
            Threshold(FETAL_HEART_RATE, above=160, below=110),
        ),
        ABNORMAL_FETAL_HEART_RATE,
    ),
    ThresholdRule(
        "hyperglycemia",
        frozenset({GLUCOSE_BLOOD, GLUCOSE_RANDOM, GLUCOSE_FASTING, GLUCOSE_FASTING_PANEL}),
        (
            Threshold(GLUCOSE_BLOOD, above=200),
            Threshold(GLUCOSE_RANDOM, above=200),
            Threshold(GLUCOSE_FASTING, above=126),
            Threshold(GLUCOSE_FASTING_PANEL, above=126),
        ),
        HYPERGLYCEMIA,
    ),
    ThresholdRule(
        "fever",
        frozenset({BODY_TEMPERATURE}),
        (Threshold(BODY_TEMPERATURE, above=38.5),),
        FEVER,
    ),
    ThresholdRule(
        "hypothermia",
        frozenset({BODY_TEMPERATURE}),
        (Threshold(BODY_TEMPERATURE, below=35),),
        HYPOTHERMIA,
    ),
)

# Borderline readings: worth a routine notice, not a flag
NOTABLE_THRESHOLDS: tuple[Threshold, ...] = (
    Threshold(SYSTOLIC, above=130),
    Threshold(DIASTOLIC, above=85),
    Threshold(GLUCOSE_BLOOD, above=140),
    Threshold(GLUCOSE_RANDOM, above=140),
    Threshold(GLUCOSE_FASTING, above=95),
    Threshold(GLUCOSE_FASTING_PANEL, above=95),
    Threshold(BODY_TEMPERATURE, above=37.5),
)

TEEN_AGE_LIMIT = 18
ADVANCED_AGE_LIMIT = 35


def _codes(concept: Any) -> set[str]:
    if not isinstance(concept, dict):
        return set()
    return {
        c["code"] for c in concept.get("coding") or []
        if isinstance(c, dict) and isinstance(c.get("code"), str)
    }


def _quantity(element: dict[str, Any]) -> float | None:
    quantity = element.get("valueQuantity")
    value = quantity.get("value") if isinstance(quantity, dict) else None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def readings(observation: dict[str, Any]) -> dict[str, float]:
    """Numeric values keyed by LOINC code, from the observation and its components."""
    values: dict[str, float] = {}
    elements = [observation, *(c for c in observation.get("component") or [] if isinstance(c, dict))]
    for element in elements:
        value = _quantity(element)
        if value is None:
            continue
        for code in _codes(element.get("code")):
            values[code] = value
    return values


def observation_codes(observation: dict[str, Any]) -> set[str]:
    return _codes(observation.get("code"))


def maternal_age(birth_date: Any, today: date) -> float | None:
    if not isinstance(birth_date, str):
        return None
    parts = birth_date.split("-")
    try:
        born = date(int(parts[0]), int(parts[1]) if len(parts) > 1 else 1,
                    int(parts[2]) if len(parts) > 2 else 1)
    except (ValueError, IndexError):
        return None
    return (today - born).days / 365.25


def reading_label(observation: dict[str, Any]) -> str:
    codings = (observation.get("code") or {}).get("coding") or [{}]
    display = codings[0].get("display") if isinstance(codings[0], dict) else None
    quantity = observation.get("valueQuantity") or {}
    value, unit = quantity.get("value"), quantity.get("unit")
    if display and value is not None:
        return f"{display}: {value}{f' {unit}' if unit else ''}"
    return display or "Health measurement"


@dataclass(frozen=True)
class FlagIntent:
    subject: Reference
    condition: Condition
    rule: str
    observation: Reference | None = None

    def to_resource(self, started: str) -> dict[str, Any]:
        flag: dict[str, Any] = {
            "resourceType": "Flag",
            "status": "active",
            "category": [
                {"coding": [{"system": FLAG_CATEGORY_SYSTEM, "code": "clinical",
                             "display": "Clinical"}]}
            ],
            "code": self.condition.to_codeable_concept(),
            "subject": self.subject.to_fhir(),
            "period": {"start": started},
        }
        if self.observation is not None:
            flag["extension"] = [
                {"url": FLAG_DETAIL_EXTENSION, "valueReference": self.observation.to_fhir()}
            ]
        return flag


@dataclass
class AlertEvaluation:
    flags: list[FlagIntent] = field(default_factory=list)
    notifications: list[NotificationIntent] = field(default_factory=list)


def _recipients(care_team: Iterable[Reference], subject: Reference) -> tuple[Reference, ...]:
    ordered: list[Reference] = []
    for ref in [*care_team, subject]:
        if ref not in ordered:
            ordered.append(ref)
    return tuple(ordered)


def evaluate(
    observation: dict[str, Any],
    *,
    patient: dict[str, Any] | None = None,
    care_team: Iterable[Reference] = (),
    today: date | None = None,
) -> AlertEvaluation:
    subject = reference_of(observation.get("subject"))
    if subject is None or subject.resource_type != "Patient":
        return AlertEvaluation()

    codes = observation_codes(observation)
    values = readings(observation)
    source = Reference("Observation", observation["id"]) if observation.get("id") else None
    recipients = _recipients(care_team, subject)
    result = AlertEvaluation()

    for rule in THRESHOLD_RULES:
        if not codes & rule.codes:
            continue
        if rule.breaches(values):
            result.flags.append(FlagIntent(subject, rule.condition, rule.name, source))

    if PREGNANCY_STATUS in codes and patient and patient.get("birthDate"):
        age = maternal_age(patient["birthDate"], today or date.today())
        if age is not None and age < TEEN_AGE_LIMIT:
            result.flags.append(FlagIntent(subject, TEENAGE_PREGNANCY, "maternal-age", source))
        elif age is not None and age > ADVANCED_AGE_LIMIT:
            result.flags.append(FlagIntent(subject, ADVANCED_MATERNAL_AGE, "maternal-age", source))

    who = display_name(patient, fallback=subject.format())
    for intent in result.flags:
        result.notifications.append(
            NotificationIntent(
                subject=subject,
                recipients=recipients,
                message=(
                    f"HIGH-RISK CONDITION DETECTED for {who}: {intent.condition.display}. "
                    "Please review patient data immediately."
                ),
                urgency=Urgency.HIGH,
                condition_code=intent.condition.code,
            )
        )

    if not result.flags and any(
        t.measurement in values and t.breached(values[t.measurement]) for t in NOTABLE_THRESHOLDS
    ):
        result.notifications.append(
            NotificationIntent(
                subject=subject,
                recipients=recipients,
                message=(
                    f"New health data recorded: {reading_label(observation)}. "
                    "Please review your recent readings."
                ),
                urgency=Urgency.ROUTINE,
            )
        )

    return result
