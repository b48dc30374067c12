"""Tests for applying alerts to the store and dispatching notifications."""

from datetime import datetime, timezone

import pytest

from conftest import make_bp_panel, make_observation, make_patient
from prestrack.alerting.missed_appointments import check_missed_appointments
from prestrack.alerting.pipeline import AlertingPipeline, care_team
from prestrack.auth.principal import Principal
from prestrack.references import Reference
from prestrack.services.notifications import NotificationDispatcher


class RecordingNotifier:
    def __init__(self):
        self.delivered = []

    def deliver(self, intent):
        self.delivered.append(intent)


class BrokenNotifier:
    def deliver(self, intent):
        raise ConnectionError("SMTP relay unreachable")


def _pipeline(store, notifier=None):
    notifier = notifier or RecordingNotifier()
    return AlertingPipeline(store, NotificationDispatcher(store, notifier), fallback_care_team=[]), notifier


def test_abnormal_reading_raises_one_flag_and_notifies(store):
    store.create("Patient", make_patient("p1"))
    observation = store.create("Observation", make_observation("8867-4", 180))
    pipeline, notifier = _pipeline(store)

    outcome = pipeline.process(observation)

    [flag] = store.search("Flag", {"subject": "Patient/p1", "status": "active"})
    assert outcome.flags == [flag]
    assert flag["code"]["coding"][0]["code"] == "364612004"
    assert len(notifier.delivered) == 1
    [communication] = store.search("Communication", {"recipient": "Practitioner/d1"})
    assert communication["status"] == "in-progress"
    assert communication["priority"] == "urgent"


def test_processing_twice_keeps_a_single_flag(store):
    store.create("Patient", make_patient("p1"))
    pipeline, notifier = _pipeline(store)
    first = store.create("Observation", make_observation("8867-4", 180))
    second = store.create("Observation", make_observation("8867-4", 175))

    pipeline.process(first)
    pipeline.process(first)
    outcome = pipeline.process(second)

    assert len(store.search("Flag", {"code": "364612004", "status": "active"})) == 1
    assert outcome.flags == []
    assert outcome.skipped == ["364612004"]
    # only the first raise notified anyone
    assert len(notifier.delivered) == 1


def test_new_flag_after_previous_one_inactivated(store):
    store.create("Patient", make_patient("p1"))
    pipeline, _ = _pipeline(store)
    pipeline.process(store.create("Observation", make_observation("8867-4", 180)))
    [flag] = store.search("Flag", {})
    store.update("Flag", flag["id"], {**flag, "status": "inactive"})

    outcome = pipeline.process(store.create("Observation", make_observation("8867-4", 180)))

    assert len(outcome.flags) == 1
    assert len(store.search("Flag", {"status": "active"})) == 1


def test_missing_patient_is_tolerated(store):
    observation = store.create("Observation", make_observation("8867-4", 180, subject="Patient/ghost"))
    pipeline, notifier = _pipeline(store)

    outcome = pipeline.process(observation)

    assert len(outcome.flags) == 1
    assert notifier.delivered[0].recipients == (Reference("Patient", "ghost"),)


def test_notifier_failure_does_not_undo_flag(store, caplog):
    store.create("Patient", make_patient("p1"))
    pipeline, _ = _pipeline(store, BrokenNotifier())

    outcome = pipeline.process(store.create("Observation", make_observation("8867-4", 90)))

    assert len(outcome.flags) == 1
    assert len(store.search("Flag", {})) == 1
    # the inbox entry is still recorded
    assert len(outcome.communications) == 1
    assert "DependencyUnavailable" in caplog.text


def test_notable_reading_sends_routine_notice(store):
    store.create("Patient", make_patient("p1"))
    pipeline, notifier = _pipeline(store)

    outcome = pipeline.process(store.create("Observation", make_bp_panel(135, 80)))

    assert outcome.flags == []
    assert [n.urgency.value for n in notifier.delivered] == ["routine"]


def test_care_team_order_and_dedup():
    patient = make_patient(practitioners=("Practitioner/d1", "Practitioner/d2"))
    writer = Principal.for_role("d2", "nurse")
    team = care_team(patient, writer, fallback=["d9", "Practitioner/d1"])
    assert team == [
        Reference("Practitioner", "d1"),
        Reference("Practitioner", "d2"),
        Reference("Practitioner", "d9"),
    ]


def test_patient_writer_is_not_added_to_care_team(patient_principal):
    assert care_team(make_patient(practitioners=()), patient_principal, fallback=[]) == []


def _care_plan(end, status="scheduled"):
    return {
        "resourceType": "CarePlan",
        "status": "active",
        "intent": "plan",
        "subject": {"reference": "Patient/p1"},
        "activity": [
            {
                "detail": {
                    "status": status,
                    "description": "ANC visit",
                    "scheduledTiming": {
                        "repeat": {"boundsPeriod": {"start": "2024-05-01T08:00:00Z", "end": end}}
                    },
                }
            }
        ],
    }


def test_missed_appointment_notified_once(store):
    store.create("Patient", make_patient("p1"))
    store.create("CarePlan", _care_plan("2024-05-01T17:00:00Z"))
    dispatcher = NotificationDispatcher(store, RecordingNotifier())
    now = datetime(2024, 5, 3, tzinfo=timezone.utc)

    sent = check_missed_appointments(store, dispatcher, now)
    again = check_missed_appointments(store, dispatcher, now)

    assert len(sent) == 1
    assert again == []
    assert "ANC visit" in sent[0].message
    assert Reference("Practitioner", "d1") in sent[0].recipients


def test_attended_or_future_appointments_are_not_missed(store):
    store.create("Patient", make_patient("p1"))
    store.create("CarePlan", _care_plan("2024-05-01T17:00:00Z"))
    store.create("CarePlan", _care_plan("2024-06-01T17:00:00Z"))
    store.create("CarePlan", _care_plan("2024-04-01T17:00:00Z", status="completed"))
    store.create("Encounter", {
        "status": "finished",
        "subject": {"reference": "Patient/p1"},
        "period": {"start": "2024-05-01T10:00:00Z"},
    })
    dispatcher = NotificationDispatcher(store, RecordingNotifier())

    sent = check_missed_appointments(store, dispatcher, datetime(2024, 5, 3, tzinfo=timezone.utc))

    assert sent == []


@pytest.mark.parametrize("subject", ["Device/dv1", None])
def test_observation_without_patient_subject_is_skipped(memory_store, subject):
    observation = make_observation("8867-4", 200)
    if subject:
        observation["subject"] = {"reference": subject}
    else:
        del observation["subject"]
    pipeline, notifier = _pipeline(memory_store)

    outcome = pipeline.process(observation)

    assert outcome.flags == [] and notifier.delivered == []
