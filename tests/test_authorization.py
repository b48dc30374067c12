"""Tests for the authorization engine – no store required."""

import pytest

from prestrack.auth.engine import AuthorizationEngine, owners
from prestrack.auth.permissions import (
    ROLE_PERMISSIONS,
    Action,
    Permission,
    Role,
    required_permissions,
)
from prestrack.auth.principal import Principal
from prestrack.errors import ForbiddenError, InvalidResourceTypeError
from prestrack.references import Reference


class RecordingAuditTrail:
    def __init__(self):
        self.decisions = []

    def record(self, decision):
        self.decisions.append(decision)


def _engine():
    audit = RecordingAuditTrail()
    return AuthorizationEngine(audit), audit


def _observation(subject="Patient/p1", **extra):
    return {
        "resourceType": "Observation",
        "id": "o1",
        "status": "final",
        "code": {"coding": [{"code": "8867-4"}]},
        "subject": {"reference": subject},
        **extra,
    }


def test_role_table_is_read_only():
    with pytest.raises(TypeError):
        ROLE_PERMISSIONS[Role.PATIENT] = frozenset()
    assert ROLE_PERMISSIONS[Role.ADMIN] == frozenset(Permission)


def test_required_permissions_for_clinical_types():
    assert Permission.FHIR_READ_OWN in required_permissions("Observation", Action.READ)
    assert required_permissions("Observation", "delete") == (Permission.FHIR_DELETE,)


def test_unknown_role_has_no_permissions():
    principal = Principal("x", Role.NURSE)  # built without the role table
    engine, _ = _engine()
    with pytest.raises(ForbiddenError) as exc:
        engine.authorize(principal, "Observation", Action.READ, target=_observation())
    assert exc.value.reason == "permission"


def test_unknown_resource_type_is_rejected_and_audited():
    engine, audit = _engine()
    with pytest.raises(InvalidResourceTypeError):
        engine.authorize(Principal.for_role("d1", "doctor"), "Spaceship", Action.READ)
    assert audit.decisions[-1].allowed is False
    assert audit.decisions[-1].reason == "resource_type"


def test_patient_cannot_delete_observations(patient_principal):
    engine, audit = _engine()
    with pytest.raises(ForbiddenError) as exc:
        engine.authorize(patient_principal, "Observation", Action.DELETE, target=_observation())
    assert exc.value.reason == "permission"
    assert audit.decisions[-1].allowed is False


def test_patient_reads_own_observation(patient_principal):
    engine, audit = _engine()
    decision = engine.authorize(patient_principal, "Observation", Action.READ,
                                target=_observation())
    assert decision.allowed
    assert audit.decisions == [decision]


def test_patient_cannot_read_another_patients_observation(patient_principal):
    engine, _ = _engine()
    with pytest.raises(ForbiddenError) as exc:
        engine.authorize(patient_principal, "Observation", Action.READ,
                         target=_observation(subject="Patient/p2"))
    assert exc.value.reason == "ownership"


def test_patient_read_without_target_is_denied(patient_principal):
    engine, _ = _engine()
    with pytest.raises(ForbiddenError):
        engine.authorize(patient_principal, "Observation", Action.READ, resource_id="o9")


def test_patient_creates_own_reading_but_not_someone_elses(patient_principal):
    engine, _ = _engine()
    assert engine.authorize(patient_principal, "Observation", Action.CREATE,
                            payload=_observation()).allowed
    with pytest.raises(ForbiddenError):
        engine.authorize(patient_principal, "Observation", Action.CREATE,
                         payload=_observation(subject="Patient/p2"))


def test_patient_cannot_reassign_own_observation(patient_principal):
    engine, _ = _engine()
    with pytest.raises(ForbiddenError):
        engine.authorize(
            patient_principal, "Observation", Action.UPDATE,
            target=_observation(), payload=_observation(subject="Patient/p2"),
        )


def test_patient_record_access_by_id(patient_principal):
    engine, _ = _engine()
    assert engine.authorize(patient_principal, "Patient", Action.READ, resource_id="p1").allowed
    with pytest.raises(ForbiddenError):
        engine.authorize(patient_principal, "Patient", Action.READ, resource_id="p2")
    with pytest.raises(ForbiddenError):
        engine.authorize(patient_principal, "Patient", Action.CREATE, payload={"gender": "female"})


def test_patient_search_narrowed_to_self(patient_principal):
    engine, _ = _engine()
    decision = engine.authorize_search(patient_principal, "Observation", {"code": "8867-4"})
    assert decision.owner_scope == Reference("Patient", "p1")

    decision = engine.authorize_search(patient_principal, "Observation", {"subject": "p1"})
    assert decision.owner_scope == Reference("Patient", "p1")


def test_patient_search_naming_other_patient_forbidden(patient_principal):
    engine, _ = _engine()
    with pytest.raises(ForbiddenError) as exc:
        engine.authorize_search(patient_principal, "Observation", {"subject": "Patient/p2"})
    assert exc.value.reason == "ownership"
    with pytest.raises(ForbiddenError):
        engine.authorize_search(patient_principal, "Observation", {"patient": "p1,p2"})


def test_patient_cannot_list_patients(patient_principal):
    engine, _ = _engine()
    with pytest.raises(ForbiddenError):
        engine.authorize_search(patient_principal, "Patient", {})
    assert engine.authorize_search(patient_principal, "Patient", {"_id": "p1"}).allowed


def test_clinician_search_is_not_narrowed(nurse):
    engine, _ = _engine()
    decision = engine.authorize_search(nurse, "Observation", {"subject": "Patient/p2"})
    assert decision.owner_scope is None


def test_facility_mismatch_forbidden(nurse):
    engine, _ = _engine()
    with pytest.raises(ForbiddenError) as exc:
        engine.authorize_search(nurse, "Appointment", {"facilityId": "F2"})
    assert exc.value.reason == "facility"
    with pytest.raises(ForbiddenError):
        engine.authorize(nurse, "Appointment", Action.CREATE,
                         payload={"status": "booked", "facilityId": "F2"})
    assert engine.authorize_search(nurse, "Appointment", {"facilityId": "F1"}).allowed


def test_admin_ignores_facility(admin):
    engine, _ = _engine()
    assert engine.authorize_search(admin, "Appointment", {"facilityId": "F2"}).allowed


def test_permission_checked_before_ownership(patient_principal):
    engine, _ = _engine()
    with pytest.raises(ForbiddenError) as exc:
        engine.authorize(patient_principal, "Questionnaire", Action.CREATE,
                         payload={"status": "active"})
    assert exc.value.reason == "permission"


def test_owners_of_various_shapes():
    assert owners("Patient", {"id": "p1"}) == {"p1"}
    assert owners("Observation", _observation()) == {"p1"}
    assert owners("Appointment", {
        "participant": [{"actor": {"reference": "Patient/p3"}},
                        {"actor": {"reference": "Practitioner/d1"}}],
    }) == {"p3"}
    assert owners("Communication", {"recipient": [{"reference": "Patient/p4"}]}) == {"p4"}
    assert owners("Appointment", {"patientId": "p5"}) == {"p5"}
    assert owners("Observation", {"subject": {"reference": "Group/g1"}}) == set()
