"""Shared fixtures: both store backends, principals and sample resources."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from prestrack.auth.principal import Principal
from prestrack.models import resource  # noqa: F401
from prestrack.models.database import Base
from prestrack.store.memory import InMemoryResourceStore
from prestrack.store.sql import SqlResourceStore


@pytest.fixture
def sqlite_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def memory_store():
    return InMemoryResourceStore()


@pytest.fixture
def sql_store(sqlite_session_factory):
    return SqlResourceStore(sqlite_session_factory)


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Runs a test once against each backend."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def patient_principal():
    return Principal.for_role("p1", "patient")


@pytest.fixture
def other_patient_principal():
    return Principal.for_role("p2", "patient")


@pytest.fixture
def nurse():
    return Principal.for_role("n1", "nurse", facility_id="F1")


@pytest.fixture
def doctor():
    return Principal.for_role("d1", "doctor", facility_id="F1")


@pytest.fixture
def admin():
    return Principal.for_role("a1", "admin")


def make_patient(patient_id="p1", birth_date="1995-04-02", practitioners=("Practitioner/d1",)):
    return {
        "resourceType": "Patient",
        "id": patient_id,
        "name": [{"given": ["Ada"], "family": "Mensah"}],
        "gender": "female",
        "birthDate": birth_date,
        "generalPractitioner": [{"reference": ref} for ref in practitioners],
    }


def make_observation(code="8867-4", value=120, subject="Patient/p1", display=None, **extra):
    coding = {"system": "http://loinc.org", "code": code}
    if display:
        coding["display"] = display
    observation = {
        "resourceType": "Observation",
        "status": "final",
        "code": {"coding": [coding]},
        "subject": {"reference": subject},
    }
    if value is not None:
        observation["valueQuantity"] = {"value": value, "unit": "bpm"}
    observation.update(extra)
    return observation


def make_bp_panel(systolic, diastolic, subject="Patient/p1"):
    return {
        "resourceType": "Observation",
        "status": "final",
        "code": {"coding": [{"system": "http://loinc.org", "code": "55284-4",
                             "display": "Blood pressure"}]},
        "subject": {"reference": subject},
        "component": [
            {"code": {"coding": [{"system": "http://loinc.org", "code": "8480-6"}]},
             "valueQuantity": {"value": systolic, "unit": "mmHg"}},
            {"code": {"coding": [{"system": "http://loinc.org", "code": "8462-4"}]},
             "valueQuantity": {"value": diastolic, "unit": "mmHg"}},
        ],
    }
