"""Resource store contract, run against both the in-memory and SQLite-backed stores."""

import threading

import pytest
from sqlalchemy import event

from conftest import make_observation, make_patient
from prestrack.errors import ConflictError, InvalidResourceTypeError, NotFoundError
from prestrack.search.translator import parse_instant
from prestrack.store.base import new_resource_id
from prestrack.store.memory import KEY_LOCK_STRIPES


def _make_flag(subject="Patient/p1", code="38341003", status="active"):
    return {
        "resourceType": "Flag",
        "status": status,
        "code": {"coding": [{"system": "http://snomed.info/sct", "code": code}]},
        "subject": {"reference": subject},
    }


def test_create_assigns_id_and_meta(store):
    created = store.create("Observation", make_observation())

    assert created["resourceType"] == "Observation"
    assert created["id"].startswith("observation-")
    assert created["meta"]["versionId"] == 1
    assert created["meta"]["lastUpdated"].endswith("Z")
    assert created["meta"]["profile"][0].endswith("/Observation")


def test_create_then_read_returns_same_document(store):
    created = store.create("Observation", make_observation(note=[{"text": "after lunch"}]))
    assert store.read("Observation", created["id"]) == created


def test_caller_supplied_id_and_profile_are_kept(store):
    created = store.create(
        "Patient", {**make_patient("p42"), "meta": {"profile": ["http://example.org/p"]}}
    )
    assert created["id"] == "p42"
    assert created["meta"]["profile"] == ["http://example.org/p"]


def test_duplicate_id_conflicts(store):
    store.create("Patient", make_patient("p1"))
    with pytest.raises(ConflictError):
        store.create("Patient", make_patient("p1"))


def test_unknown_type_rejected(store):
    with pytest.raises(InvalidResourceTypeError):
        store.create("Spaceship", {"name": "x"})
    with pytest.raises(InvalidResourceTypeError):
        store.search("Spaceship", {})


def test_read_missing_raises_not_found(store):
    with pytest.raises(NotFoundError):
        store.read("Patient", "nobody")


def test_update_increments_version_and_replaces_document(store):
    created = store.create("Observation", make_observation(value=120, note=[{"text": "a"}]))
    first = store.update("Observation", created["id"], make_observation(value=130))
    second = store.update("Observation", created["id"], {**make_observation(value=140),
                                                         "id": "ignored"})

    assert first["meta"]["versionId"] == 2
    assert second["meta"]["versionId"] == 3
    assert second["id"] == created["id"]
    assert "note" not in second
    assert second["valueQuantity"]["value"] == 140
    assert parse_instant(second["meta"]["lastUpdated"]) >= parse_instant(first["meta"]["lastUpdated"])
    assert second["meta"]["profile"] == created["meta"]["profile"]


def test_update_missing_raises_not_found(store):
    with pytest.raises(NotFoundError):
        store.update("Observation", "missing", make_observation())


def test_delete_then_read_not_found(store):
    created = store.create("Observation", make_observation())
    store.delete("Observation", created["id"])
    with pytest.raises(NotFoundError):
        store.read("Observation", created["id"])
    with pytest.raises(NotFoundError):
        store.delete("Observation", created["id"])


def test_search_without_params_returns_partition_in_insertion_order(store):
    ids = [store.create("Observation", make_observation(value=v))["id"] for v in (1, 2, 3)]
    store.create("Patient", make_patient("p1"))

    found = store.search("Observation", {})
    assert [r["id"] for r in found] == ids


def test_returned_documents_are_copies(store):
    created = store.create("Observation", make_observation())
    created["status"] = "cancelled"
    created["code"]["coding"][0]["code"] = "tampered"

    stored = store.read("Observation", created["id"])
    assert stored["status"] == "final"
    assert stored["code"]["coding"][0]["code"] == "8867-4"


def test_second_active_flag_for_same_condition_conflicts(store):
    store.create("Flag", _make_flag())
    with pytest.raises(ConflictError):
        store.create("Flag", _make_flag())
    # other subject or other condition is fine
    store.create("Flag", _make_flag(subject="Patient/p2"))
    store.create("Flag", _make_flag(code="80394007"))
    assert len(store.search("Flag", {})) == 3


def test_inactivating_a_flag_releases_its_condition(store):
    flag = store.create("Flag", _make_flag())
    store.update("Flag", flag["id"], _make_flag(status="inactive"))
    replacement = store.create("Flag", _make_flag())

    with pytest.raises(ConflictError):
        store.update("Flag", flag["id"], _make_flag())
    store.delete("Flag", replacement["id"])
    assert store.update("Flag", flag["id"], _make_flag())["status"] == "active"


def test_stats_and_clear(store):
    store.create("Patient", make_patient("p1"))
    store.create("Observation", make_observation())
    store.create("Observation", make_observation())

    assert store.stats() == {"Observation": 2, "Patient": 1}
    store.clear()
    assert store.stats() == {}
    assert store.search("Observation", {}) == []


def test_new_resource_ids_are_unique():
    ids = {new_resource_id("Observation") for _ in range(1000)}
    assert len(ids) == 1000


def test_concurrent_updates_to_one_resource_serialize(memory_store):
    created = memory_store.create("Observation", make_observation())

    def bump():
        for _ in range(50):
            memory_store.update("Observation", created["id"], make_observation())

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert memory_store.read("Observation", created["id"])["meta"]["versionId"] == 201


def test_concurrent_flag_creation_keeps_one_active(memory_store):
    outcomes = []

    def attempt():
        try:
            memory_store.create("Flag", _make_flag())
            outcomes.append("created")
        except ConflictError:
            outcomes.append("conflict")

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("created") == 1
    assert len(memory_store.search("Flag", {"status": "active"})) == 1


def test_subject_search_matches_every_stored_reference_form(store):
    for subject in ("Patient/p1", "p1", "https://fhir.example.org/r4/Patient/p1", "Patient/p11"):
        store.create("Observation", make_observation(subject=subject))
    store.create("Observation", make_observation(subject="Patient/p1", status="preliminary"))

    found = store.search("Observation", {"subject": "Patient/p1", "status": "final"})

    assert [o["subject"]["reference"] for o in found] == [
        "Patient/p1", "p1", "https://fhir.example.org/r4/Patient/p1",
    ]


def test_count_with_filters_keeps_insertion_order(store):
    ids = []
    for status in ("final", "preliminary", "final", "final"):
        ids.append(store.create("Observation", make_observation(status=status))["id"])

    found = store.search("Observation", {"status": "final", "_count": "2"})
    assert [o["id"] for o in found] == [ids[0], ids[2]]

    by_id = store.search("Observation", {"_id": f"{ids[1]},{ids[3]}"})
    assert [o["id"] for o in by_id] == [ids[1], ids[3]]


def test_sql_search_filters_and_limits_in_the_database(sql_store, sqlite_session_factory):
    statements = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement.upper())

    engine = sqlite_session_factory.kw["bind"]
    event.listen(engine, "before_cursor_execute", capture)
    try:
        sql_store.search("Flag", {"subject": "Patient/p1", "status": "active"})
        sql_store.search("Observation", {"status": "final", "_count": "1"})
    finally:
        event.remove(engine, "before_cursor_execute", capture)

    flag_query, observation_query = [s for s in statements if "FROM FHIR_RESOURCES" in s]
    assert "JSON_EXTRACT" in flag_query
    assert "LIMIT" not in flag_query
    assert "JSON_EXTRACT" in observation_query
    assert "LIMIT" in observation_query


def test_key_locks_do_not_grow_with_written_keys(memory_store):
    for _ in range(200):
        created = memory_store.create("Observation", make_observation())
        memory_store.delete("Observation", created["id"])

    assert len(memory_store._key_locks) == KEY_LOCK_STRIPES
    assert memory_store._lock_for("Observation", "o1") is memory_store._lock_for("Observation", "o1")
