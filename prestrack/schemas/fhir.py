"""
Structural JSON schemas for the resources the core reasons about.

These are not FHIR conformance profiles. They only pin down the fields the
alerting pipeline, ownership checks and notification inbox depend on; any
other field passes through untouched.
"""

_CODEABLE_CONCEPT: dict = {
    "type": "object",
    "required": ["coding"],
    "properties": {
        "coding": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["code"],
                "properties": {
                    "system": {"type": "string"},
                    "code": {"type": "string", "minLength": 1},
                    "display": {"type": "string"},
                },
            },
        },
        "text": {"type": "string"},
    },
}

_REFERENCE: dict = {
    "type": "object",
    "required": ["reference"],
    "properties": {
        "reference": {"type": "string", "minLength": 1},
    },
}

FHIR_PATIENT_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Patient (structural subset)",
    "type": "object",
    "properties": {
        "resourceType": {"type": "string", "const": "Patient"},
        "birthDate": {
            "type": "string",
            "pattern": "^\\d{4}(-\\d{2}(-\\d{2})?)?$",
            "description": "FHIR date: YYYY, YYYY-MM or YYYY-MM-DD.",
        },
        "gender": {"type": "string", "enum": ["male", "female", "other", "unknown"]},
        "generalPractitioner": {"type": "array", "items": _REFERENCE},
    },
}

FHIR_OBSERVATION_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Observation (structural subset)",
    "type": "object",
    "required": ["status", "code", "subject"],
    "properties": {
        "resourceType": {"type": "string", "const": "Observation"},
        "status": {
            "type": "string",
            "enum": [
                "registered", "preliminary", "final", "amended",
                "corrected", "cancelled", "entered-in-error", "unknown",
            ],
        },
        "code": _CODEABLE_CONCEPT,
        "subject": _REFERENCE,
        "valueQuantity": {
            "type": "object",
            "properties": {"value": {"type": "number"}, "unit": {"type": "string"}},
        },
        "component": {
            "type": "array",
            "items": {"type": "object", "required": ["code"], "properties": {"code": _CODEABLE_CONCEPT}},
        },
    },
}

FHIR_FLAG_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Flag (structural subset)",
    "type": "object",
    "required": ["status", "code", "subject"],
    "properties": {
        "resourceType": {"type": "string", "const": "Flag"},
        "status": {"type": "string", "enum": ["active", "inactive", "entered-in-error"]},
        "code": _CODEABLE_CONCEPT,
        "subject": _REFERENCE,
    },
}

FHIR_COMMUNICATION_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Communication (structural subset)",
    "type": "object",
    "required": ["status", "payload"],
    "properties": {
        "resourceType": {"type": "string", "const": "Communication"},
        "status": {"type": "string"},
        "payload": {"type": "array", "minItems": 1},
        "recipient": {"type": "array", "items": _REFERENCE},
        "subject": _REFERENCE,
    },
}

FHIR_APPOINTMENT_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Appointment (structural subset)",
    "type": "object",
    "required": ["status"],
    "properties": {
        "resourceType": {"type": "string", "const": "Appointment"},
        "status": {"type": "string"},
        "start": {"type": "string"},
    },
}

SCHEMAS_BY_TYPE: dict[str, dict] = {
    "Patient": FHIR_PATIENT_SCHEMA,
    "Observation": FHIR_OBSERVATION_SCHEMA,
    "Flag": FHIR_FLAG_SCHEMA,
    "Communication": FHIR_COMMUNICATION_SCHEMA,
    "Appointment": FHIR_APPOINTMENT_SCHEMA,
}
