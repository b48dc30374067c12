"""
Static role → permission table and per-resource permission requirements.

Loaded once at import; both tables are read-only mappings.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping


class Permission(str, Enum):
    # User management
    USER_READ_OWN = "user:read:own"
    USER_READ_ALL = "user:read:all"
    USER_UPDATE_OWN = "user:update:own"
    USER_UPDATE_ALL = "user:update:all"
    USER_DELETE = "user:delete"

    # Patient data
    PATIENT_READ_OWN = "patient:read:own"
    PATIENT_READ_ALL = "patient:read:all"
    PATIENT_CREATE = "patient:create"
    PATIENT_UPDATE_OWN = "patient:update:own"
    PATIENT_UPDATE_ALL = "patient:update:all"
    PATIENT_DELETE = "patient:delete"

    # Organizations (facilities)
    ORGANIZATION_READ = "organization:read"
    ORGANIZATION_CREATE = "organization:create"
    ORGANIZATION_UPDATE = "organization:update"
    ORGANIZATION_DELETE = "organization:delete"

    # Clinical resources
    FHIR_READ_OWN = "fhir:read:own"
    FHIR_READ_ALL = "fhir:read:all"
    FHIR_CREATE_OWN = "fhir:create:own"
    FHIR_CREATE = "fhir:create"
    FHIR_UPDATE_OWN = "fhir:update:own"
    FHIR_UPDATE_ALL = "fhir:update:all"
    FHIR_DELETE = "fhir:delete"

    # Questionnaires
    QUESTIONNAIRE_READ = "questionnaire:read"
    QUESTIONNAIRE_CREATE = "questionnaire:create"
    QUESTIONNAIRE_UPDATE = "questionnaire:update"
    QUESTIONNAIRE_DELETE = "questionnaire:delete"

    # Analytics
    ANALYTICS_READ_OWN = "analytics:read:own"
    ANALYTICS_READ_ALL = "analytics:read:all"

    # Communications
    COMMUNICATION_READ_OWN = "communication:read:own"
    COMMUNICATION_READ_ALL = "communication:read:all"
    COMMUNICATION_SEND = "communication:send"

    # System
    SYSTEM_ADMIN = "system:admin"
    SYSTEM_LOGS = "system:logs"


class Role(str, Enum):
    PATIENT = "patient"
    NURSE = "nurse"
    DOCTOR = "doctor"
    ADMIN = "admin"


class Action(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


P = Permission

ROLE_PERMISSIONS: Mapping[Role, frozenset[Permission]] = MappingProxyType(
    {
        Role.PATIENT: frozenset(
            {
                P.USER_READ_OWN,
                P.USER_UPDATE_OWN,
                P.PATIENT_READ_OWN,
                P.PATIENT_UPDATE_OWN,
                P.ORGANIZATION_READ,  # facility picker during registration
                P.FHIR_READ_OWN,
                P.FHIR_CREATE_OWN,  # self-reported readings
                P.FHIR_UPDATE_OWN,
                P.QUESTIONNAIRE_READ,
                P.ANALYTICS_READ_OWN,
                P.COMMUNICATION_READ_OWN,
            }
        ),
        Role.NURSE: frozenset(
            {
                P.USER_READ_OWN,
                P.USER_UPDATE_OWN,
                P.PATIENT_READ_ALL,
                P.PATIENT_CREATE,
                P.PATIENT_UPDATE_ALL,
                P.ORGANIZATION_READ,
                P.FHIR_READ_ALL,
                P.FHIR_CREATE,
                P.FHIR_UPDATE_ALL,
                P.QUESTIONNAIRE_READ,
                P.ANALYTICS_READ_ALL,
                P.COMMUNICATION_READ_ALL,
                P.COMMUNICATION_SEND,
            }
        ),
        Role.DOCTOR: frozenset(
            {
                P.USER_READ_ALL,
                P.USER_UPDATE_ALL,
                P.PATIENT_READ_ALL,
                P.PATIENT_CREATE,
                P.PATIENT_UPDATE_ALL,
                P.PATIENT_DELETE,
                P.ORGANIZATION_READ,
                P.ORGANIZATION_UPDATE,
                P.FHIR_READ_ALL,
                P.FHIR_CREATE,
                P.FHIR_UPDATE_ALL,
                P.FHIR_DELETE,
                P.QUESTIONNAIRE_READ,
                P.QUESTIONNAIRE_CREATE,
                P.QUESTIONNAIRE_UPDATE,
                P.QUESTIONNAIRE_DELETE,
                P.ANALYTICS_READ_ALL,
                P.COMMUNICATION_READ_ALL,
                P.COMMUNICATION_SEND,
            }
        ),
        Role.ADMIN: frozenset(Permission),
    }
)


def _clinical() -> Mapping[Action, tuple[Permission, ...]]:
    return MappingProxyType(
        {
            Action.READ: (P.FHIR_READ_OWN, P.FHIR_READ_ALL),
            Action.CREATE: (P.FHIR_CREATE_OWN, P.FHIR_CREATE),
            Action.UPDATE: (P.FHIR_UPDATE_OWN, P.FHIR_UPDATE_ALL),
            Action.DELETE: (P.FHIR_DELETE,),
        }
    )


RESOURCE_PERMISSIONS: Mapping[str, Mapping[Action, tuple[Permission, ...]]] = MappingProxyType(
    {
        "Organization": MappingProxyType(
            {
                Action.READ: (P.ORGANIZATION_READ,),
                Action.CREATE: (P.ORGANIZATION_CREATE,),
                Action.UPDATE: (P.ORGANIZATION_UPDATE,),
                Action.DELETE: (P.ORGANIZATION_DELETE,),
            }
        ),
        "Patient": MappingProxyType(
            {
                Action.READ: (P.PATIENT_READ_OWN, P.PATIENT_READ_ALL),
                Action.CREATE: (P.PATIENT_CREATE,),
                Action.UPDATE: (P.PATIENT_UPDATE_OWN, P.PATIENT_UPDATE_ALL),
                Action.DELETE: (P.PATIENT_DELETE,),
            }
        ),
        "Practitioner": MappingProxyType(
            {
                Action.READ: (P.USER_READ_OWN, P.USER_READ_ALL),
                Action.CREATE: (P.USER_UPDATE_ALL,),
                Action.UPDATE: (P.USER_UPDATE_OWN, P.USER_UPDATE_ALL),
                Action.DELETE: (P.USER_DELETE,),
            }
        ),
        "Questionnaire": MappingProxyType(
            {
                Action.READ: (P.QUESTIONNAIRE_READ,),
                Action.CREATE: (P.QUESTIONNAIRE_CREATE,),
                Action.UPDATE: (P.QUESTIONNAIRE_UPDATE,),
                Action.DELETE: (P.QUESTIONNAIRE_DELETE,),
            }
        ),
        "Communication": MappingProxyType(
            {
                Action.READ: (P.COMMUNICATION_READ_OWN, P.COMMUNICATION_READ_ALL),
                Action.CREATE: (P.COMMUNICATION_SEND,),
                Action.UPDATE: (P.COMMUNICATION_SEND,),
                Action.DELETE: (P.FHIR_DELETE,),
            }
        ),
        "QuestionnaireResponse": _clinical(),
        "Observation": _clinical(),
        "Flag": _clinical(),
        "CarePlan": _clinical(),
        "Encounter": _clinical(),
        "Appointment": _clinical(),
        "Device": _clinical(),
    }
)


def role_permissions(role: Role | str) -> frozenset[Permission]:
    try:
        return ROLE_PERMISSIONS[Role(role)]
    except ValueError:
        return frozenset()


def required_permissions(resource_type: str, action: Action | str) -> tuple[Permission, ...]:
    """Tokens any one of which grants ``action`` on ``resource_type``."""
    return RESOURCE_PERMISSIONS[resource_type][Action(action)]
