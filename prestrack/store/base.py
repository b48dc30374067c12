"""
Resource store contract shared by the in-memory and SQL backends.

A stored resource is a flat FHIR-shaped document::

    {"resourceType": "Observation", "id": "...", "meta": {...}, **payload}

The backends only differ in where the documents live; id assignment, meta
stamping and the active-flag key are computed here so both behave the same.
"""

from __future__ import annotations

import copy
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from prestrack.config import settings
from prestrack.errors import InvalidResourceTypeError
from prestrack.references import reference_of

RESOURCE_TYPES: frozenset[str] = frozenset(
    {
        "Patient",
        "Practitioner",
        "Organization",
        "Observation",
        "Appointment",
        "Flag",
        "Communication",
        "Questionnaire",
        "QuestionnaireResponse",
        "CarePlan",
        "Encounter",
        "Device",
    }
)


def ensure_resource_type(resource_type: str) -> None:
    if resource_type not in RESOURCE_TYPES:
        raise InvalidResourceTypeError(resource_type)


def new_resource_id(resource_type: str) -> str:
    """Type prefix + nanosecond clock + random suffix."""
    return f"{resource_type.lower()}-{time.time_ns()}-{uuid.uuid4().hex[:9]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_timestamp(previous: datetime | None) -> datetime:
    """Current time, but never earlier than ``previous``."""
    now = utcnow()
    if previous is not None and previous > now:
        return previous
    return now


def format_instant(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def default_profile(resource_type: str) -> list[str]:
    return [f"{settings.PROFILE_BASE_URL}/{resource_type}"]


def split_payload(payload: dict[str, Any]) -> tuple[dict[str, Any], list[str] | None]:
    """
    Strip store-owned keys from a caller payload.

    Returns the remaining domain fields and any caller-supplied profile list.
    """
    body = copy.deepcopy(payload)
    body.pop("resourceType", None)
    body.pop("id", None)
    meta = body.pop("meta", None) or {}
    profile = meta.get("profile") if isinstance(meta, dict) else None
    return body, list(profile) if profile else None


def assemble(
    resource_type: str,
    resource_id: str,
    body: dict[str, Any],
    version_id: int,
    last_updated: datetime,
    profile: list[str],
) -> dict[str, Any]:
    return {
        "resourceType": resource_type,
        "id": resource_id,
        **copy.deepcopy(body),
        "meta": {
            "versionId": version_id,
            "lastUpdated": format_instant(last_updated),
            "profile": list(profile),
        },
    }


def flag_condition_code(flag: dict[str, Any]) -> str | None:
    codings = (flag.get("code") or {}).get("coding") or []
    if codings and isinstance(codings[0], dict):
        return codings[0].get("code")
    return None


def active_flag_key(resource_type: str, body: dict[str, Any]) -> tuple[str, str] | None:
    """
    ``(subject reference, condition code)`` for an active Flag, else None.

    This is the key the stores keep unique.
    """
    if resource_type != "Flag" or body.get("status") != "active":
        return None
    subject = reference_of(body.get("subject"))
    code = flag_condition_code(body)
    if subject is None or not code:
        return None
    return subject.format(), code


class ResourceStore(ABC):
    """Type-partitioned, versioned document store."""

    @abstractmethod
    def create(self, resource_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    def update(
        self, resource_type: str, resource_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    def delete(self, resource_type: str, resource_id: str) -> None:
        ...

    @abstractmethod
    def search(
        self, resource_type: str, params: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    def stats(self) -> dict[str, int]:
        """Resource count per partition."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every resource. Seeding and tests only."""
