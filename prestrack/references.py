"""
Soft references between resources.

A reference is the string ``"<ResourceType>/<id>"`` embedded in a payload
(``subject.reference = "Patient/42"``). Nothing enforces that the target
exists, so every lookup here tolerates a missing referent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from prestrack.errors import InvalidResourceTypeError, NotFoundError

if TYPE_CHECKING:
    from prestrack.store.base import ResourceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reference:
    resource_type: str
    id: str

    @classmethod
    def parse(cls, value: str | None, default_type: str | None = None) -> Reference | None:
        """
        Parse ``"Type/id"``. A bare id is accepted when ``default_type`` is
        given (legacy shorthand used by older mobile clients).
        """
        if not value or not isinstance(value, str):
            return None
        value = value.strip()
        if "/" in value:
            # absolute URLs keep only the trailing Type/id pair
            resource_type, _, ref_id = value.rstrip("/").rpartition("/")
            resource_type = resource_type.rpartition("/")[2]
            if resource_type and ref_id:
                return cls(resource_type, ref_id)
            return None
        if default_type:
            return cls(default_type, value)
        return None

    @classmethod
    def of(cls, resource: dict[str, Any]) -> Reference:
        return cls(resource["resourceType"], resource["id"])

    def format(self) -> str:
        return f"{self.resource_type}/{self.id}"

    def to_fhir(self) -> dict[str, str]:
        return {"reference": self.format()}

    def __str__(self) -> str:
        return self.format()


def canonical(value: str, default_type: str | None) -> str | None:
    """Rewrite a bare id or full reference into canonical ``Type/id`` form."""
    ref = Reference.parse(value, default_type)
    return ref.format() if ref else None


def reference_of(value: Any) -> Reference | None:
    """Extract a Reference from either a FHIR ``{"reference": ...}`` or a string."""
    if isinstance(value, dict):
        value = value.get("reference")
    return Reference.parse(value)


class _Unresolved:
    """Marker returned when a reference points at nothing."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNRESOLVED"


UNRESOLVED = _Unresolved()


def resolve(store: ResourceStore, ref: Reference | str | None):
    """Read the referenced resource, or return ``UNRESOLVED``."""
    if isinstance(ref, str):
        ref = Reference.parse(ref)
    if ref is None:
        return UNRESOLVED
    try:
        return store.read(ref.resource_type, ref.id)
    except (NotFoundError, InvalidResourceTypeError):
        logger.warning("Dangling reference %s", ref)
        return UNRESOLVED


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def display_name(resource: Any, fallback: str = "Unknown") -> str:
    """Human readable label for a resolved resource, tolerant of UNRESOLVED."""
    if not resource or not isinstance(resource, dict):
        return fallback
    names = resource.get("name")
    if isinstance(names, str) and names.strip():
        return names.strip()
    if isinstance(names, dict):
        names = [names]
    if isinstance(names, list):
        for name in names:
            if isinstance(name, str) and name.strip():
                return name.strip()
            if not isinstance(name, dict):
                continue
            if _text(name.get("text")):
                return _text(name["text"])
            given = name.get("given")
            if not isinstance(given, list):
                given = [given]
            parts = [_text(g) for g in given] + [_text(name.get("family"))]
            full = " ".join(p for p in parts if p)
            if full:
                return full
    return _text(resource.get("title")) or fallback
