"""
Typed failures surfaced by the clinical data core.

Every error carries a stable ``kind`` that callers (the HTTP adapter, audit
consumers) can switch on without knowing the Python class hierarchy.
"""

from __future__ import annotations

from typing import Any


class ClinicalDataError(Exception):
    """Base class for all failures that cross the core boundary."""

    kind: str = "Internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class NotFoundError(ClinicalDataError):
    kind = "NotFound"

    @classmethod
    def for_resource(cls, resource_type: str, resource_id: str) -> NotFoundError:
        return cls(f"Resource not found: {resource_type}/{resource_id}")


class InvalidResourceTypeError(ClinicalDataError):
    kind = "InvalidResourceType"

    def __init__(self, resource_type: str):
        super().__init__(f"Unknown resource type: {resource_type}")
        self.resource_type = resource_type


class ForbiddenError(ClinicalDataError):
    """
    Authorization denial.

    ``reason`` is one of ``permission``, ``ownership`` or ``facility`` so the
    audit trail can tell a missing grant apart from a row-level violation.
    """

    kind = "Forbidden"

    def __init__(self, message: str, reason: str = "permission"):
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "reason": self.reason}


class ValidationFailedError(ClinicalDataError):
    kind = "ValidationFailed"

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "errors": self.errors}


class ConflictError(ClinicalDataError):
    kind = "Conflict"


class DependencyUnavailableError(ClinicalDataError):
    kind = "DependencyUnavailable"
