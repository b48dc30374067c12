"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Search results
# ---------------------------------------------------------------------------

class BundleEntry(BaseModel):
    resource: dict[str, Any]


class SearchBundle(BaseModel):
    """FHIR searchset Bundle wrapping the matched resources."""
    resourceType: str = "Bundle"
    type: str = "searchset"
    total: int
    entry: list[BundleEntry] = []

    @classmethod
    def of(cls, resources: list[dict[str, Any]]) -> SearchBundle:
        return cls(total=len(resources), entry=[BundleEntry(resource=r) for r in resources])


class StatsResponse(BaseModel):
    total: int
    by_type: dict[str, int]


# ---------------------------------------------------------------------------
# Notification inbox
# ---------------------------------------------------------------------------

class NotificationView(BaseModel):
    """Inbox projection of a notification Communication."""
    id: str
    message: str
    subject: str | None = None
    priority: str | None = None
    sent: str | None = None
    read: bool = False

    @classmethod
    def from_communication(cls, communication: dict[str, Any]) -> NotificationView:
        payload = communication.get("payload") or [{}]
        return cls(
            id=communication["id"],
            message=payload[0].get("contentString", ""),
            subject=(communication.get("subject") or {}).get("reference"),
            priority=communication.get("priority"),
            sent=communication.get("sent"),
            read=communication.get("status") == "completed",
        )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ErrorResponse(BaseModel):
    kind: str
    message: str
    reason: str | None = None
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    store: str
    database: str = "connected"
