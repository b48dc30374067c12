"""
FastAPI routes: a thin adapter over ``ClinicalDataService``.

The caller's identity arrives already resolved by the upstream identity layer
in ``X-User-Id`` / ``X-User-Role`` / ``X-Facility-Id`` headers. No business
rule lives here; every ``ClinicalDataError`` is rendered by the handler in
``prestrack.main``.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from prestrack.alerting.pipeline import AlertingPipeline
from prestrack.auth.engine import AuthorizationEngine
from prestrack.auth.permissions import Role
from prestrack.auth.principal import Principal
from prestrack.config import settings
from prestrack.models.database import SessionLocal
from prestrack.schemas.api import (
    ErrorResponse,
    HealthResponse,
    NotificationView,
    SearchBundle,
    StatsResponse,
)
from prestrack.services.audit import DatabaseAuditTrail, LoggingAuditTrail
from prestrack.services.clinical import ClinicalDataService
from prestrack.services.notifications import NotificationDispatcher
from prestrack.store.base import ResourceStore
from prestrack.store.memory import InMemoryResourceStore
from prestrack.store.sql import SqlResourceStore

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status: {"model": ErrorResponse} for status in (400, 403, 404, 409, 422, 503)
}


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def build_store() -> ResourceStore:
    if settings.STORE_BACKEND == "memory":
        logger.info("Using in-memory resource store")
        return InMemoryResourceStore()
    return SqlResourceStore(SessionLocal)


@lru_cache(maxsize=1)
def get_store() -> ResourceStore:
    return build_store()


def build_service(store: ResourceStore) -> ClinicalDataService:
    if isinstance(store, SqlResourceStore):
        audit = DatabaseAuditTrail(store.session_factory)
    else:
        audit = LoggingAuditTrail()
    pipeline = AlertingPipeline(store, NotificationDispatcher(store))
    return ClinicalDataService(store, AuthorizationEngine(audit), pipeline)


def get_service(store: ResourceStore = Depends(get_store)) -> ClinicalDataService:
    return build_service(store)


def get_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_facility_id: str | None = Header(default=None),
) -> Principal:
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=401, detail="Missing X-User-Id or X-User-Role header")
    try:
        role = Role(x_user_role)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Unknown role: {x_user_role}") from None
    return Principal.for_role(x_user_id, role, x_facility_id)


def _search_params(request: Request) -> dict[str, str]:
    # repeated keys collapse into one comma-separated value
    query = request.query_params
    return {key: ",".join(query.getlist(key)) for key in query.keys()}


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(store: ResourceStore = Depends(get_store)):
    """Basic health endpoint. Verifies DB connectivity for the SQL store."""
    if not isinstance(store, SqlResourceStore):
        return HealthResponse(environment=settings.ENVIRONMENT, store="memory",
                              database="not used")
    try:
        with store.session_factory() as db:
            db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError as exc:
        logger.error("Database health check failed: %s", exc)
        db_status = "disconnected"
    return HealthResponse(
        status="healthy" if db_status == "connected" else "degraded",
        environment=settings.ENVIRONMENT,
        store="sql",
        database=db_status,
    )


# ---------------------------------------------------------------------------
# FHIR resources
# ---------------------------------------------------------------------------

@router.get("/fhir/_stats", response_model=StatsResponse, responses=ERROR_RESPONSES)
def resource_stats(
    principal: Principal = Depends(get_principal),
    service: ClinicalDataService = Depends(get_service),
):
    counts = service.stats(principal)
    return StatsResponse(total=sum(counts.values()), by_type=counts)


@router.post("/fhir/{resource_type}", status_code=201, responses=ERROR_RESPONSES)
def create_resource(
    resource_type: str,
    payload: dict[str, Any] = Body(...),
    principal: Principal = Depends(get_principal),
    service: ClinicalDataService = Depends(get_service),
):
    return service.create(principal, resource_type, payload)


@router.get("/fhir/{resource_type}", response_model=SearchBundle, responses=ERROR_RESPONSES)
def search_resources(
    resource_type: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    service: ClinicalDataService = Depends(get_service),
):
    return SearchBundle.of(service.search(principal, resource_type, _search_params(request)))


@router.get("/fhir/{resource_type}/{resource_id}", responses=ERROR_RESPONSES)
def read_resource(
    resource_type: str,
    resource_id: str,
    principal: Principal = Depends(get_principal),
    service: ClinicalDataService = Depends(get_service),
):
    return service.read(principal, resource_type, resource_id)


@router.put("/fhir/{resource_type}/{resource_id}", responses=ERROR_RESPONSES)
def update_resource(
    resource_type: str,
    resource_id: str,
    payload: dict[str, Any] = Body(...),
    principal: Principal = Depends(get_principal),
    service: ClinicalDataService = Depends(get_service),
):
    return service.update(principal, resource_type, resource_id, payload)


@router.delete("/fhir/{resource_type}/{resource_id}", status_code=204,
               responses=ERROR_RESPONSES)
def delete_resource(
    resource_type: str,
    resource_id: str,
    principal: Principal = Depends(get_principal),
    service: ClinicalDataService = Depends(get_service),
):
    service.delete(principal, resource_type, resource_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Notification inbox
# ---------------------------------------------------------------------------

@router.get("/notifications", response_model=list[NotificationView], responses=ERROR_RESPONSES)
def list_notifications(
    unread: bool = False,
    principal: Principal = Depends(get_principal),
    service: ClinicalDataService = Depends(get_service),
):
    return [
        NotificationView.from_communication(c)
        for c in service.list_notifications(principal, unread_only=unread)
    ]


@router.post("/notifications/{communication_id}/read", response_model=NotificationView,
             responses=ERROR_RESPONSES)
def mark_notification_read(
    communication_id: str,
    principal: Principal = Depends(get_principal),
    service: ClinicalDataService = Depends(get_service),
):
    return NotificationView.from_communication(
        service.mark_notification_read(principal, communication_id)
    )
