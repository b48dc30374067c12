"""
FastAPI application entrypoint.

Run locally:  uvicorn prestrack.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from prestrack.api.routes import router
from prestrack.config import settings
from prestrack.errors import ClinicalDataError
from prestrack.models import resource  # noqa: F401  registers the tables on Base
from prestrack.models.database import Base, engine

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "NotFound": 404,
    "Forbidden": 403,
    "InvalidResourceType": 400,
    "ValidationFailed": 422,
    "Conflict": 409,
    "DependencyUnavailable": 503,
}

app = FastAPI(
    title="PreSTrack Clinical Data API",
    description=(
        "FHIR-shaped resource store with search, role and ownership based "
        "authorization, and clinical threshold alerting for maternal care."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


@app.exception_handler(ClinicalDataError)
def handle_clinical_data_error(request: Request, exc: ClinicalDataError):
    status = STATUS_BY_KIND.get(exc.kind, 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content=exc.to_dict())


@app.on_event("startup")
def on_startup():
    if settings.STORE_BACKEND == "sql":
        Base.metadata.create_all(bind=engine)
