"""
Clinical data service: the one entry point the HTTP layer talks to.

Writes:  authorize -> validate -> store -> (Observation) alerting
Reads:   authorize -> translate/search -> ownership post-filter

The alerting step runs after the write has been committed. Its failures are
logged and never undo or fail the write.
"""

from __future__ import annotations

import logging
from typing import Any

from prestrack.alerting.pipeline import AlertingPipeline
from prestrack.auth.engine import PATIENT_OWNED_TYPES, AuthorizationEngine, owners
from prestrack.auth.permissions import Action, Permission
from prestrack.auth.principal import Principal
from prestrack.errors import (
    ClinicalDataError,
    NotFoundError,
    ValidationFailedError,
)
from prestrack.services.notifications import READ, UNREAD
from prestrack.services.validation import validate_resource
from prestrack.store.base import ResourceStore, format_instant, utcnow

logger = logging.getLogger(__name__)


class ClinicalDataService:
    def __init__(
        self,
        store: ResourceStore,
        engine: AuthorizationEngine | None = None,
        pipeline: AlertingPipeline | None = None,
    ):
        self.store = store
        self.engine = engine or AuthorizationEngine()
        self.pipeline = pipeline

    # ---------------------------------------------------------------------------
    # Single-resource operations
    # ---------------------------------------------------------------------------

    def create(self, principal: Principal, resource_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        self._check_body_type(resource_type, payload)
        self.engine.authorize(principal, resource_type, Action.CREATE, payload=payload)
        validate_resource(resource_type, payload)
        resource = self.store.create(resource_type, payload)
        logger.info("Created %s/%s by %s", resource_type, resource["id"], principal.identity_id)
        self._after_write(principal, resource)
        return resource

    def read(self, principal: Principal, resource_type: str, resource_id: str) -> dict[str, Any]:
        target = self._ownership_target(principal, resource_type, resource_id)
        self.engine.authorize(
            principal, resource_type, Action.READ, resource_id=resource_id, target=target
        )
        return target if target is not None else self.store.read(resource_type, resource_id)

    def update(
        self,
        principal: Principal,
        resource_type: str,
        resource_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        self._check_body_type(resource_type, payload)
        target = self._ownership_target(principal, resource_type, resource_id)
        self.engine.authorize(
            principal,
            resource_type,
            Action.UPDATE,
            resource_id=resource_id,
            target=target,
            payload=payload,
        )
        validate_resource(resource_type, payload)
        resource = self.store.update(resource_type, resource_id, payload)
        logger.info(
            "Updated %s/%s to version %d by %s",
            resource_type, resource_id, resource["meta"]["versionId"], principal.identity_id,
        )
        self._after_write(principal, resource)
        return resource

    def delete(self, principal: Principal, resource_type: str, resource_id: str) -> None:
        target = self._ownership_target(principal, resource_type, resource_id)
        self.engine.authorize(
            principal, resource_type, Action.DELETE, resource_id=resource_id, target=target
        )
        self.store.delete(resource_type, resource_id)
        logger.info("Deleted %s/%s by %s", resource_type, resource_id, principal.identity_id)

    # ---------------------------------------------------------------------------
    # Search
    # ---------------------------------------------------------------------------

    def search(
        self, principal: Principal, resource_type: str, params: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        params = dict(params or {})
        decision = self.engine.authorize_search(principal, resource_type, params)
        if decision.owner_scope is None:
            return self.store.search(resource_type, params)

        # narrow first, then truncate, so _count counts only visible rows
        count = params.pop("_count", None)
        own = decision.owner_scope.id
        results = [
            r for r in self.store.search(resource_type, params)
            if own in owners(resource_type, r)
        ]
        if count is not None and str(count).lstrip("-").isdigit():
            results = results[: max(int(count), 0)]
        return results

    def stats(self, principal: Principal) -> dict[str, int]:
        self.engine.authorize_capability(
            principal, "stats", (Permission.SYSTEM_ADMIN, Permission.ANALYTICS_READ_ALL)
        )
        return self.store.stats()

    # ---------------------------------------------------------------------------
    # Notification inbox
    # ---------------------------------------------------------------------------

    def list_notifications(self, principal: Principal, unread_only: bool = False) -> list[dict[str, Any]]:
        params = {
            "recipient": principal.reference.format(),
            "category": "notification",
            "_sort": "-date",
        }
        if unread_only:
            params["status"] = UNREAD
        return self.search(principal, "Communication", params)

    def mark_notification_read(self, principal: Principal, communication_id: str) -> dict[str, Any]:
        communication = self.read(principal, "Communication", communication_id)
        self.engine.authorize_recipient(principal, communication)
        if communication.get("status") == READ:
            return communication

        body = {k: v for k, v in communication.items() if k != "meta"}
        body["status"] = READ
        body["received"] = format_instant(utcnow())
        return self.store.update("Communication", communication_id, body)

    # ---------------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------------

    def _ownership_target(
        self, principal: Principal, resource_type: str, resource_id: str
    ) -> dict[str, Any] | None:
        """Stored resource a patient's ownership is checked against."""
        if not principal.is_patient or resource_type not in PATIENT_OWNED_TYPES:
            return None
        if resource_type == "Patient":
            return None
        try:
            return self.store.read(resource_type, resource_id)
        except NotFoundError:
            # the engine denies a patient with no target, which hides existence
            return None

    @staticmethod
    def _check_body_type(resource_type: str, payload: Any) -> None:
        if isinstance(payload, dict) and payload.get("resourceType") not in (None, resource_type):
            raise ValidationFailedError(
                f"resourceType {payload['resourceType']!r} does not match {resource_type}"
            )

    def _after_write(self, principal: Principal, resource: dict[str, Any]) -> None:
        if resource["resourceType"] != "Observation" or self.pipeline is None:
            return
        try:
            self.pipeline.process(resource, principal)
        except ClinicalDataError as exc:
            logger.error(
                "Alerting failed for Observation/%s (%s): %s",
                resource["id"], exc.kind, exc.message,
            )
        except Exception as exc:
            # the Observation is already committed
            logger.exception("Alerting failed for Observation/%s: %s", resource["id"], exc)
