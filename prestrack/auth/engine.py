"""
Authorization engine.

A stateless predicate over ``(principal, resource type, action, target)``.
Checks run in a fixed order and the first failure wins:

1. permission: the principal holds one of the tokens the action requires
2. ownership: a ``patient`` principal only touches resources about themselves
3. facility: a non-admin principal with a facility may not name another one

Every decision, allowed or denied, is handed to the audit trail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from prestrack.auth.permissions import (
    RESOURCE_PERMISSIONS,
    Action,
    Permission,
    Role,
    required_permissions,
)
from prestrack.auth.principal import Principal
from prestrack.errors import ForbiddenError, InvalidResourceTypeError
from prestrack.references import Reference, canonical, reference_of
from prestrack.services.audit import AuditTrail, LoggingAuditTrail

logger = logging.getLogger(__name__)

# Types whose rows belong to exactly one patient
PATIENT_OWNED_TYPES = frozenset(
    {
        "Patient",
        "Observation",
        "Flag",
        "Communication",
        "CarePlan",
        "Encounter",
        "Appointment",
        "QuestionnaireResponse",
        "Device",
    }
)

# Search params that name the patient a query is about
OWNERSHIP_PARAMS = ("subject", "patient", "patientId", "recipient", "owner")


def owners(resource_type: str, document: dict[str, Any] | None) -> set[str]:
    """Ids of the patients a resource is about (empty when none can be found)."""
    if not document:
        return set()
    if resource_type == "Patient":
        return {document["id"]} if document.get("id") else set()

    candidates = [document.get("subject"), document.get("patient"), document.get("owner")]
    if resource_type == "Appointment":
        candidates.extend(p.get("actor") for p in document.get("participant") or []
                          if isinstance(p, dict))
    if resource_type == "Communication":
        candidates.extend(document.get("recipient") or [])

    found = set()
    for value in candidates:
        ref = reference_of(value)
        if ref is not None and ref.resource_type == "Patient":
            found.add(ref.id)
    if isinstance(document.get("patientId"), str):
        found.add(document["patientId"])
    return found


@dataclass(frozen=True)
class AuthorizationDecision:
    principal: Principal
    resource_type: str
    action: str
    resource_id: str | None = None
    allowed: bool = True
    reason: str | None = None
    message: str | None = None
    # set when results must be narrowed to one patient's data
    owner_scope: Reference | None = None


class AuthorizationEngine:
    def __init__(self, audit: AuditTrail | None = None):
        self.audit = audit or LoggingAuditTrail()

    # -- public API ---------------------------------------------------------

    def authorize(
        self,
        principal: Principal,
        resource_type: str,
        action: Action | str,
        *,
        resource_id: str | None = None,
        target: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> AuthorizationDecision:
        """
        Gate a single-resource operation.

        ``target`` is the currently stored resource (read/update/delete),
        ``payload`` the content being written (create/update).
        """
        action = Action(action)
        if resource_id is None and target is not None:
            resource_id = target.get("id")
        base = AuthorizationDecision(principal, resource_type, action.value, resource_id)

        def evaluate() -> AuthorizationDecision:
            self._check_permission(principal, resource_type, action)
            if principal.is_patient:
                self._check_ownership(principal, resource_type, action, resource_id,
                                      target, payload)
            self._check_facility(principal, [payload])
            return base

        return self._decide(base, evaluate)

    def authorize_search(
        self, principal: Principal, resource_type: str, params: dict[str, str]
    ) -> AuthorizationDecision:
        base = AuthorizationDecision(principal, resource_type, "search")

        def evaluate() -> AuthorizationDecision:
            self._check_permission(principal, resource_type, Action.READ)
            scope = None
            if principal.is_patient:
                scope = self._search_scope(principal, resource_type, params)
            self._check_facility(principal, [params])
            return AuthorizationDecision(principal, resource_type, "search", owner_scope=scope)

        return self._decide(base, evaluate)

    def authorize_capability(
        self,
        principal: Principal,
        action: str,
        permissions: Iterable[Permission],
        resource_type: str = "*",
    ) -> AuthorizationDecision:
        """Gate a store-wide operation that needs any one of ``permissions``."""
        permissions = tuple(permissions)
        base = AuthorizationDecision(principal, resource_type, action)

        def evaluate() -> AuthorizationDecision:
            if not principal.has_any(permissions):
                raise ForbiddenError(f"Insufficient permissions for {action}", reason="permission")
            return base

        return self._decide(base, evaluate)

    def authorize_recipient(
        self, principal: Principal, communication: dict[str, Any], action: str = "mark-read"
    ) -> AuthorizationDecision:
        """Only a listed recipient (or an admin) may act on a Communication."""
        base = AuthorizationDecision(principal, "Communication", action, communication.get("id"))

        def evaluate() -> AuthorizationDecision:
            if principal.role is Role.ADMIN:
                return base
            recipients = {reference_of(r) for r in communication.get("recipient") or []}
            if principal.reference not in recipients:
                raise ForbiddenError("Only a recipient can mark a notification read",
                                     reason="ownership")
            return base

        return self._decide(base, evaluate)

    # -- checks -------------------------------------------------------------

    def _decide(self, base: AuthorizationDecision, evaluate) -> AuthorizationDecision:
        try:
            decision = evaluate()
        except ForbiddenError as exc:
            self.audit.record(
                AuthorizationDecision(
                    base.principal, base.resource_type, base.action, base.resource_id,
                    allowed=False, reason=exc.reason, message=exc.message,
                )
            )
            raise
        except InvalidResourceTypeError as exc:
            self.audit.record(
                AuthorizationDecision(
                    base.principal, base.resource_type, base.action, base.resource_id,
                    allowed=False, reason="resource_type", message=exc.message,
                )
            )
            raise
        self.audit.record(decision)
        return decision

    def _check_permission(self, principal: Principal, resource_type: str, action: Action) -> None:
        if resource_type not in RESOURCE_PERMISSIONS:
            raise InvalidResourceTypeError(resource_type)
        required = required_permissions(resource_type, action)
        if not principal.has_any(required):
            raise ForbiddenError(
                f"Insufficient permissions for {action.value} on {resource_type}",
                reason="permission",
            )

    def _check_ownership(
        self,
        principal: Principal,
        resource_type: str,
        action: Action,
        resource_id: str | None,
        target: dict[str, Any] | None,
        payload: dict[str, Any] | None,
    ) -> None:
        if resource_type not in PATIENT_OWNED_TYPES:
            return
        own = principal.identity_id

        if resource_type == "Patient" and resource_id is not None and resource_id != own:
            raise ForbiddenError("You can only access your own data", reason="ownership")

        documents = []
        if target is not None:
            documents.append(target)
        if payload is not None:
            if resource_type == "Patient" and resource_id is not None:
                payload = {**payload, "id": resource_id}
            documents.append(payload)
        if action is not Action.CREATE and target is None and resource_type != "Patient":
            # nothing to prove ownership against
            raise ForbiddenError("You can only access your own data", reason="ownership")

        for document in documents:
            if own not in owners(resource_type, document):
                raise ForbiddenError("You can only access your own data", reason="ownership")

    def _search_scope(
        self, principal: Principal, resource_type: str, params: dict[str, str]
    ) -> Reference | None:
        if resource_type not in PATIENT_OWNED_TYPES:
            return None
        own = principal.reference

        if resource_type == "Patient":
            requested = [v for v in (params.get("_id") or "").split(",") if v]
            if not requested:
                raise ForbiddenError(
                    "Patients cannot list all patients; read your own record by id",
                    reason="ownership",
                )
            if any(v != own.id for v in requested):
                raise ForbiddenError("You can only access your own data", reason="ownership")
            return own

        for param in OWNERSHIP_PARAMS:
            value = params.get(param)
            if value is None:
                continue
            for term in value.split(","):
                if canonical(term, "Patient") != own.format():
                    raise ForbiddenError("You can only access your own data",
                                         reason="ownership")
        return own

    def _check_facility(self, principal: Principal, sources: list[dict[str, Any] | None]) -> None:
        if principal.role is Role.ADMIN or not principal.facility_id:
            return
        for source in sources:
            requested = (source or {}).get("facilityId")
            if requested and requested != principal.facility_id:
                raise ForbiddenError(
                    "You can only access data from your assigned facility",
                    reason="facility",
                )
