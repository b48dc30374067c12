"""Audit logging of authorization decisions for compliance tracking."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from prestrack.models.resource import AuditLog

if TYPE_CHECKING:
    from prestrack.auth.engine import AuthorizationDecision

logger = logging.getLogger(__name__)


def log_action(
    db: Session,
    *,
    actor: str,
    role: str,
    action: str,
    resource_type: str,
    resource_id: str | None,
    allowed: bool,
    detail: dict[str, Any] | None = None,
) -> None:
    """Write an immutable audit log entry."""
    entry = AuditLog(
        actor=actor,
        role=role,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        allowed=allowed,
        detail=detail,
    )
    db.add(entry)
    db.flush()


def _describe(decision: AuthorizationDecision) -> str:
    target = decision.resource_type
    if decision.resource_id:
        target = f"{target}/{decision.resource_id}"
    outcome = "ALLOW" if decision.allowed else f"DENY({decision.reason})"
    return f"{decision.principal.identity_id} ({decision.principal.role.value}) {decision.action} {target} {outcome}"


class AuditTrail(Protocol):
    def record(self, decision: AuthorizationDecision) -> None:
        ...


class LoggingAuditTrail:
    """Audit lines go to the application log only."""

    def record(self, decision: AuthorizationDecision) -> None:
        logger.info("AUDIT: %s", _describe(decision))


class DatabaseAuditTrail:
    """Persists each decision to ``audit_log`` in its own transaction."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record(self, decision: AuthorizationDecision) -> None:
        detail = {"reason": decision.reason, "message": decision.message}
        if decision.owner_scope is not None:
            detail["owner_scope"] = decision.owner_scope.format()
        try:
            with self._session_factory() as db, db.begin():
                log_action(
                    db,
                    actor=decision.principal.identity_id,
                    role=decision.principal.role.value,
                    action=decision.action,
                    resource_type=decision.resource_type,
                    resource_id=decision.resource_id,
                    allowed=decision.allowed,
                    detail=detail,
                )
        except SQLAlchemyError as exc:
            logger.error("AUDIT write failed for %s: %s", _describe(decision), exc)
            return
        logger.info("AUDIT: %s", _describe(decision))
