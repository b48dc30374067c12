from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from prestrack.auth.permissions import Permission, Role, role_permissions
from prestrack.references import Reference


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as resolved by the upstream identity layer."""

    identity_id: str
    role: Role
    facility_id: str | None = None
    permissions: frozenset[Permission] = field(default_factory=frozenset)

    @classmethod
    def for_role(
        cls, identity_id: str, role: Role | str, facility_id: str | None = None
    ) -> Principal:
        """Build a principal whose permissions come from the static role table."""
        role = Role(role)
        return cls(identity_id, role, facility_id or None, role_permissions(role))

    @property
    def is_patient(self) -> bool:
        return self.role is Role.PATIENT

    @property
    def reference(self) -> Reference:
        return Reference("Patient" if self.is_patient else "Practitioner", self.identity_id)

    def has_any(self, permissions: Iterable[Permission]) -> bool:
        return any(p in self.permissions for p in permissions)
