from __future__ import annotations

from dataclasses import dataclass


ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_USER = "user"
ROLE_VIEWER = "viewer"
PRINCIPAL_ROLES: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_MANAGER, ROLE_USER, ROLE_VIEWER})

# Global role that bypasses tenant isolation; never stored on a principal row.
BYPASS_ROLE = "platform_admin"


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary before comparing against stored roles.
    normalized = role.strip().lower()
    if normalized not in PRINCIPAL_ROLES and normalized != BYPASS_ROLE:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


@dataclass(frozen=True)
class OperationContext:
    """Identity of one unit of work.

    Immutable: switching tenant or role means establishing a new context.
    ``tenant_id`` is ``None`` only for bypass contexts.
    """

    tenant_id: str | None
    principal_id: str
    role: str

    @property
    def is_bypass(self) -> bool:
        return self.role == BYPASS_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN
