from __future__ import annotations

from tenantcore.core.config import get_settings
from tenantcore.domain.filters import Condition, where


class TenantPredicateError(RuntimeError):
    # Surface missing tenant predicates when guard enforcement is enabled.
    pass


def require_tenant_id(tenant_id: str | None) -> None:
    # Enforce non-empty tenant identifiers when tenant guard checks are enabled.
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(tenant_field: str, tenant_id: str | None) -> Condition:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return where(tenant_field, "eq", tenant_id)
