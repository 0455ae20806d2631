from __future__ import annotations

from typing import Any

from tenantcore.core.errors import InvalidContext
from tenantcore.domain.context import OperationContext
from tenantcore.domain.schemas import EntityType
from tenantcore.services import context as context_store
from tenantcore.services.gateway import AccessGateway


def _tenant_context(ctx: OperationContext | None) -> OperationContext:
    resolved = ctx or context_store.current()
    if resolved.tenant_id is None:
        raise InvalidContext("A tenant-scoped context is required")
    return resolved


async def current_user_context(
    gateway: AccessGateway, *, ctx: OperationContext | None = None
) -> dict[str, Any]:
    # The acting principal joined with its tenant, both read through the tenant filter.
    ctx = _tenant_context(ctx)
    principal = await gateway.get(EntityType.TENANT_USER, ctx.principal_id, ctx=ctx)
    tenant = await gateway.get(EntityType.TENANT, ctx.tenant_id, ctx=ctx)
    return {
        "user_id": principal.id,
        "tenant_id": principal.tenant_id,
        "email": principal.email,
        "first_name": principal.first_name,
        "last_name": principal.last_name,
        "role": principal.role,
        "permissions": list(principal.permissions or []),
        "tenant_name": tenant.name,
        "tenant_slug": tenant.slug,
        "subscription_tier": tenant.subscription_tier,
    }


async def current_tenant_info(
    gateway: AccessGateway, *, ctx: OperationContext | None = None
) -> dict[str, Any]:
    ctx = _tenant_context(ctx)
    tenant = await gateway.get(EntityType.TENANT, ctx.tenant_id, ctx=ctx)
    active = {"is_active": True}
    return {
        "id": tenant.id,
        "name": tenant.name,
        "slug": tenant.slug,
        "settings": dict(tenant.settings or {}),
        "subscription_tier": tenant.subscription_tier,
        "user_count": await gateway.read(EntityType.TENANT_USER, active, ctx=ctx).count(),
        "contact_count": await gateway.read(EntityType.CONTACT, active, ctx=ctx).count(),
        "lead_count": await gateway.read(EntityType.LEAD, active, ctx=ctx).count(),
    }
