from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tenantcore.core.errors import ConflictOnUniqueConstraint, Forbidden, StorageUnavailable
from tenantcore.domain.context import ROLE_ADMIN, OperationContext
from tenantcore.domain.models import Tenant, TenantUser
from tenantcore.domain.schemas import EntityType
from tenantcore.services import context as context_store
from tenantcore.services.gateway import AccessGateway


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionedTenant:
    tenant: Tenant
    admin: TenantUser


async def provision_tenant(
    gateway: AccessGateway,
    *,
    name: str,
    slug: str,
    admin_email: str,
    admin_first_name: str | None = None,
    admin_last_name: str | None = None,
    settings: dict[str, Any] | None = None,
    subscription_tier: str = "basic",
    ctx: OperationContext | None = None,
) -> ProvisionedTenant:
    """Create a tenant and its first admin principal in one audited transaction."""
    ctx = ctx or context_store.current()
    if not ctx.is_bypass:
        raise Forbidden("Tenant provisioning requires a platform operator context")

    try:
        async with gateway.session_factory() as session:
            async with session.begin():
                tenant = await gateway.insert(
                    EntityType.TENANT,
                    {
                        "name": name,
                        "slug": slug,
                        "settings": settings or {},
                        "subscription_tier": subscription_tier,
                    },
                    ctx=ctx,
                    session=session,
                )
                admin = await gateway.insert(
                    EntityType.TENANT_USER,
                    {
                        "tenant_id": tenant.id,
                        "email": admin_email,
                        "first_name": admin_first_name,
                        "last_name": admin_last_name,
                        "role": ROLE_ADMIN,
                    },
                    ctx=ctx,
                    session=session,
                )
    except IntegrityError as exc:
        raise ConflictOnUniqueConstraint(("slug",), "Tenant slug already exists") from exc
    except SQLAlchemyError as exc:
        logger.error("tenant_provision_failed slug=%s", slug, exc_info=exc)
        raise StorageUnavailable("store unavailable while provisioning tenant") from exc

    logger.info(
        "tenant_provisioned tenant_id=%s slug=%s operator_id=%s", tenant.id, slug, ctx.principal_id
    )
    return ProvisionedTenant(tenant=tenant, admin=admin)
