from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
import sys
from uuid import uuid4

from tenantcore.core.errors import TenantCoreError
from tenantcore.core.logging import configure_logging
from tenantcore.domain.context import ROLE_ADMIN
from tenantcore.domain.schemas import EntityType
from tenantcore.services.context import establish, establish_bypass, scoped
from tenantcore.services.gateway import AccessGateway
from tenantcore.services.provisioning import ProvisionedTenant, provision_tenant


@dataclass(frozen=True)
class IsolationResult:
    # Contacts each tenant admin can see, against what it seeded.
    tenant_id: str
    seeded: int
    visible: int
    foreign_visible: int

    @property
    def isolated(self) -> bool:
        return self.visible == self.seeded and self.foreign_visible == 0


async def _seed_tenant(
    gateway: AccessGateway, label: str, contacts: int, operator_id: str
) -> ProvisionedTenant:
    suffix = uuid4().hex[:8]
    bypass = await establish_bypass(
        operator_id,
        f"isolation check seed {label}",
        session_factory=gateway.session_factory,
        bind_context=False,
    )
    provisioned = await provision_tenant(
        gateway,
        name=f"Isolation {label}",
        slug=f"isolation-{label}-{suffix}",
        admin_email=f"admin-{suffix}@{label}.example.com",
        ctx=bypass,
    )
    ctx = await establish(
        provisioned.admin.id,
        provisioned.tenant.id,
        ROLE_ADMIN,
        session_factory=gateway.session_factory,
        bind_context=False,
    )
    for index in range(contacts):
        await gateway.insert(
            EntityType.CONTACT,
            {"first_name": f"{label}-{index}", "company": f"Company {label}"},
            ctx=ctx,
        )
    return provisioned


async def run_isolation_check(
    gateway: AccessGateway,
    *,
    operator_id: str = "verify_isolation",
    contacts_per_tenant: tuple[int, int] = (2, 3),
) -> list[IsolationResult]:
    """Seed two tenants and confirm each admin sees exactly its own contacts."""
    seeded = [
        (await _seed_tenant(gateway, label, count, operator_id), count)
        for label, count in zip(("alpha", "beta"), contacts_per_tenant)
    ]
    results: list[IsolationResult] = []
    for provisioned, count in seeded:
        tenant_id = provisioned.tenant.id
        ctx = await establish(
            provisioned.admin.id,
            tenant_id,
            ROLE_ADMIN,
            session_factory=gateway.session_factory,
            bind_context=False,
        )
        with scoped(ctx):
            visible = await gateway.read(EntityType.CONTACT).count()
            foreign_visible = await gateway.read(
                EntityType.CONTACT, {"tenant_id": {"ne": tenant_id}}
            ).count()
        results.append(
            IsolationResult(
                tenant_id=tenant_id,
                seeded=count,
                visible=visible,
                foreign_visible=foreign_visible,
            )
        )
    return results


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = argparse.ArgumentParser(description="Verify tenant isolation against the configured store")
    parser.add_argument("--operator", default="verify_isolation", help="Operator id for the audit log")
    args = parser.parse_args(argv)
    try:
        results = asyncio.run(run_isolation_check(AccessGateway(), operator_id=args.operator))
    except TenantCoreError as exc:
        print(f"verify_isolation failed: {exc.code} {exc.message}", file=sys.stderr)
        return 1

    ok = True
    for result in results:
        status = "PASS" if result.isolated else "FAIL"
        ok = ok and result.isolated
        print(
            f"{status} tenant={result.tenant_id} seeded={result.seeded} "
            f"visible={result.visible} foreign_visible={result.foreign_visible}"
        )
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
