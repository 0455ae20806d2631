from __future__ import annotations

import argparse
import asyncio
import sys

from tenantcore.core.errors import TenantCoreError
from tenantcore.core.logging import configure_logging
from tenantcore.services.context import establish_bypass, scoped
from tenantcore.services.gateway import AccessGateway
from tenantcore.services.provisioning import ProvisionedTenant, provision_tenant


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit; provisioning always runs under an audited operator context.
    parser = argparse.ArgumentParser(description="Provision a tenant and its first admin")
    parser.add_argument("--name", required=True, help="Tenant display name")
    parser.add_argument("--slug", required=True, help="Globally unique tenant slug")
    parser.add_argument("--admin-email", required=True, help="Email of the first admin principal")
    parser.add_argument("--admin-first-name", default=None)
    parser.add_argument("--admin-last-name", default=None)
    parser.add_argument("--tier", default="basic", help="Subscription tier")
    parser.add_argument("--operator", required=True, help="Platform operator id for the audit log")
    parser.add_argument("--reason", required=True, help="Why the bypass context is opened")
    return parser


async def _provision(
    args: argparse.Namespace, gateway: AccessGateway | None = None
) -> ProvisionedTenant:
    gateway = gateway or AccessGateway()
    ctx = await establish_bypass(
        args.operator,
        args.reason,
        session_factory=gateway.session_factory,
        bind_context=False,
    )
    with scoped(ctx):
        return await provision_tenant(
            gateway,
            name=args.name,
            slug=args.slug,
            admin_email=args.admin_email,
            admin_first_name=args.admin_first_name,
            admin_last_name=args.admin_last_name,
            subscription_tier=args.tier,
        )


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    try:
        provisioned = asyncio.run(_provision(args))
    except TenantCoreError as exc:
        print(f"provision_tenant failed: {exc.code} {exc.message}", file=sys.stderr)
        return 1

    print("Tenant provisioned:")
    print(f"  tenant_id: {provisioned.tenant.id}")
    print(f"  slug: {provisioned.tenant.slug}")
    print(f"  admin_user_id: {provisioned.admin.id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
