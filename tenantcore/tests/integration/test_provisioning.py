from __future__ import annotations

import argparse

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scripts import provision_tenant as provision_tenant_script
from scripts.verify_isolation import run_isolation_check
from tenantcore.core.errors import ConflictOnUniqueConstraint, Forbidden, InvalidContext
from tenantcore.domain.schemas import EntityType
from tenantcore.services import context as context_store
from tenantcore.services.gateway import AccessGateway
from tenantcore.services.provisioning import provision_tenant
from tenantcore.services.tenant_info import current_tenant_info, current_user_context
from tenantcore.tests.utils.seed import create_principal, create_tenant, ctx_for, fetch_audit


async def _operator(session_factory: async_sessionmaker[AsyncSession]):
    return await context_store.establish_bypass(
        "operator-1", "onboarding", session_factory=session_factory, bind_context=False
    )


@pytest.mark.asyncio
async def test_provision_creates_tenant_and_admin(
    gateway: AccessGateway,
    session_factory: async_sessionmaker[AsyncSession],
    bypass_enabled: None,
) -> None:
    operator = await _operator(session_factory)
    provisioned = await provision_tenant(
        gateway,
        name="Acme Corp",
        slug="acme-corp",
        admin_email="admin@acme.example.com",
        admin_first_name="Ada",
        subscription_tier="pro",
        ctx=operator,
    )

    assert provisioned.tenant.slug == "acme-corp"
    assert provisioned.tenant.subscription_tier == "pro"
    assert provisioned.admin.tenant_id == provisioned.tenant.id
    assert provisioned.admin.role == "admin"

    # The new admin can open a context in its tenant straight away.
    ctx = await context_store.establish(
        provisioned.admin.id,
        provisioned.tenant.id,
        "admin",
        session_factory=session_factory,
        bind_context=False,
    )
    assert ctx.is_admin

    inserts = await fetch_audit(session_factory, action="insert", user_id="operator-1")
    assert {event.table_name for event in inserts} == {"tenants", "tenant_users"}
    assert all(event.tenant_id == provisioned.tenant.id for event in inserts)


@pytest.mark.asyncio
async def test_provision_rejects_duplicates_and_tenant_contexts(
    gateway: AccessGateway,
    session_factory: async_sessionmaker[AsyncSession],
    bypass_enabled: None,
) -> None:
    operator = await _operator(session_factory)
    await provision_tenant(
        gateway, name="Acme Corp", slug="acme", admin_email="a@acme.example.com", ctx=operator
    )

    with pytest.raises(ConflictOnUniqueConstraint) as exc:
        await provision_tenant(
            gateway, name="Acme Again", slug="acme", admin_email="b@acme.example.com", ctx=operator
        )
    assert exc.value.fields == ("slug",)
    assert await gateway.read(EntityType.TENANT, {"name": "Acme Again"}, ctx=operator).count() == 0

    tenant = await create_tenant(session_factory)
    admin = await create_principal(session_factory, tenant_id=tenant.id, role="admin")
    with pytest.raises(Forbidden):
        await provision_tenant(
            gateway, name="Sneaky", slug="sneaky", admin_email="s@example.com", ctx=ctx_for(admin)
        )


@pytest.mark.asyncio
async def test_bypass_reads_across_tenants(
    gateway: AccessGateway,
    session_factory: async_sessionmaker[AsyncSession],
    bypass_enabled: None,
) -> None:
    for _ in range(2):
        tenant = await create_tenant(session_factory)
        user = await create_principal(session_factory, tenant_id=tenant.id)
        await gateway.insert(EntityType.CONTACT, {"company": "Shared name"}, ctx=ctx_for(user))

    operator = await _operator(session_factory)
    assert await gateway.read(EntityType.CONTACT, ctx=operator).count() == 2
    assert await gateway.read(EntityType.TENANT, ctx=operator).count() == 2


@pytest.mark.asyncio
async def test_current_user_and_tenant_info(
    gateway: AccessGateway, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    tenant = await create_tenant(session_factory, name="Acme Corp", slug="acme-corp")
    admin = await create_principal(session_factory, tenant_id=tenant.id, role="admin")
    await create_principal(session_factory, tenant_id=tenant.id, is_active=False)
    other_tenant = await create_tenant(session_factory)
    other = await create_principal(session_factory, tenant_id=other_tenant.id)
    ctx = ctx_for(admin)
    await gateway.insert(EntityType.CONTACT, {"first_name": "Ada"}, ctx=ctx)
    await gateway.insert(EntityType.LEAD, {"title": "Renewal"}, ctx=ctx)
    await gateway.insert(EntityType.CONTACT, {"first_name": "Bob"}, ctx=ctx_for(other))

    me = await current_user_context(gateway, ctx=ctx)
    assert me["user_id"] == admin.id
    assert me["role"] == "admin"
    assert me["tenant_name"] == "Acme Corp"
    assert me["tenant_slug"] == "acme-corp"
    assert me["subscription_tier"] == "basic"

    with context_store.scoped(ctx):
        info = await current_tenant_info(gateway)
    assert info["id"] == tenant.id
    assert info["user_count"] == 1
    assert info["contact_count"] == 1
    assert info["lead_count"] == 1


@pytest.mark.asyncio
async def test_tenant_info_needs_a_tenant_context(
    gateway: AccessGateway,
    session_factory: async_sessionmaker[AsyncSession],
    bypass_enabled: None,
) -> None:
    operator = await _operator(session_factory)
    with pytest.raises(InvalidContext):
        await current_tenant_info(gateway, ctx=operator)
    with pytest.raises(InvalidContext):
        await current_user_context(gateway, ctx=operator)


@pytest.mark.asyncio
async def test_provision_script_runs_under_an_audited_bypass(
    gateway: AccessGateway,
    session_factory: async_sessionmaker[AsyncSession],
    bypass_enabled: None,
) -> None:
    args = argparse.Namespace(
        name="Script Co",
        slug="script-co",
        admin_email="admin@script.example.com",
        admin_first_name=None,
        admin_last_name=None,
        tier="basic",
        operator="cli-operator",
        reason="ticket 7",
    )
    provisioned = await provision_tenant_script._provision(args, gateway)

    assert provisioned.tenant.slug == "script-co"
    switches = await fetch_audit(session_factory, action="context_switch", user_id="cli-operator")
    assert len(switches) == 1
    assert switches[0].details["reason"] == "ticket 7"


@pytest.mark.asyncio
async def test_isolation_check_passes(
    gateway: AccessGateway, bypass_enabled: None
) -> None:
    results = await run_isolation_check(gateway, contacts_per_tenant=(2, 3))
    assert [result.seeded for result in results] == [2, 3]
    assert all(result.isolated for result in results)
    assert [result.visible for result in results] == [2, 3]
