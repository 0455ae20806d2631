from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantcore.core.errors import (
    Forbidden,
    InvalidContext,
    NoActiveContext,
    NotFound,
    ValidationFailed,
)
from tenantcore.domain.context import OperationContext
from tenantcore.domain.filters import Condition
from tenantcore.domain.schemas import EntityType
from tenantcore.services import context as context_store
from tenantcore.services.gateway import AccessGateway
from tenantcore.tests.utils.seed import create_principal, create_tenant, ctx_for


async def _two_tenants(session_factory: async_sessionmaker[AsyncSession]):
    tenant_a = await create_tenant(session_factory, name="Tenant A")
    tenant_b = await create_tenant(session_factory, name="Tenant B")
    user_a = await create_principal(session_factory, tenant_id=tenant_a.id, role="user")
    user_b = await create_principal(session_factory, tenant_id=tenant_b.id, role="admin")
    return ctx_for(user_a), ctx_for(user_b)


@pytest.mark.asyncio
async def test_rows_of_another_tenant_are_invisible(
    gateway: AccessGateway, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    ctx_a, ctx_b = await _two_tenants(session_factory)
    contact = await gateway.insert(
        EntityType.CONTACT, {"first_name": "Ada", "email": "ada@example.com"}, ctx=ctx_a
    )

    assert contact.tenant_id == ctx_a.tenant_id
    assert await gateway.read(EntityType.CONTACT, {"first_name": "Ada"}, ctx=ctx_b).all() == []
    assert await gateway.read(EntityType.CONTACT, ctx=ctx_b).count() == 0
    # Asking for the other tenant explicitly still only narrows the mandatory filter.
    assert (
        await gateway.read(
            EntityType.CONTACT, {"tenant_id": ctx_a.tenant_id}, ctx=ctx_b
        ).all()
        == []
    )

    visible = await gateway.read(EntityType.CONTACT, {"first_name": "Ada"}, ctx=ctx_a).all()
    assert [row.id for row in visible] == [contact.id]


@pytest.mark.asyncio
async def test_foreign_ids_read_as_not_found(
    gateway: AccessGateway, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    ctx_a, ctx_b = await _two_tenants(session_factory)
    contact = await gateway.insert(EntityType.CONTACT, {"first_name": "Ada"}, ctx=ctx_a)

    with pytest.raises(NotFound):
        await gateway.get(EntityType.CONTACT, contact.id, ctx=ctx_b)
    with pytest.raises(NotFound):
        await gateway.update(EntityType.CONTACT, contact.id, {"first_name": "Eve"}, ctx=ctx_b)
    with pytest.raises(NotFound):
        await gateway.delete(EntityType.CONTACT, contact.id, ctx=ctx_b)
    with pytest.raises(NotFound):
        await gateway.get(EntityType.CONTACT, "does-not-exist", ctx=ctx_a)

    stored = await gateway.get(EntityType.CONTACT, contact.id, ctx=ctx_a)
    assert stored.first_name == "Ada"


@pytest.mark.asyncio
async def test_insert_into_foreign_tenant_is_forbidden(
    gateway: AccessGateway, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    ctx_a, ctx_b = await _two_tenants(session_factory)

    with pytest.raises(Forbidden):
        await gateway.insert(
            EntityType.CONTACT, {"first_name": "Mallory", "tenant_id": ctx_b.tenant_id}, ctx=ctx_a
        )
    assert await gateway.read(EntityType.CONTACT, ctx=ctx_b).count() == 0


@pytest.mark.asyncio
async def test_insert_with_caller_id_is_rejected_whether_or_not_it_exists(
    gateway: AccessGateway, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    ctx_a, ctx_b = await _two_tenants(session_factory)
    contact = await gateway.insert(EntityType.CONTACT, {"first_name": "Ada"}, ctx=ctx_a)

    outcomes = []
    for record_id in (contact.id, "never-used-id"):
        with pytest.raises(ValidationFailed) as exc:
            await gateway.insert(EntityType.CONTACT, {"id": record_id, "first_name": "Eve"}, ctx=ctx_b)
        outcomes.append(exc.value.fields)
    assert outcomes == [{"id": "server-managed field"}] * 2
    assert await gateway.read(EntityType.CONTACT, ctx=ctx_b).count() == 0


@pytest.mark.asyncio
async def test_tenant_table_shows_only_own_tenant(
    gateway: AccessGateway, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    ctx_a, _ = await _two_tenants(session_factory)
    tenants = await gateway.read(EntityType.TENANT, ctx=ctx_a).all()
    assert [tenant.id for tenant in tenants] == [ctx_a.tenant_id]


@pytest.mark.asyncio
async def test_operations_without_context_fail(gateway: AccessGateway) -> None:
    with pytest.raises(NoActiveContext):
        gateway.read(EntityType.CONTACT)
    with pytest.raises(NoActiveContext):
        await gateway.insert(EntityType.CONTACT, {"first_name": "Ada"})


@pytest.mark.asyncio
async def test_tenant_less_context_is_an_invalid_context(gateway: AccessGateway) -> None:
    ctx = OperationContext(tenant_id=None, principal_id="someone", role="admin")
    with pytest.raises(InvalidContext):
        gateway.read(EntityType.CONTACT, ctx=ctx)
    with pytest.raises(InvalidContext):
        await gateway.insert(EntityType.CONTACT, {"first_name": "Ada"}, ctx=ctx)


@pytest.mark.asyncio
async def test_ambient_context_is_used_when_none_is_passed(
    gateway: AccessGateway, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    ctx_a, ctx_b = await _two_tenants(session_factory)
    with context_store.scoped(ctx_a):
        await gateway.insert(EntityType.CONTACT, {"company": "Acme"})
        assert await gateway.read(EntityType.CONTACT).count() == 1
    with context_store.scoped(ctx_b):
        assert await gateway.read(EntityType.CONTACT).count() == 0


@pytest.mark.asyncio
async def test_reads_are_lazy_and_restartable(
    gateway: AccessGateway, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    ctx_a, _ = await _two_tenants(session_factory)
    query = gateway.read(EntityType.CONTACT, {"company": {"starts_with": "Acme"}}, ctx=ctx_a)
    assert Condition("tenant_id", "eq", ctx_a.tenant_id) in query.predicate.items
    assert await query.count() == 0

    await gateway.insert(EntityType.CONTACT, {"company": "Acme Ltd"}, ctx=ctx_a)
    await gateway.insert(EntityType.CONTACT, {"company": "Acme GmbH"}, ctx=ctx_a)
    await gateway.insert(EntityType.CONTACT, {"company": "Globex"}, ctx=ctx_a)

    assert await query.count() == 2
    first_pass = [row.company async for row in query]
    second_pass = [row.company async for row in query]
    assert sorted(first_pass) == ["Acme GmbH", "Acme Ltd"]
    assert sorted(second_pass) == sorted(first_pass)


@pytest.mark.asyncio
async def test_read_ordering_limit_and_custom_fields(
    gateway: AccessGateway, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    ctx_a, _ = await _two_tenants(session_factory)
    for name, tier in (("Ada", "gold"), ("Grace", "silver"), ("Hedy", "gold")):
        await gateway.insert(
            EntityType.CONTACT,
            {"first_name": name, "custom_fields": {"tier": tier}},
            ctx=ctx_a,
        )

    gold = await gateway.read(
        EntityType.CONTACT,
        {"custom_fields.tier": "gold"},
        order_by=["-first_name"],
        ctx=ctx_a,
    ).all()
    assert [row.first_name for row in gold] == ["Hedy", "Ada"]

    limited = await gateway.read(
        EntityType.CONTACT, order_by=["first_name"], limit=2, ctx=ctx_a
    ).all()
    assert [row.first_name for row in limited] == ["Ada", "Grace"]
    first = await gateway.read(EntityType.CONTACT, order_by=["first_name"], ctx=ctx_a).first()
    assert first.first_name == "Ada"


@pytest.mark.asyncio
async def test_unknown_filter_or_order_field_is_rejected(
    gateway: AccessGateway, session_factory: async_sessionmaker[AsyncSession]
) -> None:
    ctx_a, _ = await _two_tenants(session_factory)
    with pytest.raises(ValidationFailed):
        gateway.read(EntityType.CONTACT, {"password": "x"}, ctx=ctx_a)
    with pytest.raises(ValidationFailed):
        gateway.read(EntityType.CONTACT, order_by=["nope"], ctx=ctx_a)
    with pytest.raises(ValidationFailed):
        gateway.read("invoices", ctx=ctx_a)
