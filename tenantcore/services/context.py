from __future__ import annotations

from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar, Token
import logging
from typing import AsyncIterator, Iterator

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantcore.core.config import get_settings
from tenantcore.core.errors import InvalidContext, NoActiveContext, StorageUnavailable
from tenantcore.domain.context import BYPASS_ROLE, OperationContext, normalize_role
from tenantcore.domain.models import TenantUser
from tenantcore.persistence.db import get_sessionmaker
from tenantcore.services.audit import ACTION_CONTEXT_SWITCH, AuditEntry, Recorder, record


logger = logging.getLogger(__name__)

# Task-local: asyncio tasks and threads each see their own binding, never a shared one.
_current: ContextVar[OperationContext | None] = ContextVar("tenantcore_operation_context", default=None)


def current() -> OperationContext:
    ctx = _current.get()
    if ctx is None:
        raise NoActiveContext("No operation context established for this unit of work")
    return ctx


def bind(ctx: OperationContext) -> Token[OperationContext | None]:
    return _current.set(ctx)


def release(token: Token[OperationContext | None]) -> None:
    _current.reset(token)


@contextmanager
def scoped(ctx: OperationContext) -> Iterator[OperationContext]:
    # Bind for the duration of a block and restore whatever was bound before.
    token = bind(ctx)
    try:
        yield ctx
    finally:
        release(token)


async def establish(
    principal_id: str,
    tenant_id: str,
    claimed_role: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    recorder: Recorder = record,
    bind_context: bool = True,
) -> OperationContext:
    """Verify a principal against its tenant and role, then open a context.

    The claimed role must equal the stored role, so a caller can never elevate
    itself. Every successful switch is audited as ``context_switch``.
    """
    try:
        role = normalize_role(claimed_role)
    except ValueError as exc:
        raise InvalidContext(str(exc)) from exc
    if role == BYPASS_ROLE:
        raise InvalidContext("Bypass role cannot be claimed by a tenant principal")

    factory = session_factory or get_sessionmaker()
    try:
        async with factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(TenantUser).where(
                        TenantUser.id == principal_id,
                        TenantUser.tenant_id == tenant_id,
                        TenantUser.is_active.is_(True),
                    )
                )
                principal = result.scalar_one_or_none()
                if principal is None:
                    logger.info(
                        "context_rejected reason=unknown_principal tenant_id=%s principal_id=%s",
                        tenant_id,
                        principal_id,
                    )
                    raise InvalidContext("Invalid user/tenant combination")
                if principal.role != role:
                    logger.info(
                        "context_rejected reason=role_mismatch tenant_id=%s principal_id=%s",
                        tenant_id,
                        principal_id,
                    )
                    raise InvalidContext("Claimed role does not match the principal's role")
                ctx = OperationContext(tenant_id=tenant_id, principal_id=principal_id, role=role)
                await recorder(
                    session,
                    AuditEntry(
                        action=ACTION_CONTEXT_SWITCH,
                        tenant_id=tenant_id,
                        user_id=principal_id,
                        details={"role": role},
                    ),
                )
    except SQLAlchemyError as exc:
        logger.error("context_establish_failed tenant_id=%s", tenant_id, exc_info=exc)
        raise StorageUnavailable("store unavailable while establishing context") from exc

    logger.info(
        "context_established tenant_id=%s principal_id=%s role=%s", tenant_id, principal_id, role
    )
    if bind_context:
        bind(ctx)
    return ctx


async def establish_bypass(
    operator_id: str,
    reason: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    recorder: Recorder = record,
    bind_context: bool = True,
) -> OperationContext:
    # Tenant-less platform context; disabled unless the deployment opts in.
    if not get_settings().bypass_enabled:
        raise InvalidContext("Bypass contexts are disabled")
    if not operator_id or not reason:
        raise InvalidContext("Bypass contexts require an operator id and a reason")

    ctx = OperationContext(tenant_id=None, principal_id=operator_id, role=BYPASS_ROLE)
    factory = session_factory or get_sessionmaker()
    try:
        async with factory() as session:
            async with session.begin():
                await recorder(
                    session,
                    AuditEntry(
                        action=ACTION_CONTEXT_SWITCH,
                        tenant_id=None,
                        user_id=operator_id,
                        details={"role": BYPASS_ROLE, "reason": reason},
                    ),
                )
    except SQLAlchemyError as exc:
        logger.error("bypass_establish_failed operator_id=%s", operator_id, exc_info=exc)
        raise StorageUnavailable("store unavailable while establishing context") from exc

    logger.warning("bypass_context_established operator_id=%s reason=%s", operator_id, reason)
    if bind_context:
        bind(ctx)
    return ctx


@asynccontextmanager
async def unit_of_work(
    principal_id: str,
    tenant_id: str,
    claimed_role: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    recorder: Recorder = record,
) -> AsyncIterator[OperationContext]:
    # Establish, bind for the block, and discard on exit so nothing outlives the unit of work.
    ctx = await establish(
        principal_id,
        tenant_id,
        claimed_role,
        session_factory=session_factory,
        recorder=recorder,
        bind_context=False,
    )
    with scoped(ctx):
        yield ctx
