from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from tenantcore.core.errors import InvalidContext
from tenantcore.domain.context import ROLE_VIEWER, OperationContext
from tenantcore.domain.filters import TRUE, Predicate, matches
from tenantcore.domain.schemas import (
    ENTITY_SCHEMAS,
    EntitySchema,
    EntityType,
    OpKind,
    get_schema,
)
from tenantcore.persistence.guards import TenantPredicateError, tenant_predicate


@dataclass(frozen=True)
class Decision:
    # Deterministic outcome plus the row filter every read/candidate lookup must apply.
    allowed: bool
    reason: str
    filter: Predicate


def baseline_filter(schema: EntitySchema, ctx: OperationContext) -> Predicate:
    # The tenant filter comes first and no entity rule can widen it.
    if ctx.is_bypass:
        return TRUE
    try:
        return tenant_predicate(schema.tenant_field, ctx.tenant_id)
    except TenantPredicateError as exc:
        raise InvalidContext("Context has no tenant and is not a bypass context") from exc


def authorize(
    entity_type: EntityType | str,
    op: OpKind | str,
    ctx: OperationContext,
    candidate_row: Mapping[str, Any] | None = None,
    changes: Mapping[str, Any] | None = None,
    *,
    registry: Mapping[EntityType, EntitySchema] = ENTITY_SCHEMAS,
) -> Decision:
    """Decide whether ``ctx`` may perform ``op`` on ``entity_type``.

    Pure function of its arguments and the immutable schema registry. For
    update/delete ``candidate_row`` is the stored row image; for insert it is the
    row about to be written. ``changes`` lists the fields an update touches.
    """
    schema = get_schema(entity_type, registry)
    op = OpKind(op)
    row_filter = baseline_filter(schema, ctx)

    def _allow(reason: str) -> Decision:
        return Decision(allowed=True, reason=reason, filter=row_filter)

    def _deny(reason: str) -> Decision:
        return Decision(allowed=False, reason=reason, filter=row_filter)

    if candidate_row is not None and not matches(row_filter, candidate_row):
        return _deny("tenant_mismatch")
    if op == OpKind.READ:
        return _allow("bypass" if ctx.is_bypass else "tenant_scope")
    if not schema.writable:
        return _deny("read_only_entity")
    if ctx.is_bypass:
        return _allow("bypass")
    if ctx.role == ROLE_VIEWER:
        return _deny("read_only_role")

    if schema.entity_type == EntityType.TENANT:
        # Tenants are provisioned and retired by platform operators only.
        if op == OpKind.UPDATE and ctx.is_admin:
            return _allow("tenant_admin")
        return _deny("platform_operator_required")

    if op == OpKind.INSERT:
        if schema.self_field and not ctx.is_admin:
            return _deny("admin_required")
        return _allow("tenant_scope")

    if candidate_row is None:
        return _deny("candidate_required")

    if schema.self_field:
        if ctx.is_admin:
            return _allow("tenant_admin")
        if op == OpKind.UPDATE and candidate_row.get(schema.self_field) == ctx.principal_id:
            if schema.admin_only & set(changes or {}):
                return _deny("admin_only_fields")
            return _allow("self_service")
        return _deny("admin_required")

    if schema.ownership_fields:
        if ctx.is_admin:
            return _allow("tenant_admin")
        owner = schema.owner_of(candidate_row)
        if owner is not None and owner == ctx.principal_id:
            return _allow("owner")
        return _deny("not_owner")

    return _allow("tenant_scope")
