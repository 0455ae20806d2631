from __future__ import annotations

import copy
import logging
from typing import Any, AsyncIterator, Mapping, Sequence

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantcore.core.errors import (
    ConflictOnUniqueConstraint,
    Forbidden,
    NotFound,
    StorageUnavailable,
    ValidationFailed,
)
from tenantcore.domain.context import OperationContext
from tenantcore.domain.filters import Predicate, all_of, from_mapping, to_clause, where
from tenantcore.domain.models import Base, new_id, utc_now
from tenantcore.domain.schemas import (
    ENTITY_SCHEMAS,
    EntitySchema,
    MUTATIONS,
    EntityType,
    OpKind,
    clean_payload,
    get_schema,
    validate_row,
)
from tenantcore.persistence.db import get_sessionmaker
from tenantcore.persistence.guards import tenant_predicate
from tenantcore.services import context as context_store
from tenantcore.services.audit import AuditEntry, Recorder, record
from tenantcore.services.policy import Decision, authorize, baseline_filter


logger = logging.getLogger(__name__)


def row_image(obj: Base) -> dict[str, Any]:
    # Detached copy of every column so later mutation cannot rewrite a before-image.
    return {
        column.name: copy.deepcopy(getattr(obj, column.name))
        for column in obj.__table__.columns
    }


def _column_defaults(schema: EntitySchema) -> dict[str, Any]:
    # Resolve Python-side column defaults up front so validation sees the row as it will be stored.
    defaults: dict[str, Any] = {}
    for column in schema.model.__table__.columns:
        default = column.default
        if default is None:
            defaults[column.name] = None
        elif default.is_scalar:
            defaults[column.name] = default.arg
        elif default.is_callable:
            defaults[column.name] = default.arg(None)
        else:
            defaults[column.name] = None
    return defaults


async def _execute(session: AsyncSession, stmt: Any) -> Any:
    try:
        return await session.execute(stmt)
    except SQLAlchemyError as exc:
        logger.error("store_query_failed", exc_info=exc)
        raise StorageUnavailable("store query failed") from exc


async def _flush(session: AsyncSession) -> None:
    try:
        await session.flush()
    except IntegrityError as exc:
        raise ConflictOnUniqueConstraint((), "Store rejected the write as a constraint conflict") from exc
    except SQLAlchemyError as exc:
        logger.error("store_flush_failed", exc_info=exc)
        raise StorageUnavailable("store write failed") from exc


class EntityQuery:
    """Lazy, restartable read.

    Nothing touches the store until the query is consumed, and every
    consumption (``async for``, ``all``, ``first``, ``count``) re-issues the
    filtered statement so callers always observe current state.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        schema: EntitySchema,
        predicate: Predicate,
        *,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._schema = schema
        self._predicate = predicate
        self._limit = limit
        model = schema.model
        # Compile eagerly so unknown filter fields fail at read() rather than at iteration.
        self._clause = to_clause(predicate, model)
        self._ordering = _ordering(schema, order_by)

    @property
    def predicate(self) -> Predicate:
        return self._predicate

    def _statement(self) -> Select[Any]:
        stmt = select(self._schema.model).where(self._clause).order_by(*self._ordering)
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        return stmt

    async def all(self) -> list[Any]:
        async with self._session_factory() as session:
            result = await _execute(session, self._statement())
            return list(result.scalars().all())

    async def first(self) -> Any | None:
        async with self._session_factory() as session:
            result = await _execute(session, self._statement().limit(1))
            return result.scalars().first()

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self._schema.model).where(self._clause)
        async with self._session_factory() as session:
            result = await _execute(session, stmt)
            return int(result.scalar() or 0)

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        for row in await self.all():
            yield row


def _ordering(schema: EntitySchema, order_by: Sequence[str] | None) -> list[Any]:
    model = schema.model
    columns = schema.columns
    if not order_by:
        return [model.created_at, model.id]
    ordering: list[Any] = []
    for raw in order_by:
        descending = raw.startswith("-")
        name = raw[1:] if descending else raw
        if name not in columns:
            raise ValidationFailed({name: "unknown order field"})
        column = getattr(model, name)
        ordering.append(column.desc() if descending else column.asc())
    # Stable tie-break keeps pagination deterministic.
    ordering.append(model.id)
    return ordering


class AccessGateway:
    """Single enforced entry point for tenant-scoped reads and writes.

    Each call resolves the unit-of-work context (or takes an explicit one), asks
    the policy evaluator for a decision, runs the filtered statement and, for
    writes, appends the audit record inside the same transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        registry: Mapping[EntityType, EntitySchema] = ENTITY_SCHEMAS,
        recorder: Recorder = record,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._recorder = recorder

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_sessionmaker()

    def _schema(self, entity_type: EntityType | str) -> EntitySchema:
        return get_schema(entity_type, self._registry)

    def read(
        self,
        entity_type: EntityType | str,
        query_filter: Mapping[str, Any] | Predicate | None = None,
        *,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
        ctx: OperationContext | None = None,
    ) -> EntityQuery:
        ctx = ctx or context_store.current()
        schema = self._schema(entity_type)
        decision = authorize(schema.entity_type, OpKind.READ, ctx, registry=self._registry)
        self._enforce(decision, schema, OpKind.READ, ctx)
        # Caller filters can only narrow the mandatory tenant filter.
        predicate = all_of(decision.filter, from_mapping(query_filter))
        return EntityQuery(
            self.session_factory, schema, predicate, order_by=order_by, limit=limit
        )

    async def get(
        self,
        entity_type: EntityType | str,
        record_id: str,
        *,
        ctx: OperationContext | None = None,
    ) -> Any:
        row = await self.read(entity_type, where("id", "eq", record_id), ctx=ctx).first()
        if row is None:
            raise NotFound(f"{EntityType(entity_type).value} {record_id} not found")
        return row

    async def insert(
        self,
        entity_type: EntityType | str,
        payload: Mapping[str, Any],
        *,
        ctx: OperationContext | None = None,
        session: AsyncSession | None = None,
    ) -> Any:
        return await self.write(entity_type, OpKind.INSERT, payload, ctx=ctx, session=session)

    async def update(
        self,
        entity_type: EntityType | str,
        record_id: str,
        changes: Mapping[str, Any],
        *,
        ctx: OperationContext | None = None,
        session: AsyncSession | None = None,
    ) -> Any:
        payload = {**changes, "id": record_id}
        return await self.write(entity_type, OpKind.UPDATE, payload, ctx=ctx, session=session)

    async def delete(
        self,
        entity_type: EntityType | str,
        record_id: str,
        *,
        ctx: OperationContext | None = None,
        session: AsyncSession | None = None,
    ) -> Any:
        return await self.write(
            entity_type, OpKind.DELETE, {"id": record_id}, ctx=ctx, session=session
        )

    async def write(
        self,
        entity_type: EntityType | str,
        op: OpKind | str,
        payload: Mapping[str, Any],
        *,
        ctx: OperationContext | None = None,
        session: AsyncSession | None = None,
    ) -> Any:
        """Apply one mutation and its audit record atomically.

        With ``session`` the write joins the caller's transaction and the caller
        owns commit/rollback; otherwise a dedicated transaction wraps both.
        """
        ctx = ctx or context_store.current()
        schema = self._schema(entity_type)
        op = OpKind(op)
        if op not in MUTATIONS:
            raise ValidationFailed({"op": "read is not a write operation"})

        if session is not None:
            return await self._write(session, schema, op, payload, ctx)

        try:
            async with self.session_factory() as own_session:
                async with own_session.begin():
                    result = await self._write(own_session, schema, op, payload, ctx)
        except IntegrityError as exc:
            raise ConflictOnUniqueConstraint((), "Store rejected the write as a constraint conflict") from exc
        except SQLAlchemyError as exc:
            logger.error("write_commit_failed table=%s op=%s", schema.table_name, op.value, exc_info=exc)
            raise StorageUnavailable("store commit failed") from exc
        return result

    async def _write(
        self,
        session: AsyncSession,
        schema: EntitySchema,
        op: OpKind,
        payload: Mapping[str, Any],
        ctx: OperationContext,
    ) -> Any:
        if op == OpKind.INSERT:
            return await self._insert(session, schema, payload, ctx)

        record_id = payload.get("id")
        if not record_id:
            raise ValidationFailed({"id": "required"})
        candidate = await self._fetch_candidate(session, schema, ctx, str(record_id))
        if candidate is None:
            # Same outcome for "missing" and "another tenant's row" to avoid leaking existence.
            raise NotFound(f"{schema.table_name} {record_id} not found")
        before = row_image(candidate)

        if op == OpKind.UPDATE:
            return await self._update(session, schema, candidate, before, payload, ctx)
        return await self._delete(session, schema, candidate, before, ctx)

    async def _insert(
        self,
        session: AsyncSession,
        schema: EntitySchema,
        payload: Mapping[str, Any],
        ctx: OperationContext,
    ) -> Any:
        values = clean_payload(schema, payload, op=OpKind.INSERT)
        if not ctx.is_bypass:
            values.setdefault(schema.tenant_field, ctx.tenant_id)
            if schema.creator_field:
                values[schema.creator_field] = ctx.principal_id
            if schema.default_owner_field and values.get(schema.default_owner_field) is None:
                values[schema.default_owner_field] = ctx.principal_id
        values["id"] = new_id()
        if values.get(schema.tenant_field) is None:
            raise ValidationFailed({schema.tenant_field: "required"})

        row = {**_column_defaults(schema), **values}
        now = utc_now()
        if "created_at" in row:
            row["created_at"] = now
        if "updated_at" in row:
            row["updated_at"] = now

        decision = authorize(schema.entity_type, OpKind.INSERT, ctx, row, registry=self._registry)
        self._enforce(decision, schema, OpKind.INSERT, ctx)
        validate_row(schema, row)
        touched = {name for name, value in values.items() if value is not None}
        await self._check_references(session, schema, row, touched)
        await self._check_unique(session, schema, row, touched)

        obj = schema.model(**row)
        session.add(obj)
        await _flush(session)
        after = row_image(obj)
        await self._recorder(
            session,
            AuditEntry(
                action=OpKind.INSERT.value,
                tenant_id=self._audit_tenant(schema, after, ctx),
                user_id=ctx.principal_id,
                table_name=schema.table_name,
                record_id=obj.id,
                new_values=after,
                details={"role": ctx.role},
            ),
        )
        logger.info(
            "entity_inserted table=%s record_id=%s tenant_id=%s principal_id=%s",
            schema.table_name,
            obj.id,
            after.get(schema.tenant_field),
            ctx.principal_id,
        )
        return obj

    async def _update(
        self,
        session: AsyncSession,
        schema: EntitySchema,
        candidate: Any,
        before: dict[str, Any],
        payload: Mapping[str, Any],
        ctx: OperationContext,
    ) -> Any:
        raw_changes = {key: value for key, value in payload.items() if key != "id"}
        # Authorize before validating so denied callers learn nothing about field rules.
        decision = authorize(
            schema.entity_type,
            OpKind.UPDATE,
            ctx,
            before,
            raw_changes,
            registry=self._registry,
        )
        self._enforce(decision, schema, OpKind.UPDATE, ctx, before.get("id"))
        changes = clean_payload(schema, raw_changes, op=OpKind.UPDATE)
        merged = {**before, **changes}
        validate_row(schema, merged)
        touched = set(changes)
        await self._check_references(session, schema, merged, touched)
        await self._check_unique(session, schema, merged, touched, exclude_id=before["id"])

        for name, value in changes.items():
            setattr(candidate, name, value)
        if "updated_at" in schema.columns:
            candidate.updated_at = utc_now()
        await _flush(session)
        after = row_image(candidate)
        await self._recorder(
            session,
            AuditEntry(
                action=OpKind.UPDATE.value,
                tenant_id=self._audit_tenant(schema, before, ctx),
                user_id=ctx.principal_id,
                table_name=schema.table_name,
                record_id=before["id"],
                old_values=before,
                new_values=after,
                details={"role": ctx.role, "changed": sorted(changes)},
            ),
        )
        logger.info(
            "entity_updated table=%s record_id=%s principal_id=%s fields=%s",
            schema.table_name,
            before["id"],
            ctx.principal_id,
            ",".join(sorted(changes)),
        )
        return candidate

    async def _delete(
        self,
        session: AsyncSession,
        schema: EntitySchema,
        candidate: Any,
        before: dict[str, Any],
        ctx: OperationContext,
    ) -> Any:
        decision = authorize(
            schema.entity_type, OpKind.DELETE, ctx, before, registry=self._registry
        )
        self._enforce(decision, schema, OpKind.DELETE, ctx, before.get("id"))
        details: dict[str, Any] = {"role": ctx.role}
        if schema.entity_type == EntityType.TENANT_USER:
            details["detached"] = await self._detach_principal(
                session, before["id"], before[schema.tenant_field]
            )
        await session.delete(candidate)
        await _flush(session)
        await self._recorder(
            session,
            AuditEntry(
                action=OpKind.DELETE.value,
                tenant_id=self._audit_tenant(schema, before, ctx),
                user_id=ctx.principal_id,
                table_name=schema.table_name,
                record_id=before["id"],
                old_values=before,
                details=details,
            ),
        )
        logger.info(
            "entity_deleted table=%s record_id=%s principal_id=%s",
            schema.table_name,
            before["id"],
            ctx.principal_id,
        )
        return candidate

    async def _fetch_candidate(
        self,
        session: AsyncSession,
        schema: EntitySchema,
        ctx: OperationContext,
        record_id: str,
    ) -> Any | None:
        model = schema.model
        predicate = all_of(baseline_filter(schema, ctx), where("id", "eq", record_id))
        stmt = select(model).where(to_clause(predicate, model)).with_for_update()
        result = await _execute(session, stmt)
        return result.scalar_one_or_none()

    async def _check_references(
        self,
        session: AsyncSession,
        schema: EntitySchema,
        row: Mapping[str, Any],
        touched: set[str],
    ) -> None:
        # References must resolve inside the row's own tenant; a foreign id reads as unknown.
        errors: dict[str, str] = {}
        tenant_id = row.get(schema.tenant_field)
        for name, target in schema.references.items():
            value = row.get(name)
            if name not in touched or value is None:
                continue
            target_schema = self._schema(target)
            target_model = target_schema.model
            predicate = all_of(
                tenant_predicate(target_schema.tenant_field, tenant_id),
                where("id", "eq", value),
            )
            stmt = select(func.count()).select_from(target_model).where(
                to_clause(predicate, target_model)
            )
            result = await _execute(session, stmt)
            if not int(result.scalar() or 0):
                errors[name] = "unknown reference"
        if errors:
            raise ValidationFailed(errors)

    async def _check_unique(
        self,
        session: AsyncSession,
        schema: EntitySchema,
        row: Mapping[str, Any],
        touched: set[str],
        *,
        exclude_id: str | None = None,
    ) -> None:
        model = schema.model
        for fields in schema.unique:
            if not set(fields) & touched:
                continue
            if any(row.get(name) is None for name in fields):
                continue
            stmt = select(func.count()).select_from(model).where(
                *(getattr(model, name) == row[name] for name in fields)
            )
            if exclude_id is not None:
                stmt = stmt.where(model.id != exclude_id)
            result = await _execute(session, stmt)
            if int(result.scalar() or 0):
                logger.info("unique_conflict table=%s fields=%s", schema.table_name, ",".join(fields))
                raise ConflictOnUniqueConstraint(fields)

    async def _detach_principal(
        self, session: AsyncSession, principal_id: str, tenant_id: str
    ) -> dict[str, int]:
        # Removing a principal leaves its entities in place with the reference cleared.
        detached: dict[str, int] = {}
        for schema in self._registry.values():
            if not schema.writable:
                continue
            fields = set(schema.ownership_fields)
            fields.update(
                name
                for name, target in schema.references.items()
                if target == EntityType.TENANT_USER
            )
            if schema.creator_field:
                fields.add(schema.creator_field)
            model = schema.model
            for name in sorted(fields):
                stmt = (
                    update(model)
                    .where(
                        getattr(model, name) == principal_id,
                        getattr(model, schema.tenant_field) == tenant_id,
                    )
                    .values({name: None})
                    .execution_options(synchronize_session="evaluate")
                )
                result = await _execute(session, stmt)
                if result.rowcount:
                    detached[f"{schema.table_name}.{name}"] = int(result.rowcount)
        return detached

    @staticmethod
    def _audit_tenant(
        schema: EntitySchema, row: Mapping[str, Any], ctx: OperationContext
    ) -> str | None:
        return row.get(schema.tenant_field) or ctx.tenant_id

    @staticmethod
    def _enforce(
        decision: Decision,
        schema: EntitySchema,
        op: OpKind,
        ctx: OperationContext,
        record_id: str | None = None,
    ) -> None:
        if decision.allowed:
            return
        logger.info(
            "access_denied table=%s op=%s reason=%s tenant_id=%s principal_id=%s record_id=%s",
            schema.table_name,
            op.value,
            decision.reason,
            ctx.tenant_id,
            ctx.principal_id,
            record_id,
        )
        raise Forbidden(f"{op.value} on {schema.table_name} denied: {decision.reason}")
