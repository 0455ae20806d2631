from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
import re
from types import MappingProxyType
from typing import Any, Callable, Mapping

from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric, String, Text

from tenantcore.core.errors import ValidationFailed
from tenantcore.domain.context import PRINCIPAL_ROLES
from tenantcore.domain.models import Activity, AuditRecord, Base, Contact, Lead, Tenant, TenantUser


class EntityType(str, Enum):
    TENANT = "tenants"
    TENANT_USER = "tenant_users"
    CONTACT = "contacts"
    LEAD = "leads"
    ACTIVITY = "activities"
    AUDIT_LOG = "activity_log"


class OpKind(str, Enum):
    READ = "read"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


MUTATIONS = frozenset({OpKind.INSERT, OpKind.UPDATE, OpKind.DELETE})

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

LEAD_STAGES = frozenset({"new", "qualified", "proposal", "negotiation", "won", "lost"})
ACTIVITY_TYPES = frozenset({"call", "email", "meeting", "task", "note", "follow_up"})

# Timestamps are maintained by the gateway, never by callers.
SERVER_MANAGED_FIELDS = frozenset({"created_at", "updated_at"})


@dataclass(frozen=True)
class NumericRange:
    minimum: Decimal | int | None = None
    maximum: Decimal | int | None = None
    exclusive_minimum: bool = False

    def violation(self, value: Any) -> str | None:
        if self.minimum is not None:
            if self.exclusive_minimum and value <= self.minimum:
                return f"must be greater than {self.minimum}"
            if not self.exclusive_minimum and value < self.minimum:
                return f"must be at least {self.minimum}"
        if self.maximum is not None and value > self.maximum:
            return f"must be at most {self.maximum}"
        return None


RowCheck = Callable[[Mapping[str, Any]], dict[str, str]]


@dataclass(frozen=True)
class EntitySchema:
    """Structural and policy metadata for one tenant-scoped table.

    ``ownership_fields`` drive ownership-scoped mutation. They are ordered: the
    first one holding a value names the owner, so an assignee supersedes the
    creator. ``self_field`` marks the principal table where a principal may edit
    its own row, and ``admin_only`` lists fields only an admin may change.
    """

    entity_type: EntityType
    model: type[Base]
    tenant_field: str = "tenant_id"
    ownership_fields: tuple[str, ...] = ()
    self_field: str | None = None
    # Forced to the acting principal on insert.
    creator_field: str | None = None
    # Defaulted to the acting principal on insert when the caller leaves it empty.
    default_owner_field: str | None = None
    required: tuple[str, ...] = ()
    required_any: tuple[tuple[str, ...], ...] = ()
    enums: Mapping[str, frozenset[str]] = field(default_factory=dict)
    ranges: Mapping[str, NumericRange] = field(default_factory=dict)
    patterns: Mapping[str, re.Pattern[str]] = field(default_factory=dict)
    min_lengths: Mapping[str, int] = field(default_factory=dict)
    json_objects: tuple[str, ...] = ()
    json_lists: tuple[str, ...] = ()
    references: Mapping[str, EntityType] = field(default_factory=dict)
    unique: tuple[tuple[str, ...], ...] = ()
    admin_only: frozenset[str] = frozenset()
    checks: tuple[RowCheck, ...] = ()
    writable: bool = True

    @property
    def table_name(self) -> str:
        return self.model.__tablename__

    @property
    def columns(self) -> frozenset[str]:
        return frozenset(column.name for column in self.model.__table__.columns)

    @property
    def immutable(self) -> frozenset[str]:
        fields = {"id", self.tenant_field}
        if self.creator_field:
            fields.add(self.creator_field)
        return frozenset(fields)

    def owner_of(self, row: Mapping[str, Any]) -> Any | None:
        for name in self.ownership_fields:
            value = row.get(name)
            if value is not None:
                return value
        return None


def _completed_logic(row: Mapping[str, Any]) -> dict[str, str]:
    # Completion flag and timestamp must agree in both directions.
    completed = bool(row.get("is_completed"))
    completed_at = row.get("completed_at")
    if completed and completed_at is None:
        return {"completed_at": "required when is_completed is true"}
    if not completed and completed_at is not None:
        return {"completed_at": "must be empty unless is_completed is true"}
    return {}


ENTITY_SCHEMAS: Mapping[EntityType, EntitySchema] = MappingProxyType(
    {
        EntityType.TENANT: EntitySchema(
            entity_type=EntityType.TENANT,
            model=Tenant,
            tenant_field="id",
            required=("name", "slug"),
            patterns={"slug": SLUG_PATTERN},
            min_lengths={"name": 2},
            json_objects=("settings",),
            unique=(("slug",),),
        ),
        EntityType.TENANT_USER: EntitySchema(
            entity_type=EntityType.TENANT_USER,
            model=TenantUser,
            self_field="id",
            required=("email",),
            enums={"role": PRINCIPAL_ROLES},
            patterns={"email": EMAIL_PATTERN},
            json_lists=("permissions",),
            unique=(("tenant_id", "email"),),
            admin_only=frozenset({"role", "is_active", "permissions"}),
        ),
        EntityType.CONTACT: EntitySchema(
            entity_type=EntityType.CONTACT,
            model=Contact,
            ownership_fields=("created_by",),
            creator_field="created_by",
            required_any=(("first_name", "last_name", "company"),),
            patterns={"email": EMAIL_PATTERN},
            json_objects=("custom_fields",),
            json_lists=("tags",),
        ),
        EntityType.LEAD: EntitySchema(
            entity_type=EntityType.LEAD,
            model=Lead,
            ownership_fields=("assigned_to", "created_by"),
            creator_field="created_by",
            required=("title",),
            enums={"stage": LEAD_STAGES},
            ranges={
                "probability": NumericRange(minimum=0, maximum=100),
                "value": NumericRange(minimum=0),
            },
            patterns={"currency": CURRENCY_PATTERN},
            json_objects=("custom_fields",),
            json_lists=("tags",),
            references={"contact_id": EntityType.CONTACT, "assigned_to": EntityType.TENANT_USER},
        ),
        EntityType.ACTIVITY: EntitySchema(
            entity_type=EntityType.ACTIVITY,
            model=Activity,
            ownership_fields=("performed_by",),
            default_owner_field="performed_by",
            required=("type", "subject"),
            enums={"type": ACTIVITY_TYPES},
            ranges={"duration_minutes": NumericRange(minimum=0, exclusive_minimum=True)},
            json_objects=("custom_fields",),
            references={
                "contact_id": EntityType.CONTACT,
                "lead_id": EntityType.LEAD,
                "performed_by": EntityType.TENANT_USER,
            },
            checks=(_completed_logic,),
        ),
        EntityType.AUDIT_LOG: EntitySchema(
            entity_type=EntityType.AUDIT_LOG,
            model=AuditRecord,
            writable=False,
        ),
    }
)


def get_schema(
    entity_type: EntityType | str,
    registry: Mapping[EntityType, EntitySchema] = ENTITY_SCHEMAS,
) -> EntitySchema:
    try:
        return registry[EntityType(entity_type)]
    except (KeyError, ValueError) as exc:
        raise ValidationFailed({"entity_type": f"unknown entity type: {entity_type}"}) from exc


def clean_payload(
    schema: EntitySchema,
    payload: Mapping[str, Any],
    *,
    op: OpKind,
) -> dict[str, Any]:
    """Reject unknown or non-writable fields and coerce values to column types."""
    errors: dict[str, str] = {}
    cleaned: dict[str, Any] = {}
    columns = schema.model.__table__.columns
    for key, value in payload.items():
        if key not in columns:
            errors[key] = "unknown field"
            continue
        if key in SERVER_MANAGED_FIELDS or key == schema.creator_field:
            errors[key] = "server-managed field"
            continue
        if op == OpKind.INSERT and key == "id":
            # Caller ids could collide with another tenant's row and confirm it exists.
            errors[key] = "server-managed field"
            continue
        if op == OpKind.UPDATE and key in schema.immutable:
            errors[key] = "immutable field"
            continue
        try:
            cleaned[key] = _coerce(columns[key].type, value)
        except (TypeError, ValueError, InvalidOperation):
            errors[key] = "invalid type"
    if errors:
        raise ValidationFailed(errors)
    return cleaned


def validate_row(schema: EntitySchema, row: Mapping[str, Any]) -> None:
    # Validate the final row state so partial updates are checked against stored values.
    errors: dict[str, str] = {}
    for name in schema.required:
        value = row.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors[name] = "required"
    for group in schema.required_any:
        if all(row.get(name) in (None, "") for name in group):
            errors[group[0]] = "one of " + ", ".join(group) + " is required"
    for name, allowed in schema.enums.items():
        value = row.get(name)
        if value is not None and value not in allowed:
            errors[name] = "must be one of " + ", ".join(sorted(allowed))
    for name, numeric_range in schema.ranges.items():
        value = row.get(name)
        if value is None:
            continue
        problem = numeric_range.violation(value)
        if problem:
            errors[name] = problem
    for name, pattern in schema.patterns.items():
        value = row.get(name)
        if value is not None and not pattern.match(str(value)):
            errors[name] = "invalid format"
    for name, minimum in schema.min_lengths.items():
        value = row.get(name)
        if isinstance(value, str) and len(value) < minimum:
            errors[name] = f"must be at least {minimum} characters"
    for name in schema.json_objects:
        value = row.get(name)
        if value is not None and not isinstance(value, dict):
            errors[name] = "must be an object"
    for name in schema.json_lists:
        value = row.get(name)
        if value is not None and (
            not isinstance(value, list) or not all(isinstance(item, str) for item in value)
        ):
            errors[name] = "must be a list of strings"
    for check in schema.checks:
        for name, message in check(row).items():
            errors.setdefault(name, message)
    if errors:
        raise ValidationFailed(errors)


def _coerce(column_type: Any, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(column_type, Boolean):
        if not isinstance(value, bool):
            raise TypeError("expected bool")
        return value
    if isinstance(column_type, Integer):
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError("expected int")
        return value
    if isinstance(column_type, Numeric):
        if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
            raise TypeError("expected number")
        return Decimal(str(value))
    if isinstance(column_type, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        raise TypeError("expected datetime")
    if isinstance(column_type, Date):
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            return date.fromisoformat(value)
        raise TypeError("expected date")
    if isinstance(column_type, (String, Text)):
        if not isinstance(value, str):
            raise TypeError("expected string")
        return value
    return value
