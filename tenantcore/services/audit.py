from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcore.core.config import get_settings
from tenantcore.core.errors import StorageUnavailable
from tenantcore.domain.models import AuditRecord, utc_now


logger = logging.getLogger(__name__)

ACTION_CONTEXT_SWITCH = "context_switch"

_SENSITIVE_KEY_PATTERNS = ["password", "api_key", "authorization", "token", "secret"]
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class AuditEntry:
    # One append-only fact: who did what to which row, with before/after images.
    action: str
    tenant_id: str | None
    user_id: str | None
    table_name: str | None = None
    record_id: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None


Recorder = Callable[[AsyncSession, AuditEntry], Awaitable[AuditRecord]]


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def to_jsonable(value: Any) -> Any:
    # Row images carry datetimes and decimals; JSON columns need plain scalars.
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _prepare(value: dict[str, Any] | None) -> dict[str, Any] | None:
    if value is None:
        return None
    prepared = to_jsonable(value)
    if get_settings().audit_redaction_enabled:
        prepared = sanitize_metadata(prepared)
    return prepared


async def record(session: AsyncSession, entry: AuditEntry) -> AuditRecord:
    """Append ``entry`` inside the caller's transaction.

    Failures propagate as StorageUnavailable so the enclosing mutation rolls back
    with it; an unaudited write is never committed.
    """
    row = AuditRecord(
        user_id=entry.user_id,
        tenant_id=entry.tenant_id,
        action=entry.action,
        table_name=entry.table_name,
        record_id=entry.record_id,
        old_values=_prepare(entry.old_values),
        new_values=_prepare(entry.new_values),
        details=_prepare(entry.details) or {},
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        created_at=utc_now(),
    )
    try:
        session.add(row)
        await session.flush()
    except SQLAlchemyError as exc:
        logger.error(
            "audit_record_write_failed action=%s table=%s record_id=%s",
            entry.action,
            entry.table_name,
            entry.record_id,
            exc_info=exc,
        )
        raise StorageUnavailable("audit record could not be written") from exc
    return row
