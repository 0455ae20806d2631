from __future__ import annotations


class TenantCoreError(Exception):
    """Base error for tenantcore."""

    code = "TENANTCORE_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidContext(TenantCoreError):
    """Context establishment failed: unknown/inactive principal, tenant or role mismatch."""

    code = "INVALID_CONTEXT"


class NoActiveContext(TenantCoreError):
    """An operation ran without an established context for the unit of work."""

    code = "NO_ACTIVE_CONTEXT"


class Forbidden(TenantCoreError):
    """Policy denied the operation."""

    code = "FORBIDDEN"


class NotFound(TenantCoreError):
    """Row absent under the mandatory tenant filter (includes rows of other tenants)."""

    code = "NOT_FOUND"


class ValidationFailed(TenantCoreError):
    """Payload violates structural constraints."""

    code = "VALIDATION_FAILED"

    def __init__(self, fields: dict[str, str], message: str | None = None) -> None:
        self.fields = dict(fields)
        super().__init__(message or "Validation failed: " + ", ".join(sorted(self.fields)))


class ConflictOnUniqueConstraint(TenantCoreError):
    """A uniqueness invariant was violated."""

    code = "CONFLICT"

    def __init__(self, fields: tuple[str, ...] | list[str], message: str | None = None) -> None:
        self.fields = tuple(fields)
        super().__init__(message or "Unique constraint violated on " + ", ".join(self.fields))


class StorageUnavailable(TenantCoreError):
    """The underlying store call failed (connectivity, timeout, driver error)."""

    code = "STORAGE_UNAVAILABLE"
