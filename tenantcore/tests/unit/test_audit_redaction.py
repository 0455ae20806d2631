from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from tenantcore.services.audit import sanitize_metadata, to_jsonable


def test_audit_redacts_tokens_and_secrets() -> None:
    # Redact token and secret fields in audit images.
    payload = {
        "custom_fields": {"api_key": "sk-live", "region": "eu"},
        "client_secret": "super-secret",
        "history": [{"password": "hunter2"}, {"note": "ok"}],
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["custom_fields"] == {"api_key": "[REDACTED]", "region": "eu"}
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["history"] == [{"password": "[REDACTED]"}, {"note": "ok"}]
    assert sanitized["safe"] == "value"


def test_row_images_become_json_scalars() -> None:
    image = {
        "value": Decimal("12.50"),
        "expected_close_date": date(2026, 3, 31),
        "created_at": datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        "tags": ("a", "b"),
    }
    assert to_jsonable(image) == {
        "value": "12.50",
        "expected_close_date": "2026-03-31",
        "created_at": "2026-01-02T03:04:05+00:00",
        "tags": ["a", "b"],
    }
