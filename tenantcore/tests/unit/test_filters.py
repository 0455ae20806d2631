from __future__ import annotations

import pytest

from tenantcore.core.errors import ValidationFailed
from tenantcore.domain.filters import (
    TRUE,
    AllOf,
    Condition,
    all_of,
    from_mapping,
    matches,
    to_clause,
    where,
)
from tenantcore.domain.models import Contact, Lead


def test_operator_truth_table() -> None:
    row = {
        "stage": "won",
        "probability": 80,
        "title": "Enterprise renewal",
        "contact_id": None,
        "custom_fields": {"tier": "gold"},
    }
    cases = [
        (where("stage", "eq", "won"), True),
        (where("stage", "ne", "lost"), True),
        (where("stage", "in", ["won", "lost"]), True),
        (where("stage", "not_in", ["new"]), True),
        (where("probability", "gt", 50), True),
        (where("probability", "gte", 80), True),
        (where("probability", "lt", 80), False),
        (where("probability", "lte", 80), True),
        (where("title", "contains", "renew"), True),
        (where("title", "starts_with", "Enter"), True),
        (where("contact_id", "is_null"), True),
        (where("contact_id", "is_null", False), False),
        (where("custom_fields.tier", "eq", "gold"), True),
        (where("custom_fields.missing", "is_null"), True),
    ]
    for predicate, expected in cases:
        assert matches(predicate, row) is expected, predicate


def test_null_never_satisfies_comparisons() -> None:
    # Mirrors SQL three-valued logic so in-memory checks agree with the compiled query.
    row = {"value": None, "stage": None}
    assert not matches(where("value", "gt", 0), row)
    assert not matches(where("stage", "ne", "won"), row)
    assert not matches(where("stage", "not_in", ["won"]), row)
    assert matches(where("stage", "eq", None), row)


def test_from_mapping_shorthand() -> None:
    predicate = from_mapping({"stage": "won", "probability": {"gte": 50, "lte": 90}})
    assert isinstance(predicate, AllOf)
    assert {item.field for item in predicate.items} == {"stage", "probability"}
    assert matches(predicate, {"stage": "won", "probability": 60})
    assert not matches(predicate, {"stage": "won", "probability": 95})
    assert from_mapping(None) == TRUE
    single = where("stage", "eq", "new")
    assert from_mapping(single) is single


def test_unknown_operator_is_rejected() -> None:
    with pytest.raises(ValidationFailed) as exc:
        from_mapping({"stage": {"regex": ".*"}})
    assert "stage" in exc.value.fields
    with pytest.raises(ValidationFailed):
        from_mapping(["stage"])  # type: ignore[arg-type]


def test_all_of_flattens_and_skips_missing() -> None:
    inner = all_of(where("a", "eq", 1), where("b", "eq", 2))
    combined = all_of(where("tenant_id", "eq", "t1"), inner, None)
    assert isinstance(combined, AllOf)
    assert len(combined.items) == 3
    assert all(isinstance(item, Condition) for item in combined.items)
    assert all_of(where("a", "eq", 1)) == Condition("a", "eq", 1)
    assert matches(TRUE, {})


def test_to_clause_rejects_unknown_fields() -> None:
    with pytest.raises(ValidationFailed):
        to_clause(where("nonexistent", "eq", 1), Contact)
    with pytest.raises(ValidationFailed):
        to_clause(where("email.domain", "eq", "x"), Contact)
    # JSON keys support equality-class operators only.
    with pytest.raises(ValidationFailed):
        to_clause(where("custom_fields.score", "gt", 3), Lead)


def test_to_clause_binds_values() -> None:
    clause = to_clause(
        all_of(where("tenant_id", "eq", "t1"), where("first_name", "contains", "'; drop")),
        Contact,
    )
    compiled = clause.compile()
    assert "drop" not in str(compiled)
    assert "t1" in compiled.params.values()
