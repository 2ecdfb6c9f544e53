"""Tests for structural schema checks."""

from __future__ import annotations

import pytest

from docrepo.domain.errors import SchemaFieldMissingError, ValidationError
from docrepo.domain.schema import check_shape, require_field, schema_has_field, subset_model
from tests.sample_domain import AreaSchema, World


class TestFieldGate:
    def test_has_field(self) -> None:
        assert schema_has_field(AreaSchema, "parent_id")
        assert not schema_has_field(World, "parent_id")

    def test_require_field_message(self) -> None:
        with pytest.raises(SchemaFieldMissingError) as exc_info:
            require_field(World, "parent_id")
        assert str(exc_info.value) == "Entity schema World does not have a parent_id field"
        assert exc_info.value.code == "SCHEMA_FIELD_MISSING"
        assert isinstance(exc_info.value, ValidationError)


class TestCheckShape:
    def test_full_payload_passes(self) -> None:
        check_shape(AreaSchema, {"name": "Bay", "parent_id": "p1"})

    def test_missing_required_field_fails(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            check_shape(AreaSchema, {"name": "Bay"}, operation="create")
        err = exc_info.value
        assert err.code == "VALIDATION_FAILED"
        assert str(err).startswith("Validation error during create operation")
        assert any(issue.startswith("parent_id:") for issue in err.issues)
        assert "  - parent_id:" in str(err)

    def test_subset_ignores_absent_required_fields(self) -> None:
        payload = {"name": "x"}
        check_shape(AreaSchema, payload, fields=payload)

    def test_subset_still_checks_present_fields(self) -> None:
        payload = {"name": 42, "tags": "not-a-list"}
        with pytest.raises(ValidationError) as exc_info:
            check_shape(AreaSchema, payload, fields=payload, operation="update")
        locs = {issue.split(":")[0] for issue in exc_info.value.issues}
        assert locs == {"name", "tags"}

    def test_omit(self) -> None:
        check_shape(AreaSchema, {"name": "x"}, omit=("parent_id",))

    def test_subset_models_are_cached(self) -> None:
        first = subset_model(AreaSchema, frozenset({"name"}))
        assert subset_model(AreaSchema, frozenset({"name"})) is first
        assert set(first.model_fields) == {"name"}
