"""Tests for the Pydantic resource models and run records."""

import pytest
from pydantic import TypeAdapter, ValidationError

from provisioner.models import (
    DesiredResourceSpec,
    ModelDeploymentSpec,
    Outcome,
    ProvisioningRecord,
    ResolvedResourceName,
    ResourceKind,
    SqlServerSpec,
    StorageAccountSpec,
)

SEED = ("12345678-1234-1234-1234-123456789012", "rg-loan-agent")

desired_adapter = TypeAdapter(DesiredResourceSpec)


class TestDesiredResourceSpec:
    """Tests for the discriminated resource union."""

    def test_kind_selects_model(self) -> None:
        spec = desired_adapter.validate_python(
            {
                "kind": "modelDeployment",
                "logical_name": "modelDeployment",
                "seed_inputs": SEED,
                "parent": "openAI",
                "base_model": "gpt-4.1",
                "base_model_version": "2025-04-14",
            }
        )

        assert isinstance(spec, ModelDeploymentSpec)
        assert spec.sku_hint == "GlobalStandard"
        assert spec.capacity == 50

    def test_unknown_kind_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            desired_adapter.validate_python(
                {"kind": "virtualMachine", "logical_name": "vm", "seed_inputs": SEED}
            )

    def test_kind_specific_fields_are_required(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            SqlServerSpec(logical_name="sqlServer", seed_inputs=SEED)

        assert "admin_object_id" in str(exc_info.value)

    def test_extra_fields_are_forbidden(self) -> None:
        with pytest.raises(ValidationError):
            StorageAccountSpec(logical_name="storage", seed_inputs=SEED, replication="GRS")

    def test_specs_are_frozen(self) -> None:
        spec = StorageAccountSpec(logical_name="storage", seed_inputs=SEED)

        with pytest.raises(ValidationError):
            spec.sku_hint = "Premium_LRS"  # type: ignore[misc]

    def test_capacity_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            ModelDeploymentSpec(
                logical_name="modelDeployment",
                seed_inputs=SEED,
                base_model="gpt-4.1",
                base_model_version="2025-04-14",
                capacity=0,
            )

    def test_storage_defaults(self) -> None:
        spec = StorageAccountSpec(logical_name="storage", seed_inputs=SEED)

        assert spec.kind is ResourceKind.STORAGE_ACCOUNT
        assert spec.sku_hint == "Standard_LRS"
        assert spec.tags == {}


class TestRecords:
    def test_outcome_success(self) -> None:
        assert Outcome.CREATED.succeeded
        assert Outcome.REUSED.succeeded
        assert not Outcome.FAILED.succeeded
        assert not Outcome.SKIPPED.succeeded

    def test_record_defaults_to_failed(self) -> None:
        record = ProvisioningRecord(resource_type="Microsoft.Sql/servers", logical_name="sql")

        assert record.outcome is Outcome.FAILED
        assert not record.succeeded

    def test_timestamp_names_are_not_deterministic(self) -> None:
        assert ResolvedResourceName("storage", "loanagentst1234").is_deterministic
        stamped = ResolvedResourceName("storage", "st20261019", collision_attempt=-1)
        assert not stamped.is_deterministic
