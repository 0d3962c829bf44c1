"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from provisioner.config import (
    DEFAULT_SETTINGS_PATH,
    MAX_CONFIG_FILE_SIZE_BYTES,
    Config,
    ConfigurationError,
    load_config_file,
    parse_tags,
)
from provisioner.retry import RetryPolicy

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"

VALID = {
    "subscription_id": SUBSCRIPTION_ID,
    "resource_group": "rg-loan-agent",
    "location": "eastus2",
    "project_name": "loanagent",
}

ENV = {
    "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
    "RESOURCE_GROUP_NAME": "rg-loan-agent",
    "AZURE_LOCATION": "eastus2",
    "PROJECT_NAME": "loanagent",
}


class TestConfig:
    """Tests for Config validation."""

    def test_valid_config(self) -> None:
        config = Config(**VALID)

        assert config.existing_apim_name is None
        assert config.settings_path == Path(DEFAULT_SETTINGS_PATH)
        assert config.retry.max_attempts == 3
        assert config.openai_model_name == "gpt-4.1"
        assert config.strict is False

    def test_seed_and_group_id(self) -> None:
        config = Config(**VALID)

        assert config.seed == f"{SUBSCRIPTION_ID}-rg-loan-agent"
        assert config.resource_group_id == (
            f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-loan-agent"
        )

    def test_missing_required_fields_are_all_reported(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(subscription_id="", resource_group="", location="", project_name="")

        message = str(exc_info.value)
        for key in ("AZURE_SUBSCRIPTION_ID", "RESOURCE_GROUP_NAME", "AZURE_LOCATION"):
            assert key in message
        assert "PROJECT_NAME" in message

    @pytest.mark.parametrize(
        ("field", "value", "fragment"),
        [
            ("subscription_id", "not-a-guid", "valid GUID"),
            ("resource_group", "rg with spaces", "invalid characters"),
            ("resource_group", "rg.", "invalid characters"),
            ("resource_group", "r" * 91, "maximum length"),
            ("location", "East US!", "valid Azure region"),
            ("project_name", "Loan_Agent", "PROJECT_NAME"),
            ("project_name", "ab", "PROJECT_NAME"),
            ("existing_apim_name", "-bad", "APIM name"),
            ("apim_sku", "Enterprise", "APIM sku"),
            ("apim_publisher_email", "nobody", "publisher email"),
            ("openai_model_capacity", 0, "capacity"),
            ("operation_timeout_seconds", 10, "timeout"),
        ],
    )
    def test_invalid_values(self, field: str, value: object, fragment: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(**{**VALID, field: value})

        assert fragment in str(exc_info.value)

    def test_retry_bounds(self) -> None:
        with pytest.raises(ConfigurationError, match="max attempts"):
            Config(**VALID, retry=RetryPolicy(max_attempts=0))

        with pytest.raises(ConfigurationError, match="base delay"):
            Config(**VALID, retry=RetryPolicy(base_delay_seconds=600))

    def test_sql_admin_fields_come_together(self) -> None:
        with pytest.raises(ConfigurationError, match="together"):
            Config(**VALID, sql_admin_object_id="11111111-2222-3333-4444-555555555555")

    def test_too_many_tags(self) -> None:
        tags = {f"k{i}": "v" for i in range(51)}

        with pytest.raises(ConfigurationError, match="tags"):
            Config(**VALID, tags=tags)

    def test_config_is_immutable(self) -> None:
        config = Config(**VALID)

        with pytest.raises(AttributeError):
            config.project_name = "other"  # type: ignore[misc]


class TestFromEnv:
    """Tests for Config.from_env."""

    def test_reads_environment(self) -> None:
        env = {**ENV, "EXISTING_APIM_NAME": "shared-apim", "MAX_ATTEMPTS": "5"}
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.subscription_id == SUBSCRIPTION_ID
        assert config.existing_apim_name == "shared-apim"
        assert config.retry.max_attempts == 5
        assert config.retry.base_delay_seconds == 5.0

    def test_overrides_win_and_none_falls_through(self) -> None:
        with patch.dict(os.environ, ENV, clear=True):
            config = Config.from_env(
                location="westeurope",
                project_name=None,
                settings_path="out/settings.json",
                base_delay_seconds=0.5,
            )

        assert config.location == "westeurope"
        assert config.project_name == "loanagent"
        assert config.settings_path == Path("out/settings.json")
        assert config.retry.base_delay_seconds == 0.5

    def test_empty_apim_name_means_none(self) -> None:
        with patch.dict(os.environ, {**ENV, "EXISTING_APIM_NAME": ""}, clear=True):
            config = Config.from_env()

        assert config.existing_apim_name is None

    def test_non_numeric_attempts(self) -> None:
        with patch.dict(os.environ, {**ENV, "MAX_ATTEMPTS": "many"}, clear=True):
            with pytest.raises(ConfigurationError, match="MAX_ATTEMPTS"):
                Config.from_env()

    def test_non_numeric_delay(self) -> None:
        with patch.dict(os.environ, {**ENV, "RETRY_BASE_DELAY": "soon"}, clear=True):
            with pytest.raises(ConfigurationError, match="RETRY_BASE_DELAY"):
                Config.from_env()

    def test_unknown_override_key(self) -> None:
        with patch.dict(os.environ, ENV, clear=True):
            with pytest.raises(ConfigurationError, match="Unknown configuration key"):
                Config.from_env(colour="blue")

    def test_missing_environment(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError, match="AZURE_SUBSCRIPTION_ID is required"):
                Config.from_env()


class TestParseTags:
    def test_pairs(self) -> None:
        assert parse_tags(["env=dev", " owner = team-a "]) == {"env": "dev", "owner": "team-a"}

    def test_empty_value_is_allowed(self) -> None:
        assert parse_tags(("flag=",)) == {"flag": ""}

    @pytest.mark.parametrize("pair", ["novalue", "=value"])
    def test_malformed_pair(self, pair: str) -> None:
        with pytest.raises(ConfigurationError, match="key=value"):
            parse_tags([pair])


class TestLoadConfigFile:
    def test_loads_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "params.yaml"
        path.write_text("project_name: loanagent\ntags:\n  cost-center: 42\n")

        data = load_config_file(path)

        assert data == {"project_name": "loanagent", "tags": {"cost-center": "42"}}

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "params.yaml"
        path.write_text("")

        assert load_config_file(path) == {}

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_config_file(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "params.yaml"
        path.write_text("project_name: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config_file(path)

    def test_list_document_is_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "params.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="mapping"):
            load_config_file(path)

    def test_tags_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "params.yaml"
        path.write_text("tags: [a, b]\n")

        with pytest.raises(ConfigurationError, match="tags"):
            load_config_file(path)

    def test_oversized_file(self, tmp_path: Path) -> None:
        path = tmp_path / "params.yaml"
        path.write_text("#" * (MAX_CONFIG_FILE_SIZE_BYTES + 1))

        with pytest.raises(ConfigurationError, match="too large"):
            load_config_file(path)

    def test_wrongly_typed_value_is_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "params.yaml"
        path.write_text("location: 123\nmax_attempts: many\n")

        with pytest.raises(ConfigurationError) as exc_info:
            load_config_file(path)

        message = str(exc_info.value)
        assert "  - location:" in message
        assert "  - max_attempts:" in message

    def test_unknown_key_is_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "params.yaml"
        path.write_text("project_name: loanagent\ncolour: blue\n")

        with pytest.raises(ConfigurationError, match="colour"):
            load_config_file(path)

    def test_typed_values_are_kept(self, tmp_path: Path) -> None:
        path = tmp_path / "params.yaml"
        path.write_text("max_attempts: 3\nstrict: true\nsettings_path: out/local.settings.json\n")

        data = load_config_file(path)

        assert data == {
            "max_attempts": 3,
            "strict": True,
            "settings_path": Path("out/local.settings.json"),
        }
