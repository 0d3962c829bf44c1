"""Tests for the settings materializer."""

import json
from pathlib import Path

import pytest
from azure_mock import MockCloud, http_error

from provisioner.context import DeploymentContext
from provisioner.credentials import PrincipalInfo
from provisioner.errors import SettingsDocumentError
from provisioner.provisioner import ResourceProvisioner, build_plan
from provisioner.settings import (
    PLACEHOLDER,
    REQUIRED_SETTINGS,
    WRITE_REMEDIATION,
    collect_settings,
    materialize,
    merge_values,
    missing_settings,
)

CONNECTION_URL_KEYS = {
    "formsConnection-ConnectionRuntimeUrl",
    "teamsConnection-ConnectionRuntimeUrl",
    "outlookConnection-ConnectionRuntimeUrl",
}


def read_values(path: Path) -> dict[str, str]:
    return json.loads(path.read_text(encoding="utf-8"))["Values"]


class TestMergeValues:
    def test_fresh_values_overwrite(self) -> None:
        merged, placeholders, preserved = merge_values({"a": "old"}, {"a": "new"})

        assert merged == {"a": "new"}
        assert placeholders == []
        assert preserved == []

    def test_unresolved_key_keeps_manual_value(self) -> None:
        merged, placeholders, preserved = merge_values({"a": "edited"}, {"a": None})

        assert merged["a"] == "edited"
        assert preserved == ["a"]
        assert placeholders == []

    def test_unresolved_key_without_prior_becomes_placeholder(self) -> None:
        merged, placeholders, _ = merge_values({"a": PLACEHOLDER}, {"a": None, "b": None})

        assert merged == {"a": PLACEHOLDER, "b": PLACEHOLDER}
        assert placeholders == ["a", "b"]

    def test_unknown_keys_are_left_alone(self) -> None:
        merged, _, _ = merge_values({"custom": "mine"}, {"a": "x"})

        assert merged == {"custom": "mine", "a": "x"}


class TestMaterialize:
    def test_every_required_key_is_written(self, tmp_path: Path) -> None:
        path = tmp_path / "local.settings.json"

        result = materialize(path, {"APP_KIND": "workflowApp"})

        values = read_values(path)
        assert set(REQUIRED_SETTINGS) <= set(values)
        assert values["APP_KIND"] == "workflowApp"
        assert values["sql_serverName"] == PLACEHOLDER
        assert not result.complete

    def test_document_shape_is_kept(self, tmp_path: Path) -> None:
        path = tmp_path / "local.settings.json"
        path.write_text(
            json.dumps({"IsEncrypted": False, "Host": {"CORS": "*"}, "Values": {"x": "1"}})
        )

        materialize(path, {})

        document = json.loads(path.read_text())
        assert document["Host"] == {"CORS": "*"}
        assert document["IsEncrypted"] is False
        assert document["Values"]["x"] == "1"

    def test_invalid_document_is_not_overwritten(self, tmp_path: Path) -> None:
        path = tmp_path / "local.settings.json"
        path.write_text("{not json")

        with pytest.raises(SettingsDocumentError):
            materialize(path, {})

        assert path.read_text() == "{not json"

    def test_values_must_be_an_object(self, tmp_path: Path) -> None:
        path = tmp_path / "local.settings.json"
        path.write_text(json.dumps({"Values": ["a"]}))

        with pytest.raises(SettingsDocumentError):
            materialize(path, {})

    def test_no_temporary_files_left_behind(self, tmp_path: Path) -> None:
        materialize(tmp_path / "local.settings.json", {})

        assert [p.name for p in tmp_path.iterdir()] == ["local.settings.json"]

    def test_unwritable_location_is_a_settings_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(SettingsDocumentError) as exc_info:
            materialize(blocker / "local.settings.json", {})

        assert "Cannot write settings document" in str(exc_info.value)
        assert exc_info.value.remediation == WRITE_REMEDIATION
        assert [p.name for p in tmp_path.iterdir()] == ["blocker"]


class TestCollectSettings:
    @pytest.fixture
    def deployed(self, ctx: DeploymentContext, principal: PrincipalInfo) -> DeploymentContext:
        ResourceProvisioner(ctx).run(build_plan(ctx.config, principal))
        return ctx

    def test_complete_except_connection_urls(self, deployed: DeploymentContext) -> None:
        values = collect_settings(deployed)

        unresolved = {k for k, v in values.items() if v is None}
        assert unresolved == CONNECTION_URL_KEYS

    def test_values_point_at_deployed_resources(self, deployed: DeploymentContext) -> None:
        values = collect_settings(deployed)

        storage = deployed.physical_name_of("storage")
        server = deployed.physical_name_of("sqlServer")
        assert f"AccountName={storage};" in values["AzureWebJobsStorage"]
        assert values["sql_serverName"] == f"{server}.database.windows.net"
        assert "Authentication=Active Directory Managed Identity" in values["sql_connectionString"]
        assert values["agent_deploymentName"] == "gpt-4.1"
        assert values["agent_ResourceID"] == deployed.resource_id_of("openAI")
        assert values["apim_gatewayUrl"].endswith(".azure-api.net")
        assert values["apim_subscriptionKey"] == "apim-key-loan-agent-subscription"
        assert values["LOGIC_APP_NAME"] == deployed.physical_name_of("logicApp")

    def test_authorized_connection_contributes_runtime_url(
        self, deployed: DeploymentContext, cloud: MockCloud, new_context
    ) -> None:
        cloud.authorize_connection("outlookConnection")
        later = new_context(deployed.config)
        ResourceProvisioner(later).discover(build_plan(later.config, later.principal))

        values = collect_settings(later)

        assert values["outlookConnection-ConnectionRuntimeUrl"].startswith("https://")

    def test_denied_key_listing_becomes_placeholder(
        self, deployed: DeploymentContext, cloud: MockCloud
    ) -> None:
        cloud.fail("list_openai_key", "", http_error(403, "AuthorizationFailed"), times=None)

        values = collect_settings(deployed)

        assert values["agent_openAIKey"] is None
        assert values["agent_openAIEndpoint"] is not None

    def test_partial_run_still_writes_every_key(
        self, ctx: DeploymentContext, config, principal: PrincipalInfo
    ) -> None:
        ctx.records.clear()

        result = materialize(config.settings_path, collect_settings(ctx))

        assert set(result.placeholders) >= {"sql_serverName", "agent_openAIKey", "LOGIC_APP_NAME"}
        assert result.values["WORKFLOWS_SUBSCRIPTION_ID"] == config.subscription_id


class TestMissingSettings:
    def test_missing_file_reports_everything(self, tmp_path: Path) -> None:
        assert missing_settings(tmp_path / "absent.json") == list(REQUIRED_SETTINGS)

    def test_complete_document(self, tmp_path: Path) -> None:
        path = tmp_path / "local.settings.json"
        materialize(path, dict.fromkeys(REQUIRED_SETTINGS, "value"))

        assert missing_settings(path) == []

    def test_manual_edit_survives_refresh(self, tmp_path: Path) -> None:
        path = tmp_path / "local.settings.json"
        materialize(path, {})
        values = read_values(path)
        values["teamsConnection-ConnectionRuntimeUrl"] = "https://pasted.example/url"
        path.write_text(json.dumps({"IsEncrypted": False, "Values": values}))

        result = materialize(path, {"teamsConnection-ConnectionRuntimeUrl": None})

        assert read_values(path)["teamsConnection-ConnectionRuntimeUrl"] == (
            "https://pasted.example/url"
        )
        assert "teamsConnection-ConnectionRuntimeUrl" in result.preserved
        assert "teamsConnection-ConnectionRuntimeUrl" not in missing_settings(path)
