"""Settings materializer for the Logic App runtime.

The runtime reads ``local.settings.json`` at start-up and dereferences a
fixed set of keys under ``Values``. After every run (successful or
partial) this module writes each of those keys: the resolved value when it
could be obtained, otherwise the placeholder ``<UPDATE_REQUIRED>``. A key is
never omitted.

The document is also edited by hand (connection runtime URLs after
consent, keys rotated in the portal), so it is merged rather than
regenerated: fresh values overwrite, unresolved keys keep a prior real
value, and keys this tool does not know about are left alone. Writes go
through a temporary file and an atomic rename.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .context import DeploymentContext
from .errors import ProvisioningError, SettingsDocumentError
from .provisioner import (
    APIM,
    APIM_SUBSCRIPTION,
    LOGIC_APP,
    MODEL_DEPLOYMENT,
    OPENAI,
    SQL_DATABASE,
    SQL_SERVER,
    STORAGE,
    api_connection_names,
)
from .retry import call_with_retry

logger = logging.getLogger(__name__)

PLACEHOLDER = "<UPDATE_REQUIRED>"
VALUES_KEY = "Values"
WRITE_REMEDIATION = (
    "Point --settings-path at a writable location, then run 'loan-agent-deploy settings refresh'."
)

STORAGE_ENDPOINT_SUFFIX = "core.windows.net"
SQL_HOST_SUFFIX = "database.windows.net"


def connection_runtime_url_key(connection_logical_name: str) -> str:
    return f"{connection_logical_name}-ConnectionRuntimeUrl"


# Every key the Logic App workflows and runtime dereference
REQUIRED_SETTINGS: tuple[str, ...] = (
    "AzureWebJobsStorage",
    "APP_KIND",
    "FUNCTIONS_WORKER_RUNTIME",
    "FUNCTIONS_EXTENSION_VERSION",
    "WORKFLOWS_SUBSCRIPTION_ID",
    "WORKFLOWS_RESOURCE_GROUP_NAME",
    "WORKFLOWS_LOCATION_NAME",
    "LOGIC_APP_NAME",
    "agent_openAIEndpoint",
    "agent_openAIKey",
    "agent_ResourceID",
    "agent_deploymentName",
    "sql_serverName",
    "sql_databaseName",
    "sql_connectionString",
    "apim_gatewayUrl",
    "apim_subscriptionKey",
    *(connection_runtime_url_key(name) for name in api_connection_names()),
)


@dataclass
class MaterializeResult:
    """What was written to the settings document."""

    path: Path
    values: dict[str, str]
    placeholders: list[str] = field(default_factory=list)
    preserved: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.placeholders


# =============================================================================
# Collection
# =============================================================================


def collect_settings(ctx: DeploymentContext) -> dict[str, str | None]:
    """Derive every required setting from the run's records.

    Values that cannot be obtained (resource missing, key listing denied)
    are ``None``; they become placeholders on write.
    """
    config = ctx.config
    values: dict[str, str | None] = dict.fromkeys(REQUIRED_SETTINGS)

    values.update(
        {
            "APP_KIND": "workflowApp",
            "FUNCTIONS_WORKER_RUNTIME": "node",
            "FUNCTIONS_EXTENSION_VERSION": "~4",
            "WORKFLOWS_SUBSCRIPTION_ID": config.subscription_id,
            "WORKFLOWS_RESOURCE_GROUP_NAME": config.resource_group,
            "WORKFLOWS_LOCATION_NAME": config.location,
            "LOGIC_APP_NAME": _name(ctx, LOGIC_APP),
        }
    )

    storage_name = _name(ctx, STORAGE)
    if storage_name:
        key = _secret(
            ctx,
            "list storage keys",
            lambda: ctx.gateway.list_storage_key(config.resource_group, storage_name),
        )
        if key:
            values["AzureWebJobsStorage"] = (
                f"DefaultEndpointsProtocol=https;AccountName={storage_name};"
                f"AccountKey={key};EndpointSuffix={STORAGE_ENDPOINT_SUFFIX}"
            )

    openai_name = _name(ctx, OPENAI)
    if openai_name:
        values["agent_openAIEndpoint"] = (
            _property(ctx, OPENAI, "endpoint") or f"https://{openai_name}.openai.azure.com/"
        )
        values["agent_ResourceID"] = ctx.resource_id_of(OPENAI)
        values["agent_openAIKey"] = _secret(
            ctx,
            "list OpenAI keys",
            lambda: ctx.gateway.list_openai_key(config.resource_group, openai_name),
        )
    values["agent_deploymentName"] = _name(ctx, MODEL_DEPLOYMENT)

    server_name = _name(ctx, SQL_SERVER)
    database_name = _name(ctx, SQL_DATABASE)
    if server_name:
        host = (
            _property(ctx, SQL_SERVER, "fullyQualifiedDomainName")
            or f"{server_name}.{SQL_HOST_SUFFIX}"
        )
        values["sql_serverName"] = host
        if database_name:
            values["sql_databaseName"] = database_name
            values["sql_connectionString"] = (
                f"Server=tcp:{host},1433;Initial Catalog={database_name};"
                "Encrypt=True;TrustServerCertificate=False;Connection Timeout=30;"
                "Authentication=Active Directory Managed Identity;"
            )

    apim_name = _name(ctx, APIM)
    if apim_name:
        values["apim_gatewayUrl"] = (
            _property(ctx, APIM, "gatewayUrl") or f"https://{apim_name}.azure-api.net"
        )
        subscription_name = _name(ctx, APIM_SUBSCRIPTION)
        if subscription_name:
            values["apim_subscriptionKey"] = _secret(
                ctx,
                "list APIM subscription secrets",
                lambda: ctx.gateway.list_apim_subscription_key(
                    config.resource_group, apim_name, subscription_name
                ),
            )

    for connection_name in api_connection_names():
        # Only present once the connection has been authorized in the portal
        values[connection_runtime_url_key(connection_name)] = _property(
            ctx, connection_name, "connectionRuntimeUrl"
        )

    return values


def _name(ctx: DeploymentContext, logical_name: str) -> str | None:
    record = ctx.record(logical_name)
    if record is None or not record.succeeded:
        return None
    return record.physical_name


def _property(ctx: DeploymentContext, logical_name: str, key: str) -> str | None:
    record = ctx.record(logical_name)
    if record is None or not record.succeeded:
        return None
    properties = record.properties.get("properties") or {}
    value = properties.get(key)
    return str(value) if value else None


def _secret(ctx: DeploymentContext, operation: str, fetch: Callable[[], str]) -> str | None:
    try:
        return call_with_retry(fetch, ctx.config.retry, operation)
    except ProvisioningError as e:
        logger.warning(
            "Could not retrieve secret, a placeholder will be written",
            extra={"operation": operation, "error": str(e)},
        )
        return None


# =============================================================================
# Document I/O
# =============================================================================


def load_settings_document(path: Path) -> dict[str, Any]:
    """Read the existing document; an absent file is an empty document.

    Raises:
        SettingsDocumentError: If the file exists but is not a JSON object
            with a string map under ``Values``.
    """
    if not path.exists():
        return {}

    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise SettingsDocumentError(f"Cannot read settings document {path}: {e}") from e

    if not isinstance(document, dict):
        raise SettingsDocumentError(f"Settings document {path} is not a JSON object")
    values = document.get(VALUES_KEY, {})
    if not isinstance(values, dict):
        raise SettingsDocumentError(f"'{VALUES_KEY}' in {path} is not a JSON object")
    return document


def merge_values(
    prior: dict[str, Any], fresh: dict[str, str | None]
) -> tuple[dict[str, Any], list[str], list[str]]:
    """Merge freshly resolved values into the prior ``Values`` map.

    Returns:
        The merged map, keys left as placeholders, keys kept from ``prior``.
    """
    merged = dict(prior)
    placeholders: list[str] = []
    preserved: list[str] = []

    for key, value in fresh.items():
        if value is not None:
            merged[key] = value
            continue
        previous = prior.get(key)
        if previous and previous != PLACEHOLDER:
            preserved.append(key)
            continue
        merged[key] = PLACEHOLDER
        placeholders.append(key)

    return merged, placeholders, preserved


def materialize(path: Path, fresh: dict[str, str | None]) -> MaterializeResult:
    """Merge ``fresh`` into the settings document at ``path`` and write it.

    Every required key is written even if ``fresh`` lacks it.
    """
    document = load_settings_document(path)
    prior = document.get(VALUES_KEY, {})
    complete_fresh = {**dict.fromkeys(REQUIRED_SETTINGS), **fresh}

    merged, placeholders, preserved = merge_values(prior, complete_fresh)
    document.setdefault("IsEncrypted", False)
    document[VALUES_KEY] = merged

    _atomic_write(path, json.dumps(document, indent=2) + "\n")

    logger.info(
        "Settings document written",
        extra={
            "path": str(path),
            "keys": len(merged),
            "placeholders": placeholders,
            "preserved": preserved,
        },
    )
    return MaterializeResult(path, merged, placeholders, preserved)


def missing_settings(path: Path) -> list[str]:
    """Required keys that are absent or still hold the placeholder."""
    values = load_settings_document(path).get(VALUES_KEY, {})
    return [key for key in REQUIRED_SETTINGS if values.get(key) in (None, "", PLACEHOLDER)]


def _atomic_write(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` in one rename.

    Raises:
        SettingsDocumentError: If the directory or file cannot be written.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", delete=False
        ) as tmp:
            tmp.write(content)
            tmp_path = Path(tmp.name)
    except OSError as e:
        raise SettingsDocumentError(
            f"Cannot write settings document {path}: {e}", remediation=WRITE_REMEDIATION
        ) from e

    try:
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise SettingsDocumentError(
            f"Cannot write settings document {path}: {e}", remediation=WRITE_REMEDIATION
        ) from e
