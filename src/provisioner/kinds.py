"""Per-kind dispatch table.

Each ``ResourceKind`` maps to one ``KindHandler`` describing where the
resource lives in ARM and how its request body is built. The provisioner
and prober look handlers up in ``KIND_HANDLERS`` and never branch on the
resource type themselves.

Request bodies are plain ARM REST payloads so the same generic
create-or-update call serves every kind.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .models import (
    ApiConnectionSpec,
    ApimApiSpec,
    ApimOperationSpec,
    ApimPolicySpec,
    ApimServiceSpec,
    ApimSubscriptionSpec,
    AppServicePlanSpec,
    LogicAppSpec,
    ModelDeploymentSpec,
    OpenAIAccountSpec,
    ResourceGroupSpec,
    ResourceKind,
    SqlDatabaseSpec,
    SqlFirewallRuleSpec,
    SqlServerSpec,
    StorageAccountSpec,
)

if TYPE_CHECKING:
    from .context import DeploymentContext
    from .models import DesiredResourceSpec

MANAGED_BY_TAG = "managed-by"
MANAGED_BY_VALUE = "loan-agent-deploy"

BodyBuilder = Callable[[Any, str, "DeploymentContext"], dict[str, Any]]


@dataclass(frozen=True)
class KindHandler:
    """How one resource kind maps onto ARM.

    Attributes:
        resource_type: Full ARM type, used for Resource Graph lookups.
        api_version: REST API version for GET and PUT.
        build_body: ``(spec, physical_name, ctx) -> request body``.
        child_segment: Collection segment under the parent resource id;
            ``None`` for resources directly in the resource group.
    """

    resource_type: str
    api_version: str
    build_body: BodyBuilder
    child_segment: str | None = None

    @property
    def is_child(self) -> bool:
        return self.child_segment is not None


def location_of(spec: DesiredResourceSpec, ctx: DeploymentContext) -> str:
    return spec.location_hint or ctx.config.location


def tags_of(spec: DesiredResourceSpec, ctx: DeploymentContext) -> dict[str, str]:
    return {**ctx.config.tags, **spec.tags, MANAGED_BY_TAG: MANAGED_BY_VALUE}


# =============================================================================
# Body builders
# =============================================================================


def _resource_group_body(
    spec: ResourceGroupSpec, name: str, ctx: DeploymentContext
) -> dict[str, Any]:
    return {"location": location_of(spec, ctx), "tags": tags_of(spec, ctx)}


def _storage_body(spec: StorageAccountSpec, name: str, ctx: DeploymentContext) -> dict[str, Any]:
    return {
        "location": location_of(spec, ctx),
        "tags": tags_of(spec, ctx),
        "kind": spec.account_kind,
        "sku": {"name": spec.sku_hint},
        "properties": {
            "accessTier": spec.access_tier,
            "minimumTlsVersion": "TLS1_2",
            "supportsHttpsTrafficOnly": True,
            "allowBlobPublicAccess": False,
        },
    }


def _sql_server_body(spec: SqlServerSpec, name: str, ctx: DeploymentContext) -> dict[str, Any]:
    # Entra ID only: no SQL login or password is ever created
    return {
        "location": location_of(spec, ctx),
        "tags": tags_of(spec, ctx),
        "properties": {
            "version": spec.version,
            "minimalTlsVersion": "1.2",
            "publicNetworkAccess": "Enabled",
            "administrators": {
                "administratorType": "ActiveDirectory",
                "principalType": spec.admin_principal_type,
                "login": spec.admin_login,
                "sid": spec.admin_object_id,
                "tenantId": spec.tenant_id,
                "azureADOnlyAuthentication": True,
            },
        },
    }


def _sql_firewall_body(
    spec: SqlFirewallRuleSpec, name: str, ctx: DeploymentContext
) -> dict[str, Any]:
    return {"properties": {"startIpAddress": spec.start_ip, "endIpAddress": spec.end_ip}}


def _sql_database_body(
    spec: SqlDatabaseSpec, name: str, ctx: DeploymentContext
) -> dict[str, Any]:
    return {
        "location": location_of(spec, ctx),
        "tags": tags_of(spec, ctx),
        "sku": {"name": spec.sku_hint},
        "properties": {"maxSizeBytes": spec.max_size_bytes},
    }


def _openai_body(spec: OpenAIAccountSpec, name: str, ctx: DeploymentContext) -> dict[str, Any]:
    return {
        "location": location_of(spec, ctx),
        "tags": tags_of(spec, ctx),
        "kind": "OpenAI",
        "sku": {"name": spec.sku_hint},
        "properties": {"customSubDomainName": name, "publicNetworkAccess": "Enabled"},
    }


def _model_deployment_body(
    spec: ModelDeploymentSpec, name: str, ctx: DeploymentContext
) -> dict[str, Any]:
    return {
        "sku": {"name": spec.sku_hint, "capacity": spec.capacity},
        "properties": {
            "model": {
                "format": "OpenAI",
                "name": spec.base_model,
                "version": spec.base_model_version,
            },
        },
    }


def _apim_service_body(
    spec: ApimServiceSpec, name: str, ctx: DeploymentContext
) -> dict[str, Any]:
    return {
        "location": location_of(spec, ctx),
        "tags": tags_of(spec, ctx),
        "sku": {"name": spec.sku_hint, "capacity": 0 if spec.sku_hint == "Consumption" else 1},
        "properties": {
            "publisherEmail": spec.publisher_email,
            "publisherName": spec.publisher_name,
        },
    }


def _apim_api_body(spec: ApimApiSpec, name: str, ctx: DeploymentContext) -> dict[str, Any]:
    return {
        "properties": {
            "displayName": spec.display_name,
            "path": spec.path,
            "protocols": list(spec.protocols),
            "subscriptionRequired": True,
        },
    }


def _apim_operation_body(
    spec: ApimOperationSpec, name: str, ctx: DeploymentContext
) -> dict[str, Any]:
    return {
        "properties": {
            "displayName": spec.display_name,
            "method": spec.method,
            "urlTemplate": spec.url_template,
            "description": spec.description,
        },
    }


def _apim_policy_body(spec: ApimPolicySpec, name: str, ctx: DeploymentContext) -> dict[str, Any]:
    return {"properties": {"format": "rawxml", "value": spec.policy_xml}}


def _apim_subscription_body(
    spec: ApimSubscriptionSpec, name: str, ctx: DeploymentContext
) -> dict[str, Any]:
    api_name = ctx.physical_name_of(spec.api_logical_name)
    return {
        "properties": {
            "displayName": spec.display_name,
            "scope": f"/apis/{api_name}",
            "state": "active",
        },
    }


def _app_service_plan_body(
    spec: AppServicePlanSpec, name: str, ctx: DeploymentContext
) -> dict[str, Any]:
    return {
        "location": location_of(spec, ctx),
        "tags": tags_of(spec, ctx),
        "kind": "elastic",
        "sku": {"name": spec.sku_hint, "tier": "WorkflowStandard"},
        "properties": {"maximumElasticWorkerCount": 20},
    }


def _logic_app_body(spec: LogicAppSpec, name: str, ctx: DeploymentContext) -> dict[str, Any]:
    storage_name = ctx.physical_name_of(spec.storage_logical_name)
    # Identity-based host storage; the storage data roles are granted by the access binder
    app_settings = {
        "APP_KIND": "workflowApp",
        "FUNCTIONS_EXTENSION_VERSION": "~4",
        "FUNCTIONS_WORKER_RUNTIME": "node",
        "WEBSITE_NODE_DEFAULT_VERSION": "~18",
        "AzureWebJobsStorage__accountName": storage_name,
        "AzureFunctionsJobHost__extensionBundle__id": (
            "Microsoft.Azure.Functions.ExtensionBundle.Workflows"
        ),
        "AzureFunctionsJobHost__extensionBundle__version": "[1.*, 2.0.0)",
    }
    return {
        "location": location_of(spec, ctx),
        "tags": tags_of(spec, ctx),
        "kind": "functionapp,workflowapp",
        "identity": {"type": "SystemAssigned"},
        "properties": {
            "serverFarmId": ctx.resource_id_of(spec.plan_logical_name),
            "httpsOnly": True,
            "siteConfig": {
                "appSettings": [{"name": k, "value": v} for k, v in app_settings.items()],
                "ftpsState": "Disabled",
                "minTlsVersion": "1.2",
            },
        },
    }


def _api_connection_body(
    spec: ApiConnectionSpec, name: str, ctx: DeploymentContext
) -> dict[str, Any]:
    location = location_of(spec, ctx)
    managed_api_id = (
        f"/subscriptions/{ctx.config.subscription_id}/providers/Microsoft.Web"
        f"/locations/{location}/managedApis/{spec.managed_api}"
    )
    return {
        "location": location,
        "tags": tags_of(spec, ctx),
        "kind": "V2",
        "properties": {"displayName": spec.display_name, "api": {"id": managed_api_id}},
    }


# =============================================================================
# Dispatch table
# =============================================================================

KIND_HANDLERS: dict[ResourceKind, KindHandler] = {
    ResourceKind.RESOURCE_GROUP: KindHandler(
        "Microsoft.Resources/resourceGroups", "2022-09-01", _resource_group_body
    ),
    ResourceKind.STORAGE_ACCOUNT: KindHandler(
        "Microsoft.Storage/storageAccounts", "2023-01-01", _storage_body
    ),
    ResourceKind.SQL_SERVER: KindHandler("Microsoft.Sql/servers", "2021-11-01", _sql_server_body),
    ResourceKind.SQL_FIREWALL_RULE: KindHandler(
        "Microsoft.Sql/servers/firewallRules", "2021-11-01", _sql_firewall_body, "firewallRules"
    ),
    ResourceKind.SQL_DATABASE: KindHandler(
        "Microsoft.Sql/servers/databases", "2021-11-01", _sql_database_body, "databases"
    ),
    ResourceKind.OPENAI_ACCOUNT: KindHandler(
        "Microsoft.CognitiveServices/accounts", "2023-05-01", _openai_body
    ),
    ResourceKind.MODEL_DEPLOYMENT: KindHandler(
        "Microsoft.CognitiveServices/accounts/deployments",
        "2023-05-01",
        _model_deployment_body,
        "deployments",
    ),
    ResourceKind.APIM_SERVICE: KindHandler(
        "Microsoft.ApiManagement/service", "2022-08-01", _apim_service_body
    ),
    ResourceKind.APIM_API: KindHandler(
        "Microsoft.ApiManagement/service/apis", "2022-08-01", _apim_api_body, "apis"
    ),
    ResourceKind.APIM_OPERATION: KindHandler(
        "Microsoft.ApiManagement/service/apis/operations",
        "2022-08-01",
        _apim_operation_body,
        "operations",
    ),
    ResourceKind.APIM_POLICY: KindHandler(
        "Microsoft.ApiManagement/service/apis/operations/policies",
        "2022-08-01",
        _apim_policy_body,
        "policies",
    ),
    ResourceKind.APIM_SUBSCRIPTION: KindHandler(
        "Microsoft.ApiManagement/service/subscriptions",
        "2022-08-01",
        _apim_subscription_body,
        "subscriptions",
    ),
    ResourceKind.APP_SERVICE_PLAN: KindHandler(
        "Microsoft.Web/serverfarms", "2022-09-01", _app_service_plan_body
    ),
    ResourceKind.LOGIC_APP: KindHandler("Microsoft.Web/sites", "2022-09-01", _logic_app_body),
    ResourceKind.API_CONNECTION: KindHandler(
        "Microsoft.Web/connections", "2016-06-01", _api_connection_body
    ),
}


def resource_id(spec: DesiredResourceSpec, physical_name: str, ctx: DeploymentContext) -> str:
    """ARM id the resource has (or will have) in our resource group.

    Children hang off their parent's recorded id, so the parent step must
    have succeeded first.
    """
    handler = KIND_HANDLERS[spec.kind]
    if spec.kind is ResourceKind.RESOURCE_GROUP:
        return f"/subscriptions/{ctx.config.subscription_id}/resourceGroups/{physical_name}"
    if handler.is_child:
        if spec.parent is None:
            raise ValueError(f"{spec.kind.value} '{spec.logical_name}' needs a parent")
        return f"{ctx.resource_id_of(spec.parent)}/{handler.child_segment}/{physical_name}"
    return f"{ctx.config.resource_group_id}/providers/{handler.resource_type}/{physical_name}"


def build_body(
    spec: DesiredResourceSpec, physical_name: str, ctx: DeploymentContext
) -> dict[str, Any]:
    return KIND_HANDLERS[spec.kind].build_body(spec, physical_name, ctx)
