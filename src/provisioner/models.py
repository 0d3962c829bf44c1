"""Data model for a deployment run.

Desired resources are pydantic models, one per resource kind, discriminated
by ``kind`` so each carries its own typed parameters. They are built once
from the configuration and frozen for the run. Names, probe results and
provisioning records are plain dataclasses that live for one invocation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

# =============================================================================
# Resource kinds
# =============================================================================


class ResourceKind(str, Enum):
    """Every kind of resource the deployment manages."""

    RESOURCE_GROUP = "resourceGroup"
    STORAGE_ACCOUNT = "storageAccount"
    SQL_SERVER = "sqlServer"
    SQL_FIREWALL_RULE = "sqlFirewallRule"
    SQL_DATABASE = "sqlDatabase"
    OPENAI_ACCOUNT = "openAIAccount"
    MODEL_DEPLOYMENT = "modelDeployment"
    APIM_SERVICE = "apimService"
    APIM_API = "apimApi"
    APIM_OPERATION = "apimOperation"
    APIM_POLICY = "apimPolicy"
    APIM_SUBSCRIPTION = "apimSubscription"
    APP_SERVICE_PLAN = "appServicePlan"
    LOGIC_APP = "logicApp"
    API_CONNECTION = "apiConnection"


class ProbeResult(str, Enum):
    """Outcome of an existence probe."""

    NOT_FOUND = "NotFound"
    FOUND_OWNED_BY_US = "FoundOwnedByUs"
    FOUND_OWNED_BY_OTHER = "FoundOwnedByOther"


class Outcome(str, Enum):
    """What a step did to its resource."""

    CREATED = "Created"
    REUSED = "Reused"
    FAILED = "Failed"
    SKIPPED = "Skipped"  # prerequisite did not succeed, provider never called

    @property
    def succeeded(self) -> bool:
        return self in (Outcome.CREATED, Outcome.REUSED)


# =============================================================================
# Desired resource specifications
# =============================================================================


class ResourceSpecBase(BaseModel):
    """Fields shared by every desired resource.

    ``parent`` names the logical resource this one lives under (database
    under server, operation under API). ``fixed_name`` bypasses the naming
    resolver, for resources the caller already owns.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    logical_name: Annotated[str, Field(min_length=1)]
    seed_inputs: tuple[str, str]
    location_hint: str | None = None
    sku_hint: str | None = None
    parent: str | None = None
    fixed_name: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)


class ResourceGroupSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.RESOURCE_GROUP] = ResourceKind.RESOURCE_GROUP


class StorageAccountSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.STORAGE_ACCOUNT] = ResourceKind.STORAGE_ACCOUNT
    sku_hint: str | None = "Standard_LRS"
    account_kind: str = "StorageV2"
    access_tier: str = "Hot"


class SqlServerSpec(ResourceSpecBase):
    """Entra ID only SQL server; the administrator is a user or group."""

    kind: Literal[ResourceKind.SQL_SERVER] = ResourceKind.SQL_SERVER
    admin_login: str
    admin_object_id: str
    tenant_id: str
    admin_principal_type: str = "User"
    version: str = "12.0"


class SqlFirewallRuleSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.SQL_FIREWALL_RULE] = ResourceKind.SQL_FIREWALL_RULE
    start_ip: str
    end_ip: str


class SqlDatabaseSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.SQL_DATABASE] = ResourceKind.SQL_DATABASE
    sku_hint: str | None = "Basic"
    max_size_bytes: int = 2 * 1024 * 1024 * 1024


class OpenAIAccountSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.OPENAI_ACCOUNT] = ResourceKind.OPENAI_ACCOUNT
    sku_hint: str | None = "S0"


class ModelDeploymentSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.MODEL_DEPLOYMENT] = ResourceKind.MODEL_DEPLOYMENT
    sku_hint: str | None = "GlobalStandard"
    base_model: str
    base_model_version: str
    capacity: Annotated[int, Field(ge=1)] = 50


class ApimServiceSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.APIM_SERVICE] = ResourceKind.APIM_SERVICE
    sku_hint: str | None = "Consumption"
    publisher_email: str
    publisher_name: str


class ApimApiSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.APIM_API] = ResourceKind.APIM_API
    display_name: str
    path: str
    protocols: tuple[str, ...] = ("https",)


class ApimOperationSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.APIM_OPERATION] = ResourceKind.APIM_OPERATION
    display_name: str
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"]
    url_template: str
    description: str = ""


class ApimPolicySpec(ResourceSpecBase):
    kind: Literal[ResourceKind.APIM_POLICY] = ResourceKind.APIM_POLICY
    policy_xml: str


class ApimSubscriptionSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.APIM_SUBSCRIPTION] = ResourceKind.APIM_SUBSCRIPTION
    display_name: str
    api_logical_name: str


class AppServicePlanSpec(ResourceSpecBase):
    kind: Literal[ResourceKind.APP_SERVICE_PLAN] = ResourceKind.APP_SERVICE_PLAN
    sku_hint: str | None = "WS1"


class LogicAppSpec(ResourceSpecBase):
    """Logic Apps Standard site with a system-assigned identity."""

    kind: Literal[ResourceKind.LOGIC_APP] = ResourceKind.LOGIC_APP
    plan_logical_name: str
    storage_logical_name: str


class ApiConnectionSpec(ResourceSpecBase):
    """Managed API connection (Microsoft 365 connector) behind OAuth."""

    kind: Literal[ResourceKind.API_CONNECTION] = ResourceKind.API_CONNECTION
    managed_api: str
    display_name: str


DesiredResourceSpec = Annotated[
    ResourceGroupSpec
    | StorageAccountSpec
    | SqlServerSpec
    | SqlFirewallRuleSpec
    | SqlDatabaseSpec
    | OpenAIAccountSpec
    | ModelDeploymentSpec
    | ApimServiceSpec
    | ApimApiSpec
    | ApimOperationSpec
    | ApimPolicySpec
    | ApimSubscriptionSpec
    | AppServicePlanSpec
    | LogicAppSpec
    | ApiConnectionSpec,
    Field(discriminator="kind"),
]


# =============================================================================
# Run-time records
# =============================================================================


@dataclass(frozen=True)
class ResolvedResourceName:
    """A physical name chosen for a logical resource.

    ``collision_attempt`` is the digest slice index; -1 marks a
    timestamp-suffixed name that will not be reproduced by a later run.
    """

    logical_name: str
    physical_name: str
    collision_attempt: int = 0

    @property
    def is_deterministic(self) -> bool:
        return self.collision_attempt >= 0


@dataclass(frozen=True)
class ProbeOutcome:
    """Result of probing one physical name."""

    result: ProbeResult
    resource: dict[str, Any] | None = None
    owner_scope: str | None = None


@dataclass
class ProvisioningRecord:
    """What happened to one resource during the run. Report only."""

    resource_type: str
    logical_name: str
    physical_name: str | None = None
    resource_id: str | None = None
    existed_before: bool = False
    outcome: Outcome = Outcome.FAILED
    message: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome.succeeded
