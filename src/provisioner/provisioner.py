"""Resource provisioner: ordered, idempotent create-or-reuse steps.

The plan is a flat list of steps in dependency order:

    resource group -> storage -> SQL server -> firewall rule -> database
    -> OpenAI account -> model deployment
    -> API Management -> API -> operations -> policies -> subscription
    -> App Service plan -> Logic App -> API connections

Each step resolves a name, probes it, and creates the resource only when
the probe says NotFound in our scope. A step runs only after every step it
requires has been Created or Reused. When a required step fails the run
stops; when an optional step fails the run continues and the steps that
depend on it are marked Skipped without any provider call.

IDEMPOTENCY: Every step probes before it acts, so a second run against the
same subscription and resource group reuses everything the first created.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from typing import Any

from .config import Config
from .context import DeploymentContext
from .credentials import PrincipalInfo
from .errors import (
    ExistingResourceMissingError,
    NameExhaustedError,
    ProvisioningError,
    RequiredStepFailedError,
    SemanticProviderError,
)
from .kinds import KIND_HANDLERS, build_body, resource_id
from .mock_policies import (
    MOCK_API_DISPLAY_NAME,
    MOCK_API_NAME,
    MOCK_API_PATH,
    MOCK_OPERATIONS,
    render_policy,
)
from .models import (
    ApiConnectionSpec,
    ApimApiSpec,
    ApimOperationSpec,
    ApimPolicySpec,
    ApimServiceSpec,
    ApimSubscriptionSpec,
    AppServicePlanSpec,
    DesiredResourceSpec,
    LogicAppSpec,
    ModelDeploymentSpec,
    OpenAIAccountSpec,
    Outcome,
    ProbeResult,
    ProvisioningRecord,
    ResolvedResourceName,
    ResourceGroupSpec,
    SqlDatabaseSpec,
    SqlFirewallRuleSpec,
    SqlServerSpec,
    StorageAccountSpec,
)
from .retry import call_with_retry, is_name_collision

logger = logging.getLogger(__name__)

# Logical names shared with the access binder and settings materializer
RESOURCE_GROUP = "resourceGroup"
STORAGE = "storage"
SQL_SERVER = "sqlServer"
SQL_FIREWALL_RULE = "sqlFirewallAzureServices"
SQL_DATABASE = "sqlDatabase"
OPENAI = "openAI"
MODEL_DEPLOYMENT = "modelDeployment"
APIM = "apim"
APIM_API = "apimRiskApi"
APIM_SUBSCRIPTION = "apimSubscription"
APP_SERVICE_PLAN = "appServicePlan"
LOGIC_APP = "logicApp"

# (logical name, managed API, display name)
API_CONNECTIONS: tuple[tuple[str, str, str], ...] = (
    ("formsConnection", "microsoftforms", "Microsoft Forms"),
    ("teamsConnection", "teams", "Microsoft Teams"),
    ("outlookConnection", "office365", "Office 365 Outlook"),
)

# Lets every Azure service (the Logic App included) reach the SQL server
AZURE_SERVICES_FIREWALL_RULE = "AllowAllWindowsAzureIps"
AZURE_SERVICES_IP = "0.0.0.0"

APIM_SUBSCRIPTION_NAME = "loan-agent-subscription"


@dataclass(frozen=True)
class Step:
    """One entry of the deployment plan.

    Attributes:
        spec: Desired resource.
        requires: Logical names that must be Created or Reused first.
        required: Failure aborts the run (otherwise it is a warning).
        must_exist: Resource was supplied by the caller; never create it.
    """

    spec: DesiredResourceSpec
    requires: tuple[str, ...] = ()
    required: bool = True
    must_exist: bool = False

    @property
    def key(self) -> str:
        return self.spec.logical_name


@dataclass
class RunResult:
    """Outcome of one provisioning run."""

    records: list[ProvisioningRecord]
    start_time: datetime
    end_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    warnings: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.records if r.outcome is outcome)


def api_connection_names() -> list[str]:
    return [logical for logical, _, _ in API_CONNECTIONS]


def operation_logical_name(operation_id: str) -> str:
    return f"apimOperation-{operation_id}"


def build_plan(config: Config, principal: PrincipalInfo) -> list[Step]:
    """Build the ordered deployment plan.

    Args:
        config: Validated deployment configuration.
        principal: Signed-in identity, the default SQL Entra ID admin.
    """
    seed = (config.subscription_id, config.resource_group)
    admin_object_id = config.sql_admin_object_id or principal.object_id
    admin_login = config.sql_admin_login or principal.login
    # An explicit admin is assumed to be a group; the signed-in caller keeps its own type
    admin_type = "Group" if config.sql_admin_object_id else principal.principal_type

    plan: list[Step] = [
        Step(
            ResourceGroupSpec(
                logical_name=RESOURCE_GROUP, seed_inputs=seed, fixed_name=config.resource_group
            )
        ),
        Step(StorageAccountSpec(logical_name=STORAGE, seed_inputs=seed), (RESOURCE_GROUP,)),
        Step(
            SqlServerSpec(
                logical_name=SQL_SERVER,
                seed_inputs=seed,
                admin_login=admin_login,
                admin_object_id=admin_object_id,
                tenant_id=principal.tenant_id,
                admin_principal_type=admin_type,
            ),
            (RESOURCE_GROUP,),
        ),
        Step(
            SqlFirewallRuleSpec(
                logical_name=SQL_FIREWALL_RULE,
                seed_inputs=seed,
                parent=SQL_SERVER,
                fixed_name=AZURE_SERVICES_FIREWALL_RULE,
                start_ip=AZURE_SERVICES_IP,
                end_ip=AZURE_SERVICES_IP,
            ),
            (SQL_SERVER,),
            required=False,
        ),
        Step(
            SqlDatabaseSpec(logical_name=SQL_DATABASE, seed_inputs=seed, parent=SQL_SERVER),
            (SQL_SERVER,),
        ),
        Step(OpenAIAccountSpec(logical_name=OPENAI, seed_inputs=seed), (RESOURCE_GROUP,)),
        Step(
            ModelDeploymentSpec(
                logical_name=MODEL_DEPLOYMENT,
                seed_inputs=seed,
                parent=OPENAI,
                fixed_name=config.openai_model_name,
                base_model=config.openai_model_name,
                base_model_version=config.openai_model_version,
                capacity=config.openai_model_capacity,
            ),
            (OPENAI,),
            required=False,
        ),
    ]
    plan.extend(_apim_steps(config, seed))
    plan.extend(
        [
            Step(
                AppServicePlanSpec(logical_name=APP_SERVICE_PLAN, seed_inputs=seed),
                (RESOURCE_GROUP,),
            ),
            Step(
                LogicAppSpec(
                    logical_name=LOGIC_APP,
                    seed_inputs=seed,
                    plan_logical_name=APP_SERVICE_PLAN,
                    storage_logical_name=STORAGE,
                ),
                (APP_SERVICE_PLAN, STORAGE),
            ),
        ]
    )
    plan.extend(
        Step(
            ApiConnectionSpec(
                logical_name=logical,
                seed_inputs=seed,
                fixed_name=logical,
                managed_api=managed_api,
                display_name=display_name,
            ),
            (RESOURCE_GROUP,),
            required=False,
        )
        for logical, managed_api, display_name in API_CONNECTIONS
    )
    return plan


def _apim_steps(config: Config, seed: tuple[str, str]) -> list[Step]:
    existing = config.existing_apim_name is not None
    steps = [
        Step(
            ApimServiceSpec(
                logical_name=APIM,
                seed_inputs=seed,
                fixed_name=config.existing_apim_name,
                sku_hint=config.apim_sku,
                publisher_email=config.apim_publisher_email,
                publisher_name=config.apim_publisher_name,
            ),
            (RESOURCE_GROUP,),
            required=existing,
            must_exist=existing,
        ),
        Step(
            ApimApiSpec(
                logical_name=APIM_API,
                seed_inputs=seed,
                parent=APIM,
                fixed_name=MOCK_API_NAME,
                display_name=MOCK_API_DISPLAY_NAME,
                path=MOCK_API_PATH,
            ),
            (APIM,),
            required=False,
        ),
    ]
    for op in MOCK_OPERATIONS:
        op_logical = operation_logical_name(op.operation_id)
        steps.append(
            Step(
                ApimOperationSpec(
                    logical_name=op_logical,
                    seed_inputs=seed,
                    parent=APIM_API,
                    fixed_name=op.operation_id,
                    display_name=op.display_name,
                    method=op.method,
                    url_template=op.url_template,
                    description=op.description,
                ),
                (APIM_API,),
                required=False,
            )
        )
        steps.append(
            Step(
                ApimPolicySpec(
                    logical_name=f"apimPolicy-{op.operation_id}",
                    seed_inputs=seed,
                    parent=op_logical,
                    fixed_name="policy",
                    policy_xml=render_policy(op),
                ),
                (op_logical,),
                required=False,
            )
        )
    steps.append(
        Step(
            ApimSubscriptionSpec(
                logical_name=APIM_SUBSCRIPTION,
                seed_inputs=seed,
                parent=APIM,
                fixed_name=APIM_SUBSCRIPTION_NAME,
                display_name="AI Loan Agent",
                api_logical_name=APIM_API,
            ),
            (APIM, APIM_API),
            required=False,
        )
    )
    return steps


class ResourceProvisioner:
    """Runs the plan against the provider through the deployment context."""

    def __init__(self, ctx: DeploymentContext) -> None:
        self._ctx = ctx

    def run(self, plan: list[Step]) -> RunResult:
        """Execute every step in order.

        Returns:
            The run result with one record per step.

        Raises:
            RequiredStepFailedError: If a required step failed or was skipped.
                Carries every record accumulated so far.
        """
        ctx = self._ctx
        start_time = datetime.now(UTC)
        warnings: list[str] = []

        for step in plan:
            missing = [r for r in step.requires if not ctx.succeeded(r)]
            if missing:
                message = f"Skipped: prerequisite(s) {', '.join(missing)} did not succeed"
                self._record_without_call(step, Outcome.SKIPPED, message)
                if step.required:
                    raise RequiredStepFailedError(
                        step=step.key,
                        records=list(ctx.records.values()),
                        message=message,
                        remediation=ProvisioningError.remediation,
                    )
                logger.warning(
                    "Step skipped",
                    extra={"logical_name": step.key, "missing_prerequisites": missing},
                )
                warnings.append(f"{step.key}: {message}")
                continue

            try:
                self.ensure(step)
            except ProvisioningError as e:
                self._record_without_call(step, Outcome.FAILED, str(e))
                if step.required:
                    logger.error(
                        "Required step failed, aborting run",
                        extra={"logical_name": step.key, "error": str(e)},
                    )
                    raise RequiredStepFailedError(
                        step=step.key,
                        records=list(ctx.records.values()),
                        message=str(e),
                        remediation=e.remediation,
                    ) from e
                logger.warning(
                    "Optional step failed, continuing",
                    extra={"logical_name": step.key, "error": str(e)},
                )
                warnings.append(f"{step.key}: {e}")

        return RunResult(
            records=list(ctx.records.values()), start_time=start_time, warnings=warnings
        )

    def discover(self, plan: list[Step]) -> RunResult:
        """Locate already-deployed resources without creating anything.

        Used by the follow-up commands (access, settings) so they can run
        long after the deployment that created the resources.
        """
        ctx = self._ctx
        start_time = datetime.now(UTC)
        warnings: list[str] = []

        for step in plan:
            if not all(ctx.succeeded(r) for r in step.requires):
                self._record_without_call(step, Outcome.SKIPPED, "Prerequisite not deployed")
                continue
            try:
                self.ensure(step, create=False)
            except ProvisioningError as e:
                self._record_without_call(step, Outcome.FAILED, str(e))
                warnings.append(f"{step.key}: {e}")

        found = sum(1 for r in ctx.records.values() if r.succeeded)
        logger.info("Discovery complete", extra={"found": found, "steps": len(plan)})
        return RunResult(
            records=list(ctx.records.values()), start_time=start_time, warnings=warnings
        )

    def ensure(self, step: Step, *, create: bool = True) -> ProvisioningRecord:
        """Create the step's resource unless it already exists in our scope.

        With ``create=False`` nothing is written: a missing resource is
        recorded as Skipped.

        Raises:
            ProvisioningError: If the resource cannot be found or created.
        """
        ctx = self._ctx
        spec = step.spec
        handler = KIND_HANDLERS[spec.kind]
        resolved = ctx.resolver.resolve(spec.kind, spec.logical_name, fixed_name=spec.fixed_name)

        while True:
            rid = resource_id(spec, resolved.physical_name, ctx)
            outcome = ctx.prober.probe(spec.kind, resolved.physical_name, rid)

            match outcome.result:
                case ProbeResult.FOUND_OWNED_BY_US:
                    logger.info(
                        "Reusing existing resource",
                        extra={"logical_name": spec.logical_name, "resource_id": rid},
                    )
                    return self._record(
                        spec, resolved, rid, Outcome.REUSED, outcome.resource or {}
                    )

                case ProbeResult.FOUND_OWNED_BY_OTHER:
                    if step.must_exist:
                        raise ExistingResourceMissingError(
                            handler.resource_type, resolved.physical_name
                        )
                    resolved = self._next_name(step, resolved, outcome.owner_scope)
                    continue

                case ProbeResult.NOT_FOUND:
                    if step.must_exist:
                        raise ExistingResourceMissingError(
                            handler.resource_type, resolved.physical_name
                        )
                    if not create:
                        return self._record(
                            spec, resolved, rid, Outcome.SKIPPED, {}, message="Not deployed"
                        )
                    body = build_body(spec, resolved.physical_name, ctx)
                    try:
                        created = call_with_retry(
                            partial(ctx.gateway.create_or_update, rid, handler.api_version, body),
                            ctx.config.retry,
                            f"create {spec.kind.value} '{resolved.physical_name}'",
                        )
                    except SemanticProviderError as e:
                        # Lost a race or no availability API for this kind
                        if is_name_collision(e):
                            resolved = self._next_name(step, resolved, None)
                            continue
                        raise

                    logger.info(
                        "Created resource",
                        extra={"logical_name": spec.logical_name, "resource_id": rid},
                    )
                    return self._record(spec, resolved, rid, Outcome.CREATED, created)

    def _next_name(
        self, step: Step, resolved: ResolvedResourceName, owner_scope: str | None
    ) -> ResolvedResourceName:
        ctx = self._ctx
        spec = step.spec
        if spec.fixed_name is not None:
            raise ProvisioningError(
                f"{spec.kind.value} name '{resolved.physical_name}' is held by another owner"
                + (f" ({owner_scope})" if owner_scope else ""),
                remediation="Choose a name that is free, or deploy into the owning resource group.",
            )
        if not resolved.is_deterministic:
            rule = ctx.resolver.rule_for(spec.kind)
            raise NameExhaustedError(spec.logical_name, rule.max_attempts if rule else 1)

        try:
            return ctx.resolver.next(spec.kind, resolved)
        except NameExhaustedError:
            if not ctx.config.allow_timestamp_names:
                raise
            return ctx.resolver.timestamp_fallback(spec.kind, spec.logical_name)

    def _record(
        self,
        spec: DesiredResourceSpec,
        resolved: ResolvedResourceName,
        rid: str,
        outcome: Outcome,
        properties: dict[str, Any],
        *,
        message: str | None = None,
    ) -> ProvisioningRecord:
        record = ProvisioningRecord(
            resource_type=KIND_HANDLERS[spec.kind].resource_type,
            logical_name=spec.logical_name,
            physical_name=resolved.physical_name,
            resource_id=rid,
            existed_before=outcome is Outcome.REUSED,
            outcome=outcome,
            message=message,
            properties=properties,
        )
        self._ctx.records[spec.logical_name] = record
        return record

    def _record_without_call(self, step: Step, outcome: Outcome, message: str) -> None:
        self._ctx.records[step.key] = ProvisioningRecord(
            resource_type=KIND_HANDLERS[step.spec.kind].resource_type,
            logical_name=step.key,
            outcome=outcome,
            message=message,
        )
