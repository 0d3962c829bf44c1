"""Access binder: grants the Logic App identity access to what it calls.

Two independent layers are involved and are kept apart on purpose:

PERMISSION LAYER (automatable, idempotent):
- Azure RBAC role assignments from the Logic App's system-assigned identity
  to the storage account and the OpenAI account.
- Access policies on each Microsoft 365 API connection, which let the
  identity use the connection resource at runtime.

AUTHORIZATION LAYER (manual, never automated):
- The OAuth consent stored inside each API connection. Only a user signing
  in through the portal can grant it. The binder reads the connection's
  status and reports the manual step; it never attempts consent.

A connection works only when both layers are in place. Either can be fixed
and re-checked at any time with ``loan-agent-deploy access``.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

from .context import DeploymentContext
from .credentials import log_security_audit_event
from .errors import AccessBindingError, ProvisioningError, SemanticProviderError
from .prober import is_not_found
from .provisioner import LOGIC_APP, OPENAI, STORAGE, api_connection_names
from .retry import call_with_retry

logger = logging.getLogger(__name__)

CONNECTION_API_VERSION = "2016-06-01"
LOGIC_APP_API_VERSION = "2022-09-01"
CONNECTED_STATUS = "Connected"
ROLE_ASSIGNMENT_EXISTS_CODE = "RoleAssignmentExists"

VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"

# Well-known Azure built-in role GUIDs (identical in every tenant)
BUILTIN_ROLES: dict[str, str] = {
    "Contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "Storage Blob Data Owner": "b7e6dc6d-f1e8-4753-8033-0f276bb0955b",
    "Storage Queue Data Contributor": "974c5e8b-45b9-4653-ba55-5f855dd0fb88",
    "Storage Table Data Contributor": "0a9a7e1f-b9d0-4cc4-a60d-0319b160aaa3",
    "Storage Account Contributor": "17d1049b-9a84-46fb-8f53-869881c3d3ab",
    "Cognitive Services OpenAI User": "5e0bd9bd-7b93-4f28-af87-19fc36ad61bd",
}

# Roles the Logic App runtime needs: identity-based host storage and model calls
STORAGE_ROLES = (
    "Storage Blob Data Owner",
    "Storage Queue Data Contributor",
    "Storage Table Data Contributor",
)
OPENAI_ROLES = ("Cognitive Services OpenAI User",)

CONSENT_REMEDIATION = (
    "In the Azure portal open API connection '{name}', choose 'Edit API connection', "
    "click 'Authorize', sign in and save."
)


def role_guid(role: str) -> str:
    """Map a built-in role name (or a custom role GUID) to its GUID."""
    if role in BUILTIN_ROLES:
        return BUILTIN_ROLES[role]
    if not re.match(VALID_GUID_PATTERN, role.lower()):
        raise ValueError(
            f"Role '{role}' is not a recognized built-in role and is not a valid GUID"
        )
    return role.lower()


def role_definition_id(subscription_id: str, role: str) -> str:
    return (
        f"/subscriptions/{subscription_id}/providers/Microsoft.Authorization"
        f"/roleDefinitions/{role_guid(role)}"
    )


def role_assignment_name(principal_id: str, scope: str, role: str) -> str:
    """Deterministic assignment name: same inputs give the same assignment."""
    return str(
        uuid.uuid5(uuid.NAMESPACE_DNS, f"{principal_id}:{role_guid(role)}:{scope.lower()}")
    )


def scope_covers(assignment_scope: str, target_scope: str) -> bool:
    """True if an assignment at ``assignment_scope`` applies to ``target_scope``."""
    parent = assignment_scope.rstrip("/").lower()
    target = target_scope.rstrip("/").lower()
    return target == parent or target.startswith(parent + "/")


@dataclass(frozen=True)
class Grant:
    """One permission-layer grant and whether it had to be created."""

    kind: str  # "role" or "connection_access_policy"
    principal_id: str
    scope: str
    role: str | None
    created: bool


@dataclass(frozen=True)
class AuthorizationStatus:
    """Consent state of one API connection (authorization layer)."""

    connection_name: str
    status: str
    remediation: str | None = None

    @property
    def authorized(self) -> bool:
        return self.status == CONNECTED_STATUS


@dataclass(frozen=True)
class ConnectionVerification:
    """Both layers of one API connection, reported independently."""

    connection_name: str
    authorization: AuthorizationStatus
    permission_granted: bool

    @property
    def ready(self) -> bool:
        return self.authorization.authorized and self.permission_granted


@dataclass
class BindingReport:
    """Everything the binder did for the Logic App identity."""

    principal_id: str
    grants: list[Grant] = field(default_factory=list)
    connections: list[ConnectionVerification] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return sum(1 for g in self.grants if g.created)

    @property
    def pending_consent(self) -> list[AuthorizationStatus]:
        return [c.authorization for c in self.connections if not c.authorization.authorized]


class AccessBinder:
    """Grants and verifies access for the Logic App's managed identity."""

    def __init__(self, ctx: DeploymentContext) -> None:
        self._ctx = ctx

    # -------------------------------------------------------------------------
    # Permission layer
    # -------------------------------------------------------------------------

    def grant_role(self, principal_id: str, scope: str, role: str) -> Grant:
        """Assign ``role`` to ``principal_id`` at ``scope`` unless already assigned.

        An assignment at an ancestor scope (resource group, subscription)
        counts as present.

        Raises:
            SemanticProviderError: If the caller may not create assignments.
            RetriesExhaustedError: If the provider stays unavailable.
        """
        ctx = self._ctx
        definition_id = role_definition_id(ctx.config.subscription_id, role)
        guid = role_guid(role)

        existing = call_with_retry(
            lambda: ctx.gateway.list_role_assignments(scope, principal_id),
            ctx.config.retry,
            f"list role assignments at {scope}",
        )
        for assignment in existing:
            if assignment.get("roleDefinitionId", "").lower().endswith(guid) and scope_covers(
                assignment.get("scope", ""), scope
            ):
                log_security_audit_event("role_assignment", principal_id, scope, role, "exists")
                return Grant("role", principal_id, scope, role, created=False)

        try:
            call_with_retry(
                lambda: ctx.gateway.create_role_assignment(
                    scope,
                    role_assignment_name(principal_id, scope, role),
                    definition_id,
                    principal_id,
                ),
                ctx.config.retry,
                f"assign {role} at {scope}",
            )
        except SemanticProviderError as e:
            # Created concurrently, or listed before replication caught up
            if e.status_code == 409 or e.error_code == ROLE_ASSIGNMENT_EXISTS_CODE:
                log_security_audit_event("role_assignment", principal_id, scope, role, "exists")
                return Grant("role", principal_id, scope, role, created=False)
            log_security_audit_event("role_assignment", principal_id, scope, role, "failed")
            raise

        log_security_audit_event("role_assignment", principal_id, scope, role, "created")
        return Grant("role", principal_id, scope, role, created=True)

    def grant_connection_access(
        self, connection_id: str, principal_id: str, tenant_id: str
    ) -> Grant:
        """Create the access policy that lets ``principal_id`` use a connection.

        This is the permission layer only; it does not touch OAuth consent.
        """
        ctx = self._ctx
        policy_id = f"{connection_id}/accessPolicies/{principal_id}"

        if self._access_policy_exists(policy_id):
            log_security_audit_event(
                "connection_access_policy", principal_id, connection_id, "use", "exists"
            )
            return Grant("connection_access_policy", principal_id, connection_id, None, False)

        connection = self._get_connection(connection_id)
        body = {
            "location": connection.get("location", ctx.config.location),
            "properties": {
                "principal": {
                    "type": "ActiveDirectory",
                    "identity": {"objectId": principal_id, "tenantId": tenant_id},
                },
            },
        }
        try:
            call_with_retry(
                lambda: ctx.gateway.create_or_update(policy_id, CONNECTION_API_VERSION, body),
                ctx.config.retry,
                f"create access policy on {connection_id}",
            )
        except SemanticProviderError:
            log_security_audit_event(
                "connection_access_policy", principal_id, connection_id, "use", "failed"
            )
            raise

        log_security_audit_event(
            "connection_access_policy", principal_id, connection_id, "use", "created"
        )
        return Grant("connection_access_policy", principal_id, connection_id, None, True)

    # -------------------------------------------------------------------------
    # Authorization layer (read-only)
    # -------------------------------------------------------------------------

    def check_authorization(self, connection_id: str) -> AuthorizationStatus:
        """Read a connection's OAuth consent status.

        Consent cannot be automated; an unauthorized connection is reported
        with the portal step that fixes it.
        """
        connection = self._get_connection(connection_id)
        name = connection.get("name") or connection_id.rsplit("/", 1)[-1]
        properties = connection.get("properties") or {}

        status = properties.get("overallStatus")
        if not status:
            statuses = properties.get("statuses") or [{}]
            status = statuses[0].get("status", "Unknown")

        if status == CONNECTED_STATUS:
            return AuthorizationStatus(name, status)
        return AuthorizationStatus(name, status, CONSENT_REMEDIATION.format(name=name))

    def verify_connection(self, connection_id: str, principal_id: str) -> ConnectionVerification:
        """Check both layers of a connection without changing either."""
        authorization = self.check_authorization(connection_id)
        permission = self._access_policy_exists(f"{connection_id}/accessPolicies/{principal_id}")
        if not authorization.authorized:
            logger.warning(
                "API connection awaits manual authorization",
                extra={"connection": authorization.connection_name, "status": authorization.status},
            )
        if not permission:
            logger.warning(
                "API connection has no access policy for the Logic App identity",
                extra={"connection": authorization.connection_name, "principal_id": principal_id},
            )
        return ConnectionVerification(authorization.connection_name, authorization, permission)

    # -------------------------------------------------------------------------
    # Logic App binding
    # -------------------------------------------------------------------------

    def logic_app_principal_id(self) -> str:
        """Object id of the Logic App's system-assigned identity.

        Raises:
            ProvisioningError: If the Logic App or its identity is missing.
        """
        ctx = self._ctx
        resource_id = self._resource_id(LOGIC_APP)
        if resource_id is None:
            raise ProvisioningError(
                "The Logic App has not been provisioned",
                remediation="Run 'loan-agent-deploy deploy' first.",
            )

        record = ctx.records[LOGIC_APP]
        identity: dict[str, Any] = record.properties.get("identity") or {}
        if not identity.get("principalId"):
            # Identity can trail the site creation; read it fresh
            site = call_with_retry(
                lambda: ctx.gateway.get_resource(resource_id, LOGIC_APP_API_VERSION),
                ctx.config.retry,
                "read Logic App identity",
            )
            identity = site.get("identity") or {}

        principal_id = identity.get("principalId")
        if not principal_id:
            raise ProvisioningError(
                "The Logic App has no system-assigned managed identity",
                remediation="Enable the system-assigned identity on the Logic App and re-run "
                "'loan-agent-deploy access grant'.",
            )
        return str(principal_id)

    def bind_logic_app(self) -> BindingReport:
        """Grant every permission the Logic App needs and verify connections.

        Grants are attempted for every dependency even when one fails; the
        failures are raised together at the end.

        Raises:
            AccessBindingError: If any permission-layer grant failed.
        """
        ctx = self._ctx
        principal_id = self.logic_app_principal_id()
        tenant_id = ctx.principal.tenant_id if ctx.principal else ""
        report = BindingReport(principal_id=principal_id)
        failures: list[str] = []

        for logical_name, roles in ((STORAGE, STORAGE_ROLES), (OPENAI, OPENAI_ROLES)):
            scope = self._resource_id(logical_name)
            if scope is None:
                failures.append(f"{logical_name}: resource was not provisioned")
                continue
            for role in roles:
                try:
                    report.grants.append(self.grant_role(principal_id, scope, role))
                except ProvisioningError as e:
                    failures.append(f"{role} on {logical_name}: {e}")

        for connection_name in api_connection_names():
            connection_id = self._resource_id(connection_name)
            if connection_id is None:
                # Optional connections that were not provisioned are reported by the provisioner
                continue
            try:
                report.grants.append(
                    self.grant_connection_access(connection_id, principal_id, tenant_id)
                )
                report.connections.append(self.verify_connection(connection_id, principal_id))
            except ProvisioningError as e:
                failures.append(f"access policy on {connection_name}: {e}")

        logger.info(
            "Access binding complete",
            extra={
                "principal_id": principal_id,
                "grants": len(report.grants),
                "created": report.created_count,
                "failures": len(failures),
                "pending_consent": [s.connection_name for s in report.pending_consent],
            },
        )
        if failures:
            raise AccessBindingError(failures)
        return report

    def verify_logic_app(self) -> BindingReport:
        """Report both layers for every connection without granting anything."""
        principal_id = self.logic_app_principal_id()
        report = BindingReport(principal_id=principal_id)
        for connection_name in api_connection_names():
            connection_id = self._resource_id(connection_name)
            if connection_id is not None:
                report.connections.append(self.verify_connection(connection_id, principal_id))
        return report

    def _resource_id(self, logical_name: str) -> str | None:
        record = self._ctx.record(logical_name)
        if record is None or not record.succeeded:
            return None
        return record.resource_id

    def _get_connection(self, connection_id: str) -> dict[str, Any]:
        ctx = self._ctx
        return call_with_retry(
            lambda: ctx.gateway.get_resource(connection_id, CONNECTION_API_VERSION),
            ctx.config.retry,
            f"read connection {connection_id}",
        )

    def _access_policy_exists(self, policy_id: str) -> bool:
        ctx = self._ctx
        try:
            call_with_retry(
                lambda: ctx.gateway.get_resource(policy_id, CONNECTION_API_VERSION),
                ctx.config.retry,
                f"read access policy {policy_id}",
            )
        except SemanticProviderError as e:
            if is_not_found(e):
                return False
            raise
        return True
