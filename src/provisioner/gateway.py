"""Azure provider facade.

Everything above this module treats the cloud as an opaque CRUD backend
keyed by ARM resource id. ``AzureGateway`` maps that surface onto the Azure
SDK management clients; tests swap in ``tests/azure_mock.MockCloud``, which
implements the same methods in memory.

Provider errors propagate unchanged (``azure.core.exceptions``). Retry and
classification happen one level up, in ``retry.call_with_retry``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from azure.core.credentials import TokenCredential
from azure.core.polling import LROPoller
from azure.mgmt.apimanagement import ApiManagementClient
from azure.mgmt.apimanagement.models import ApiManagementServiceCheckNameAvailabilityParameters
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters
from azure.mgmt.cognitiveservices import CognitiveServicesManagementClient
from azure.mgmt.cognitiveservices.models import CheckDomainAvailabilityParameter
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import ResourceGroup
from azure.mgmt.sql import SqlManagementClient
from azure.mgmt.sql.models import CheckNameAvailabilityRequest
from azure.mgmt.storage import StorageManagementClient
from azure.mgmt.storage.models import StorageAccountCheckNameAvailabilityParameters

from .models import ResourceKind
from .resource_graph import ResourceGraphQuerier, ResourceInfo

logger = logging.getLogger(__name__)

RESOURCE_GROUP_ID_PATTERN = re.compile(
    r"^/subscriptions/[^/]+/resourceGroups/([^/]+)$", re.IGNORECASE
)


class CloudGateway(Protocol):
    """The provider operations the deployment depends on."""

    def get_resource(self, resource_id: str, api_version: str) -> dict[str, Any]: ...

    def create_or_update(
        self, resource_id: str, api_version: str, body: dict[str, Any]
    ) -> dict[str, Any]: ...

    def find_by_name(self, resource_type: str, name: str) -> list[ResourceInfo]: ...

    def is_name_available(self, kind: ResourceKind, name: str) -> bool: ...

    def list_storage_key(self, resource_group: str, account_name: str) -> str: ...

    def list_openai_key(self, resource_group: str, account_name: str) -> str: ...

    def list_apim_subscription_key(
        self, resource_group: str, service_name: str, subscription_name: str
    ) -> str: ...

    def list_role_assignments(self, scope: str, principal_id: str) -> list[dict[str, Any]]: ...

    def create_role_assignment(
        self,
        scope: str,
        assignment_name: str,
        role_definition_id: str,
        principal_id: str,
    ) -> dict[str, Any]: ...


class AzureGateway:
    """``CloudGateway`` backed by the Azure SDK for Python.

    Generic ARM resources cover every create and read, so adding a resource
    kind needs no new client. Service-specific clients are only used for
    actions ARM exposes as POSTs (key listing, name availability) and for
    role assignments.
    """

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        *,
        operation_timeout_seconds: int,
    ) -> None:
        self._subscription_id = subscription_id
        self._timeout = operation_timeout_seconds

        self._resources = ResourceManagementClient(
            credential=credential, subscription_id=subscription_id
        )
        self._graph = ResourceGraphQuerier(credential, subscription_id)
        self._authorization = AuthorizationManagementClient(
            credential=credential, subscription_id=subscription_id
        )
        self._storage = StorageManagementClient(
            credential=credential, subscription_id=subscription_id
        )
        self._cognitive = CognitiveServicesManagementClient(
            credential=credential, subscription_id=subscription_id
        )
        self._apim = ApiManagementClient(credential=credential, subscription_id=subscription_id)
        self._sql = SqlManagementClient(credential=credential, subscription_id=subscription_id)

    # -------------------------------------------------------------------------
    # Generic ARM resources
    # -------------------------------------------------------------------------

    def get_resource(self, resource_id: str, api_version: str) -> dict[str, Any]:
        """GET a resource by id.

        Raises:
            ResourceNotFoundError: If the resource does not exist.
        """
        group_match = RESOURCE_GROUP_ID_PATTERN.match(resource_id)
        if group_match:
            group = self._resources.resource_groups.get(group_match.group(1))
            return group.serialize(keep_readonly=True)

        resource = self._resources.resources.get_by_id(
            resource_id=resource_id, api_version=api_version
        )
        return resource.serialize(keep_readonly=True)

    def create_or_update(
        self, resource_id: str, api_version: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """PUT a resource and wait for the long-running operation.

        Raises:
            TimeoutError: If the operation has not finished within the timeout.
            HttpResponseError: If the provider rejects the request.
        """
        group_match = RESOURCE_GROUP_ID_PATTERN.match(resource_id)
        if group_match:
            group = self._resources.resource_groups.create_or_update(
                group_match.group(1),
                ResourceGroup(location=body["location"], tags=body.get("tags")),
            )
            return group.serialize(keep_readonly=True)

        poller = self._resources.resources.begin_create_or_update_by_id(
            resource_id=resource_id,
            api_version=api_version,
            parameters=body,
        )
        result = self._wait(poller, resource_id)
        if result is None:
            return self.get_resource(resource_id, api_version)
        return result.serialize(keep_readonly=True)

    def find_by_name(self, resource_type: str, name: str) -> list[ResourceInfo]:
        return self._graph.find_by_name(resource_type, name)

    def is_name_available(self, kind: ResourceKind, name: str) -> bool:
        """Ask the owning service whether a global name is free.

        Kinds without a name availability API report True; collisions for
        them surface as a conflict on create instead.
        """
        match kind:
            case ResourceKind.STORAGE_ACCOUNT:
                storage_result = self._storage.storage_accounts.check_name_availability(
                    StorageAccountCheckNameAvailabilityParameters(name=name)
                )
                return bool(storage_result.name_available)
            case ResourceKind.SQL_SERVER:
                sql_result = self._sql.servers.check_name_availability(
                    CheckNameAvailabilityRequest(name=name)
                )
                return bool(sql_result.available)
            case ResourceKind.OPENAI_ACCOUNT:
                domain_result = self._cognitive.check_domain_availability(
                    CheckDomainAvailabilityParameter(
                        subdomain_name=name,
                        type="Microsoft.CognitiveServices/accounts",
                        kind="OpenAI",
                    )
                )
                return bool(domain_result.is_subdomain_available)
            case ResourceKind.APIM_SERVICE:
                apim_result = self._apim.api_management_service.check_name_availability(
                    ApiManagementServiceCheckNameAvailabilityParameters(name=name)
                )
                return bool(apim_result.name_available)
            case _:
                return True

    # -------------------------------------------------------------------------
    # Keys and secrets
    # -------------------------------------------------------------------------

    def list_storage_key(self, resource_group: str, account_name: str) -> str:
        keys = self._storage.storage_accounts.list_keys(resource_group, account_name)
        return keys.keys[0].value

    def list_openai_key(self, resource_group: str, account_name: str) -> str:
        return self._cognitive.accounts.list_keys(resource_group, account_name).key1

    def list_apim_subscription_key(
        self, resource_group: str, service_name: str, subscription_name: str
    ) -> str:
        secrets = self._apim.subscription.list_secrets(
            resource_group, service_name, subscription_name
        )
        return secrets.primary_key

    # -------------------------------------------------------------------------
    # Role assignments
    # -------------------------------------------------------------------------

    def list_role_assignments(self, scope: str, principal_id: str) -> list[dict[str, Any]]:
        """Assignments for a principal that apply at ``scope`` (including inherited)."""
        assignments = self._authorization.role_assignments.list_for_scope(
            scope=scope, filter=f"principalId eq '{principal_id}'"
        )
        return [
            {
                "id": a.id,
                "name": a.name,
                "scope": a.scope,
                "roleDefinitionId": a.role_definition_id,
                "principalId": a.principal_id,
            }
            for a in assignments
        ]

    def create_role_assignment(
        self,
        scope: str,
        assignment_name: str,
        role_definition_id: str,
        principal_id: str,
    ) -> dict[str, Any]:
        assignment = self._authorization.role_assignments.create(
            scope=scope,
            role_assignment_name=assignment_name,
            parameters=RoleAssignmentCreateParameters(
                role_definition_id=role_definition_id,
                principal_id=principal_id,
                principal_type="ServicePrincipal",
            ),
        )
        return {
            "id": assignment.id,
            "name": assignment.name,
            "scope": assignment.scope,
            "roleDefinitionId": assignment.role_definition_id,
            "principalId": assignment.principal_id,
        }

    def _wait(self, poller: LROPoller[Any], resource_id: str) -> Any:
        result = poller.result(timeout=self._timeout)
        if not poller.done():
            logger.error(
                "Provider operation timed out",
                extra={"resource_id": resource_id, "timeout_seconds": self._timeout},
            )
            raise TimeoutError(
                f"Operation on {resource_id} did not finish within {self._timeout}s"
            )
        return result
