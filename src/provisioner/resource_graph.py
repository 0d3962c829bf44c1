"""Azure Resource Graph lookups for the existence prober.

ARM GETs only see our own resource group. Resource Graph answers
"does a resource of this type and exact name exist anywhere in the
subscription, and in which resource group?" in one query, which is what
the prober needs to tell our copy from someone else's.

Query results are bounded and names are validated before they are
interpolated into KQL.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)

logger = logging.getLogger(__name__)

MAX_GRAPH_QUERY_RESULTS = 50

# Resource names and types that are safe to embed in a KQL string literal
SAFE_KQL_VALUE_PATTERN = r"^[A-Za-z0-9._/()-]+$"


@dataclass
class ResourceInfo:
    """Basic resource information from Resource Graph.

    Attributes:
        resource_id: Full ARM resource ID
        name: Resource name
        type: Resource type (lowercased by Resource Graph)
        location: Azure region
        resource_group: Resource group name
        subscription_id: Subscription ID
        tags: Resource tags
    """

    resource_id: str
    name: str
    type: str
    location: str
    resource_group: str
    subscription_id: str
    tags: dict[str, str] | None = None


class ResourceGraphQuerier:
    """Exact-name lookups across a subscription."""

    def __init__(self, credential: TokenCredential, subscription_id: str) -> None:
        self._subscription_id = subscription_id
        self._client = ResourceGraphClient(credential=credential)

    def find_by_name(self, resource_type: str, name: str) -> list[ResourceInfo]:
        """Find resources of ``resource_type`` named exactly ``name``.

        Args:
            resource_type: ARM type, e.g. ``Microsoft.Sql/servers``.
            name: Exact resource name (case-insensitive match).

        Returns:
            Every match in the subscription, in any resource group.

        Raises:
            ValueError: If the name or type contains characters unsafe for KQL.
            HttpResponseError: If the query fails.
        """
        for value in (resource_type, name):
            if not re.match(SAFE_KQL_VALUE_PATTERN, value):
                raise ValueError(f"Refusing to query Resource Graph with unsafe value: {value!r}")

        query = f"""
        Resources
        | where type =~ '{resource_type}' and name =~ '{name}'
        | project
            id,
            name,
            type,
            location,
            resourceGroup,
            subscriptionId,
            tags
        | limit {MAX_GRAPH_QUERY_RESULTS}
        """

        start_time = time.monotonic()
        rows = self._execute_query(query.strip())

        resources = [
            ResourceInfo(
                resource_id=row.get("id", ""),
                name=row.get("name", ""),
                type=row.get("type", ""),
                location=row.get("location", ""),
                resource_group=row.get("resourceGroup", ""),
                subscription_id=row.get("subscriptionId", ""),
                tags=row.get("tags"),
            )
            for row in rows
        ]

        logger.debug(
            "Resource Graph name lookup complete",
            extra={
                "resource_type": resource_type,
                "name": name,
                "matches": len(resources),
                "query_time_seconds": round(time.monotonic() - start_time, 2),
            },
        )
        return resources

    def _execute_query(self, query: str) -> list[dict[str, Any]]:
        """Execute a Resource Graph query.

        Args:
            query: KQL query string.

        Returns:
            List of result rows as dictionaries.

        Raises:
            HttpResponseError: If the query fails.
        """
        request = QueryRequest(
            subscriptions=[self._subscription_id],
            query=query,
            options=QueryRequestOptions(
                result_format=ResultFormat.OBJECT_ARRAY,
                top=MAX_GRAPH_QUERY_RESULTS,
            ),
        )

        try:
            response = self._client.resources(request)
        except AzureError as e:
            logger.error(
                "Resource Graph query failed",
                extra={"subscription_id": self._subscription_id, "error": str(e)},
            )
            raise

        # response.data is a list of dictionaries when using OBJECT_ARRAY format
        if isinstance(response.data, list):
            return response.data

        return []
