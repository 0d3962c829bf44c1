"""Azure mock for provisioning tests.

An in-memory implementation of the provisioner's gateway surface so the
full deployment (probe, create, reuse, role assignments, key listing) runs
without Azure connectivity.

Key Features:
- In-memory resource state keyed by ARM id
- Foreign resources and globally taken names for collision scenarios
- Fault injection (transient and semantic provider errors)
- Logic App managed identity and API connection status simulation

Usage:
    from azure_mock import MockCloud

    cloud = MockCloud()
    ctx = create_context(config, gateway=cloud, principal=principal)
    deploy(ctx)

    assert cloud.write_count == 0  # on a converged environment
"""

from .cloud import (
    SUBSCRIPTION_ID,
    TENANT_ID,
    MockCloud,
    connection_reset,
    http_error,
    not_found,
    throttled,
    unavailable,
)
from .credential import (
    USER_OBJECT_ID,
    USER_UPN,
    MockCliCredential,
    create_mock_credential,
    encode_jwt,
)

__all__ = [
    "SUBSCRIPTION_ID",
    "TENANT_ID",
    "USER_OBJECT_ID",
    "USER_UPN",
    "MockCliCredential",
    "MockCloud",
    "connection_reset",
    "create_mock_credential",
    "encode_jwt",
    "http_error",
    "not_found",
    "throttled",
    "unavailable",
]
