"""Deployment identity and security audit logging.

The deployment runs as whoever is signed in to the Azure CLI (or as a
managed identity on a build agent). No secret is ever read from
configuration: ``DefaultAzureCredential`` resolves the identity, and the
interactive browser flow is disabled so an unattended run fails instead of
hanging on a prompt.

The signed-in principal doubles as the SQL server's Entra ID administrator,
so its object id and tenant id are read from the ARM access token claims.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import jwt
from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import DefaultAzureCredential

from .errors import ProvisioningError

logger = logging.getLogger(__name__)

ARM_SCOPE = "https://management.azure.com/.default"


class CredentialError(ProvisioningError):
    """Raised when the deployment identity cannot be determined."""

    remediation = "Run 'az login' (and 'az account set --subscription <id>') and retry."


@dataclass(frozen=True)
class PrincipalInfo:
    """The identity running the deployment."""

    object_id: str
    tenant_id: str
    login: str
    principal_type: str  # "User" or "Application"


def get_deployment_credential() -> DefaultAzureCredential:
    """Return the credential used for every provider call."""
    logger.info("Using DefaultAzureCredential for deployment identity")
    return DefaultAzureCredential(exclude_interactive_browser_credential=True)


def resolve_signed_in_principal(credential: TokenCredential) -> PrincipalInfo:
    """Read the caller's object id, tenant and login from an ARM token.

    Raises:
        CredentialError: If no token can be obtained or its claims are incomplete.
    """
    try:
        token = credential.get_token(ARM_SCOPE).token
    except ClientAuthenticationError as e:
        raise CredentialError(f"Could not obtain an Azure token: {e.message}") from e

    claims = decode_token_claims(token)
    object_id = claims.get("oid")
    tenant_id = claims.get("tid")
    if not object_id or not tenant_id:
        raise CredentialError("Azure token does not carry oid/tid claims")

    # Users carry upn (or unique_name for guests); service principals carry appid
    login = claims.get("upn") or claims.get("unique_name") or claims.get("appid") or object_id
    is_app = claims.get("idtyp") == "app" or not (claims.get("upn") or claims.get("unique_name"))
    principal_type = "Application" if is_app else "User"

    logger.info(
        "Resolved signed-in principal",
        extra={"object_id": object_id, "tenant_id": tenant_id, "principal_type": principal_type},
    )
    return PrincipalInfo(
        object_id=object_id,
        tenant_id=tenant_id,
        login=login,
        principal_type=principal_type,
    )


def decode_token_claims(token: str) -> dict[str, Any]:
    """Decode the (unverified) payload of a JWT access token.

    The signature is not checked.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise CredentialError(f"Access token is not a valid JWT: {e}") from e

    if not isinstance(claims, dict):
        raise CredentialError("Access token payload is not a JSON object")
    return claims


def log_security_audit_event(
    event_type: str,
    principal_id: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of security event (role_assignment, access_policy, ...).
        principal_id: Identity being granted or checked.
        target_resource: Azure resource being accessed.
        action: Action being performed.
        result: Result of the action (created, exists, failed).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "principal_id": principal_id,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
