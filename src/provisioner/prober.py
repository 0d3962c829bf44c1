"""Existence probes: create, reuse, or pick another name.

A probe answers one question for a physical name: is it free, is it ours,
or does somebody else hold it? "Ours" means the resource sits at the exact
id we would create it at, in our resource group. For globally unique
kinds the name can also be held elsewhere; that is found through Resource
Graph (other resource groups in this subscription) and the service's
name-availability API (anywhere else in Azure).

Probes never write. Each provider read goes through the standard transient
retry; a "not found" response is an answer, not a failure.
"""

from __future__ import annotations

import logging

from .errors import SemanticProviderError
from .gateway import CloudGateway
from .kinds import KIND_HANDLERS
from .models import ProbeOutcome, ProbeResult, ResourceKind
from .naming import NAMING_RULES
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

NOT_FOUND_ERROR_CODES = frozenset(
    {
        "ResourceNotFound",
        "ResourceGroupNotFound",
        "ParentResourceNotFound",
        "NotFound",
    }
)


def is_not_found(error: SemanticProviderError) -> bool:
    """True when the provider signalled absence through an error."""
    return error.status_code == 404 or error.error_code in NOT_FOUND_ERROR_CODES


class ExistenceProber:
    """Classifies physical names as NotFound, FoundOwnedByUs or FoundOwnedByOther."""

    def __init__(self, gateway: CloudGateway, resource_group: str, retry: RetryPolicy) -> None:
        self._gateway = gateway
        self._resource_group = resource_group
        self._retry = retry

    def probe(self, kind: ResourceKind, physical_name: str, expected_id: str) -> ProbeOutcome:
        """Probe ``physical_name`` for a resource of ``kind``.

        Args:
            kind: Resource kind being provisioned.
            physical_name: Candidate name.
            expected_id: ARM id the resource has when it is ours.

        Returns:
            The classification, with the resource payload when it is ours.

        Raises:
            SemanticProviderError: On a provider rejection other than not-found.
            RetriesExhaustedError: If the provider stays unavailable.
        """
        handler = KIND_HANDLERS[kind]

        try:
            resource = call_with_retry(
                lambda: self._gateway.get_resource(expected_id, handler.api_version),
                self._retry,
                f"probe {kind.value} '{physical_name}'",
            )
        except SemanticProviderError as e:
            if not is_not_found(e):
                raise
        else:
            logger.debug(
                "Probe found resource in our scope",
                extra={"kind": kind.value, "physical_name": physical_name},
            )
            return ProbeOutcome(ProbeResult.FOUND_OWNED_BY_US, resource)

        rule = NAMING_RULES.get(kind)
        if rule is None or not rule.global_unique:
            return ProbeOutcome(ProbeResult.NOT_FOUND)

        matches = call_with_retry(
            lambda: self._gateway.find_by_name(handler.resource_type, physical_name),
            self._retry,
            f"lookup {kind.value} '{physical_name}'",
        )
        for match in matches:
            # A match in our own group after a 404 is a stale index entry
            if match.resource_group.lower() == self._resource_group.lower():
                continue
            owner_scope = (
                f"/subscriptions/{match.subscription_id}/resourceGroups/{match.resource_group}"
            )
            logger.info(
                "Name is held by a resource in another resource group",
                extra={
                    "kind": kind.value,
                    "physical_name": physical_name,
                    "owner_scope": owner_scope,
                },
            )
            return ProbeOutcome(ProbeResult.FOUND_OWNED_BY_OTHER, owner_scope=owner_scope)

        available = call_with_retry(
            lambda: self._gateway.is_name_available(kind, physical_name),
            self._retry,
            f"check name availability {kind.value} '{physical_name}'",
        )
        if not available:
            logger.info(
                "Name is held outside this subscription",
                extra={"kind": kind.value, "physical_name": physical_name},
            )
            return ProbeOutcome(ProbeResult.FOUND_OWNED_BY_OTHER)

        return ProbeOutcome(ProbeResult.NOT_FOUND)
