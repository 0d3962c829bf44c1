"""Provisioning error types.

Every error carries a ``remediation`` hint that the CLI prints next to the
cause. All of them are safe to recover from by re-running the deployment,
since every step probes before it acts.
"""

from __future__ import annotations

from typing import Any


class ProvisioningError(Exception):
    """Base exception for provisioning errors."""

    remediation: str = "Fix the reported problem and re-run 'loan-agent-deploy deploy'."

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        if remediation is not None:
            self.remediation = remediation


class SemanticProviderError(ProvisioningError):
    """The provider rejected a request for a non-transient reason.

    Invalid parameters, quota exhaustion and authorization failures land
    here. They are never retried.
    """

    def __init__(
        self,
        operation: str,
        *,
        status_code: int | None,
        error_code: str | None,
        message: str,
    ) -> None:
        super().__init__(
            f"{operation} was rejected "
            f"({status_code or 'n/a'} {error_code or 'Unknown'}): {message}"
        )
        self.operation = operation
        self.status_code = status_code
        self.error_code = error_code


class RetriesExhaustedError(ProvisioningError):
    """A transient fault persisted through every retry attempt."""

    remediation = "The provider is throttling or unavailable; wait a few minutes and re-run."

    def __init__(self, operation: str, attempts: int, last_error: Exception) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class NameExhaustedError(ProvisioningError):
    """Every deterministic name slice is taken by another owner."""

    remediation = (
        "Re-run with --allow-timestamp-names to fall back to timestamp-suffixed names, "
        "or choose a different --project-name."
    )

    def __init__(self, logical_name: str, attempts: int) -> None:
        super().__init__(
            f"No free name for '{logical_name}' after {attempts} deterministic candidates"
        )
        self.logical_name = logical_name
        self.attempts = attempts


class ExistingResourceMissingError(ProvisioningError):
    """A resource the caller said already exists could not be found."""

    def __init__(self, resource_type: str, name: str) -> None:
        super().__init__(
            f"{resource_type} '{name}' was supplied as pre-existing but does not exist "
            "in the target resource group",
            remediation=(
                "Check the name passed to --existing-apim or omit it to create a new gateway."
            ),
        )
        self.resource_type = resource_type
        self.name = name


class RequiredStepFailedError(ProvisioningError):
    """A required step failed and the run was aborted.

    Carries the records accumulated before the failure so the caller can
    still report progress and materialize partial settings. The original
    exception is chained via ``__cause__``.
    """

    def __init__(self, *, step: str, records: list[Any], message: str, remediation: str) -> None:
        super().__init__(f"Required step '{step}' failed: {message}", remediation=remediation)
        self.step = step
        self.records = records


class AccessBindingError(ProvisioningError):
    """One or more permission-layer grants could not be created."""

    remediation = (
        "Make sure you hold Owner or User Access Administrator on the resource group, then run "
        "'loan-agent-deploy access grant'."
    )

    def __init__(self, failures: list[str]) -> None:
        self.failures = failures
        msg = "Access binding failed:\n" + "\n".join(f"  - {f}" for f in failures)
        super().__init__(msg)


class SettingsDocumentError(ProvisioningError):
    """The existing settings document cannot be read or merged."""

    remediation = (
        "Fix or move the settings file aside, then run 'loan-agent-deploy settings refresh'."
    )
