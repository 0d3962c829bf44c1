"""Bounded retry with exponential backoff for provider calls.

Every provider call in the deployment goes through ``call_with_retry``.
Only transient faults (timeouts, throttling, 5xx, dropped connections) are
retried; anything else is surfaced immediately as a semantic error.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from azure.core.exceptions import (
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)

from .errors import RetriesExhaustedError, SemanticProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Error codes that must never be retried even when the status code says otherwise
SEMANTIC_ERROR_CODES = frozenset(
    {
        "InsufficientQuota",
        "QuotaExceeded",
        "SpecialFeatureOrQuotaIdRequired",
        "InvalidParameter",
        "InvalidTemplate",
        "LocationNotAvailableForResourceType",
    }
)

# Error codes the provider returns when a globally unique name is taken
NAME_COLLISION_ERROR_CODES = frozenset(
    {
        "StorageAccountAlreadyTaken",
        "StorageAccountAlreadyExists",
        "ServerNameAlreadyExists",
        "ServiceAlreadyExists",
        "CustomDomainInUse",
        "CustomSubDomainNameInUse",
        "WebsiteAlreadyExists",
        "NameAlreadyExists",
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings: attempts and the delay before the first retry.

    The delay doubles on each subsequent attempt; ``jitter_ratio`` adds up to
    that fraction of the delay at random.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 5.0
    jitter_ratio: float = 0.2

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after the given (1-based) failed attempt."""
        backoff = self.base_delay_seconds * (2 ** (attempt - 1))
        if self.jitter_ratio <= 0:
            return backoff
        return backoff + random.uniform(0, backoff * self.jitter_ratio)


def error_code_of(error: BaseException) -> str | None:
    """Extract the ARM error code from an Azure SDK error, if any."""
    if isinstance(error, HttpResponseError) and error.error is not None:
        return error.error.code
    return None


def is_transient(error: BaseException) -> bool:
    """Return True for faults worth retrying."""
    if isinstance(error, TimeoutError | ServiceRequestError | ServiceResponseError):
        return True
    if isinstance(error, HttpResponseError):
        if error_code_of(error) in SEMANTIC_ERROR_CODES:
            return False
        return error.status_code in TRANSIENT_STATUS_CODES
    return False


def is_name_collision(error: BaseException) -> bool:
    """Return True when the provider reports a globally taken name."""
    if isinstance(error, SemanticProviderError):
        return error.error_code in NAME_COLLISION_ERROR_CODES
    return error_code_of(error) in NAME_COLLISION_ERROR_CODES


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    operation_name: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` with exponential backoff on transient faults.

    Args:
        operation: Zero-argument callable performing one provider call.
        policy: Attempts and base delay.
        operation_name: Human-readable name for logs and errors.
        sleep: Injected for tests.

    Returns:
        Whatever ``operation`` returns.

    Raises:
        SemanticProviderError: On a non-transient provider rejection.
        RetriesExhaustedError: If every attempt hit a transient fault.
    """
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return operation()
        except (HttpResponseError, ServiceRequestError, ServiceResponseError, TimeoutError) as e:
            if not is_transient(e):
                status_code = e.status_code if isinstance(e, HttpResponseError) else None
                raise SemanticProviderError(
                    operation_name,
                    status_code=status_code,
                    error_code=error_code_of(e),
                    message=_short_message(e),
                ) from e

            last_error = e
            if attempt < policy.max_attempts:
                wait_time = policy.delay_for(attempt)
                logger.warning(
                    "Transient provider fault, retrying",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "wait_seconds": round(wait_time, 2),
                        "error": str(e),
                    },
                )
                sleep(wait_time)

    # Loop runs at least once, so last_error is set here
    assert last_error is not None, "Retry loop completed without setting last_error"
    raise RetriesExhaustedError(operation_name, policy.max_attempts, last_error) from last_error


def _short_message(error: Exception) -> str:
    if isinstance(error, HttpResponseError) and error.error is not None and error.error.message:
        return error.error.message
    return str(error).splitlines()[0] if str(error) else type(error).__name__
