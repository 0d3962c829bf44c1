"""Deterministic physical names for logical resources.

Names are derived from a stable seed (subscription id + resource group) so a
re-run computes the same names and finds the resources it created before.
When a globally unique name is owned by someone else, the resolver moves to
the next slice of the same digest rather than a random value, which keeps
the escape reproducible. Only as a last resort, and only when the caller
opts in, a wall-clock suffix is used.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime

from .errors import NameExhaustedError
from .models import ResolvedResourceName, ResourceKind

logger = logging.getLogger(__name__)

DIGEST_HEX_LENGTH = 64  # sha256
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


@dataclass(frozen=True)
class NamingRule:
    """Provider constraints for one resource kind's names.

    Attributes:
        label: Readable middle part (``{project}-{label}-{hash}``).
        max_length: Provider maximum for the full name.
        slice_width: Hex characters taken from the digest per attempt.
        alphanumeric_only: Strip every non ``[a-z0-9]`` character (storage).
        global_unique: Name must be unique across all of Azure.
    """

    label: str
    max_length: int
    slice_width: int = 4
    alphanumeric_only: bool = False
    global_unique: bool = True

    @property
    def separator(self) -> str:
        return "" if self.alphanumeric_only else "-"

    @property
    def max_attempts(self) -> int:
        return DIGEST_HEX_LENGTH // self.slice_width


# Kinds not listed here use their fixed name and never collide
NAMING_RULES: dict[ResourceKind, NamingRule] = {
    ResourceKind.STORAGE_ACCOUNT: NamingRule(
        label="storage", max_length=24, slice_width=8, alphanumeric_only=True
    ),
    ResourceKind.SQL_SERVER: NamingRule(label="sqlserver", max_length=63),
    ResourceKind.OPENAI_ACCOUNT: NamingRule(label="openai", max_length=64),
    ResourceKind.APIM_SERVICE: NamingRule(label="apim", max_length=50),
    ResourceKind.LOGIC_APP: NamingRule(label="logicapp", max_length=60),
    ResourceKind.APP_SERVICE_PLAN: NamingRule(
        label="plan", max_length=40, slice_width=0, global_unique=False
    ),
    ResourceKind.SQL_DATABASE: NamingRule(
        label="db", max_length=128, slice_width=0, global_unique=False
    ),
}


def seed_digest(seed: str) -> str:
    """Hex SHA-256 digest of the naming seed."""
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


class NameResolver:
    """Derives physical names from a seed and a project prefix.

    Example:
        resolver = NameResolver(seed="sub-123-rg-demo", project_name="proj")
        resolver.resolve(ResourceKind.SQL_SERVER, "sqlServer").physical_name
        # -> "proj-sqlserver-" + sha256("sub-123-rg-demo")[:4]
    """

    def __init__(self, seed: str, project_name: str) -> None:
        self._seed = seed
        self._project_name = project_name
        self._digest = seed_digest(seed)

    def rule_for(self, kind: ResourceKind) -> NamingRule | None:
        return NAMING_RULES.get(kind)

    def resolve(
        self,
        kind: ResourceKind,
        logical_name: str,
        *,
        fixed_name: str | None = None,
    ) -> ResolvedResourceName:
        """Return the attempt-0 name for a logical resource."""
        if fixed_name is not None:
            return ResolvedResourceName(logical_name, fixed_name, 0)

        rule = self.rule_for(kind)
        if rule is None:
            return ResolvedResourceName(logical_name, logical_name, 0)

        return self._build(rule, logical_name, 0)

    def next(self, kind: ResourceKind, resolved: ResolvedResourceName) -> ResolvedResourceName:
        """Return the name built from the next digest slice.

        Raises:
            NameExhaustedError: If every slice has been tried, or the kind has
                no hashed component to advance.
        """
        rule = self.rule_for(kind)
        next_attempt = resolved.collision_attempt + 1
        if rule is None or rule.slice_width == 0 or next_attempt >= rule.max_attempts:
            raise NameExhaustedError(resolved.logical_name, next_attempt)

        logger.info(
            "Name taken by another owner, trying next digest slice",
            extra={
                "logical_name": resolved.logical_name,
                "rejected_name": resolved.physical_name,
                "attempt": next_attempt,
            },
        )
        return self._build(rule, resolved.logical_name, next_attempt)

    def candidates(self, kind: ResourceKind, logical_name: str) -> list[ResolvedResourceName]:
        """Every deterministic candidate in the order they are tried."""
        rule = self.rule_for(kind)
        if rule is None or rule.slice_width == 0:
            return [self.resolve(kind, logical_name)]
        return [self._build(rule, logical_name, i) for i in range(rule.max_attempts)]

    def timestamp_fallback(
        self,
        kind: ResourceKind,
        logical_name: str,
        *,
        now: datetime | None = None,
    ) -> ResolvedResourceName:
        """Build a timestamp-suffixed name.

        The result is not reproducible, so a later run will not find the
        resource by name. Callers must opt in explicitly.
        """
        rule = self.rule_for(kind)
        if rule is None:
            raise NameExhaustedError(logical_name, 0)

        suffix = (now or datetime.now(UTC)).strftime(TIMESTAMP_FORMAT)
        physical_name = self._compose(rule, suffix)
        logger.warning(
            "Falling back to timestamp-suffixed name; this resource will not be found "
            "by name on a later run",
            extra={"logical_name": logical_name, "physical_name": physical_name},
        )
        return ResolvedResourceName(logical_name, physical_name, -1)

    def _build(self, rule: NamingRule, logical_name: str, attempt: int) -> ResolvedResourceName:
        if rule.slice_width == 0:
            return ResolvedResourceName(logical_name, self._compose(rule, ""), 0)
        start = attempt * rule.slice_width
        suffix = self._digest[start : start + rule.slice_width]
        return ResolvedResourceName(logical_name, self._compose(rule, suffix), attempt)

    def _compose(self, rule: NamingRule, suffix: str) -> str:
        base = f"{self._project_name}-{rule.label}"
        if rule.alphanumeric_only:
            base = re.sub(r"[^a-z0-9]", "", base.lower())

        if not suffix:
            return base[: rule.max_length].rstrip("-")

        room = rule.max_length - len(rule.separator) - len(suffix)
        base = base[:room].rstrip("-")
        return f"{base}{rule.separator}{suffix}"
