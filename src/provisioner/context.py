"""Explicit per-run deployment context.

Every component receives this object instead of reaching for module-level
state. It owns the records accumulated so far, which later steps read to
wire themselves to their prerequisites (parent ids, names, endpoints).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .models import ProvisioningRecord

if TYPE_CHECKING:
    from .config import Config
    from .credentials import PrincipalInfo
    from .gateway import CloudGateway
    from .naming import NameResolver
    from .prober import ExistenceProber


@dataclass
class DeploymentContext:
    """State shared by the components of one invocation."""

    config: Config
    gateway: CloudGateway
    resolver: NameResolver
    prober: ExistenceProber
    principal: PrincipalInfo | None = None
    records: dict[str, ProvisioningRecord] = field(default_factory=dict)

    def record(self, logical_name: str) -> ProvisioningRecord | None:
        return self.records.get(logical_name)

    def succeeded(self, logical_name: str) -> bool:
        record = self.records.get(logical_name)
        return record is not None and record.succeeded

    def resource_id_of(self, logical_name: str) -> str:
        """ARM id of a prerequisite that has already succeeded.

        Raises:
            KeyError: If the prerequisite has no successful record.
        """
        record = self.records.get(logical_name)
        if record is None or not record.succeeded or record.resource_id is None:
            raise KeyError(f"No provisioned resource for '{logical_name}'")
        return record.resource_id

    def physical_name_of(self, logical_name: str) -> str:
        record = self.records.get(logical_name)
        if record is None or not record.succeeded or record.physical_name is None:
            raise KeyError(f"No provisioned resource for '{logical_name}'")
        return record.physical_name
