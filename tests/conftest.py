"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import SUBSCRIPTION_ID, TENANT_ID, USER_OBJECT_ID, USER_UPN, MockCloud  # noqa: E402

from provisioner.config import Config  # noqa: E402
from provisioner.context import DeploymentContext  # noqa: E402
from provisioner.credentials import PrincipalInfo  # noqa: E402
from provisioner.main import create_context  # noqa: E402
from provisioner.retry import RetryPolicy  # noqa: E402

RESOURCE_GROUP = "rg-loan-agent"
PROJECT_NAME = "loanagent"
LOCATION = "eastus2"


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Valid configuration writing its artifacts under ``tmp_path``, with instant retries."""
    return Config(
        subscription_id=SUBSCRIPTION_ID,
        resource_group=RESOURCE_GROUP,
        location=LOCATION,
        project_name=PROJECT_NAME,
        settings_path=tmp_path / "local.settings.json",
        sql_script_path=tmp_path / "database-setup.generated.sql",
        retry=RetryPolicy(max_attempts=3, base_delay_seconds=0, jitter_ratio=0),
    )


@pytest.fixture
def principal() -> PrincipalInfo:
    return PrincipalInfo(
        object_id=USER_OBJECT_ID,
        tenant_id=TENANT_ID,
        login=USER_UPN,
        principal_type="User",
    )


@pytest.fixture
def cloud() -> MockCloud:
    return MockCloud()


@pytest.fixture
def ctx(config: Config, cloud: MockCloud, principal: PrincipalInfo) -> DeploymentContext:
    return create_context(config, gateway=cloud, principal=principal)


@pytest.fixture
def new_context(cloud: MockCloud, principal: PrincipalInfo):
    """Factory for a fresh invocation against the same cloud (a re-run)."""

    def factory(config: Config) -> DeploymentContext:
        return create_context(config, gateway=cloud, principal=principal)

    return factory
