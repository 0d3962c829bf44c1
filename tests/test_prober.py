"""Tests for existence probes."""

import pytest
from azure_mock import SUBSCRIPTION_ID, MockCloud, http_error

from provisioner.errors import SemanticProviderError
from provisioner.models import ProbeResult, ResourceKind
from provisioner.prober import ExistenceProber, is_not_found
from provisioner.retry import RetryPolicy

RG = "rg-loan-agent"
SQL_ID = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{RG}"
    "/providers/Microsoft.Sql/servers/proj-sqlserver-abcd"
)


@pytest.fixture
def prober(cloud: MockCloud) -> ExistenceProber:
    return ExistenceProber(cloud, RG, RetryPolicy(max_attempts=2, base_delay_seconds=0))


class TestProbe:
    def test_free_name_is_not_found(self, prober: ExistenceProber) -> None:
        outcome = prober.probe(ResourceKind.SQL_SERVER, "proj-sqlserver-abcd", SQL_ID)

        assert outcome.result is ProbeResult.NOT_FOUND
        assert outcome.resource is None

    def test_resource_at_expected_id_is_ours(
        self, cloud: MockCloud, prober: ExistenceProber
    ) -> None:
        cloud.seed(f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{RG}", {"location": "x"})
        cloud.seed(SQL_ID, {"location": "eastus2"})

        outcome = prober.probe(ResourceKind.SQL_SERVER, "proj-sqlserver-abcd", SQL_ID)

        assert outcome.result is ProbeResult.FOUND_OWNED_BY_US
        assert outcome.resource is not None
        assert outcome.resource["name"] == "proj-sqlserver-abcd"
        assert outcome.owner_scope is None

    def test_same_name_in_other_resource_group_is_owned_by_other(
        self, cloud: MockCloud, prober: ExistenceProber
    ) -> None:
        cloud.add_foreign_resource("Microsoft.Sql/servers", "proj-sqlserver-abcd", "rg-other")

        outcome = prober.probe(ResourceKind.SQL_SERVER, "proj-sqlserver-abcd", SQL_ID)

        assert outcome.result is ProbeResult.FOUND_OWNED_BY_OTHER
        assert outcome.owner_scope == f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-other"

    def test_name_taken_outside_subscription_is_owned_by_other(
        self, cloud: MockCloud, prober: ExistenceProber
    ) -> None:
        cloud.mark_name_taken(ResourceKind.SQL_SERVER, "proj-sqlserver-abcd")

        outcome = prober.probe(ResourceKind.SQL_SERVER, "proj-sqlserver-abcd", SQL_ID)

        assert outcome.result is ProbeResult.FOUND_OWNED_BY_OTHER
        assert outcome.owner_scope is None

    def test_non_global_kind_skips_global_lookups(
        self, cloud: MockCloud, prober: ExistenceProber
    ) -> None:
        db_id = f"{SQL_ID}/databases/proj-db"

        outcome = prober.probe(ResourceKind.SQL_DATABASE, "proj-db", db_id)

        assert outcome.result is ProbeResult.NOT_FOUND
        assert cloud.calls_to("find_by_name") == []
        assert cloud.calls_to("is_name_available") == []

    def test_probe_never_writes(self, cloud: MockCloud, prober: ExistenceProber) -> None:
        prober.probe(ResourceKind.SQL_SERVER, "proj-sqlserver-abcd", SQL_ID)

        assert cloud.write_count == 0

    def test_authorization_failure_is_raised(
        self, cloud: MockCloud, prober: ExistenceProber
    ) -> None:
        cloud.fail("get", SQL_ID, http_error(403, "AuthorizationFailed"), times=None)

        with pytest.raises(SemanticProviderError) as exc_info:
            prober.probe(ResourceKind.SQL_SERVER, "proj-sqlserver-abcd", SQL_ID)

        assert exc_info.value.status_code == 403

    def test_not_found_error_code_without_404(
        self, cloud: MockCloud, prober: ExistenceProber
    ) -> None:
        cloud.fail("get", SQL_ID, http_error(400, "ResourceGroupNotFound"))

        outcome = prober.probe(ResourceKind.SQL_SERVER, "proj-sqlserver-abcd", SQL_ID)

        assert outcome.result is ProbeResult.NOT_FOUND


class TestIsNotFound:
    @pytest.mark.parametrize(
        ("status_code", "error_code", "expected"),
        [
            (404, None, True),
            (400, "ResourceGroupNotFound", True),
            (400, "ParentResourceNotFound", True),
            (400, "InvalidParameter", False),
            (None, None, False),
        ],
    )
    def test_classification(
        self, status_code: int | None, error_code: str | None, expected: bool
    ) -> None:
        error = SemanticProviderError(
            "probe", status_code=status_code, error_code=error_code, message="x"
        )

        assert is_not_found(error) is expected
