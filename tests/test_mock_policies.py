"""Tests for the mock risk API policies."""

import json
import xml.etree.ElementTree as ET

from provisioner.mock_policies import MOCK_OPERATIONS, render_policy


def operation(operation_id: str):
    return next(op for op in MOCK_OPERATIONS if op.operation_id == operation_id)


class TestMockOperations:
    def test_four_unique_endpoints(self) -> None:
        ids = [op.operation_id for op in MOCK_OPERATIONS]

        assert len(ids) == 4
        assert len(set(ids)) == 4
        assert all(op.url_template == f"/{op.operation_id}" for op in MOCK_OPERATIONS)


class TestRenderPolicy:
    def test_policy_is_well_formed_xml(self) -> None:
        for op in MOCK_OPERATIONS:
            root = ET.fromstring(render_policy(op))

            assert root.tag == "policies"
            assert [child.tag for child in root] == ["inbound", "backend", "outbound", "on-error"]

    def test_one_branch_per_case_plus_default(self) -> None:
        op = operation("credit-check")

        root = ET.fromstring(render_policy(op))

        choose = root.find("inbound/choose")
        assert choose is not None
        assert len(choose.findall("when")) == len(op.cases)
        assert choose.find("otherwise") is not None

    def test_bodies_are_canned_json(self) -> None:
        op = operation("risk-assessment")

        root = ET.fromstring(render_policy(op))

        default = root.find("inbound/choose/otherwise/return-response/set-body")
        assert default is not None
        assert json.loads(default.text or "") == op.default

    def test_case_matches_on_request_body(self) -> None:
        root = ET.fromstring(render_policy(operation("verify-employment")))

        when = root.find("inbound/choose/when")
        assert when is not None
        assert 'Contains("555-11-2233")' in when.attrib["condition"]

    def test_operation_without_cases_has_only_default(self) -> None:
        root = ET.fromstring(render_policy(operation("demographics")))

        assert root.findall("inbound/choose/when") == []
