"""Mock risk APIs published through API Management.

The loan agent calls four third-party style services (credit bureau,
employer verification, demographics and a risk engine). In the sample they
are APIM operations whose policy short-circuits the backend with a
``return-response`` carrying canned JSON. The response is chosen by a plain
substring match on the request body, so a known test SSN gets a
deterministic answer and anything else gets the default.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any
from xml.sax.saxutils import escape

MOCK_API_NAME = "loan-risk-api"
MOCK_API_PATH = "risk"
MOCK_API_DISPLAY_NAME = "AI Loan Agent Risk APIs"


@dataclass(frozen=True)
class MockOperation:
    """One mock endpoint and the canned responses its policy returns.

    Attributes:
        operation_id: APIM operation name (also the URL segment).
        display_name: Name shown in the portal.
        description: Portal description.
        cases: Substring of the request body mapped to the response body.
        default: Response body when no case matches.
    """

    operation_id: str
    display_name: str
    description: str
    default: dict[str, Any]
    cases: dict[str, dict[str, Any]] = field(default_factory=dict)
    method: str = "POST"

    @property
    def url_template(self) -> str:
        return f"/{self.operation_id}"


MOCK_OPERATIONS: tuple[MockOperation, ...] = (
    MockOperation(
        operation_id="credit-check",
        display_name="Credit Check",
        description="Returns a credit bureau report for the applicant's SSN.",
        cases={
            "555-12-3456": {"creditScore": 780, "delinquencies": 0, "bureau": "Experian"},
            "555-98-7654": {"creditScore": 720, "delinquencies": 1, "bureau": "Experian"},
            "555-11-2233": {"creditScore": 580, "delinquencies": 4, "bureau": "Experian"},
            "555-44-5566": {"creditScore": 810, "delinquencies": 0, "bureau": "Experian"},
        },
        default={"creditScore": 680, "delinquencies": 1, "bureau": "Experian"},
    ),
    MockOperation(
        operation_id="verify-employment",
        display_name="Employment Verification",
        description="Confirms the applicant's employer, tenure and salary.",
        cases={
            "555-11-2233": {"verified": False, "reason": "Employer could not be reached"},
        },
        default={"verified": True, "yearsEmployed": 5, "annualSalary": 85000},
    ),
    MockOperation(
        operation_id="demographics",
        display_name="Applicant Demographics",
        description="Returns identity verification and address history.",
        default={"identityVerified": True, "addressYears": 4, "watchlistMatch": False},
    ),
    MockOperation(
        operation_id="risk-assessment",
        display_name="Risk Assessment",
        description="Scores the loan application for default risk.",
        cases={
            "555-11-2233": {"riskScore": 82, "riskLevel": "High", "recommendation": "Decline"},
            "555-44-5566": {"riskScore": 12, "riskLevel": "Low", "recommendation": "Approve"},
        },
        default={"riskScore": 45, "riskLevel": "Medium", "recommendation": "Review"},
    ),
)


def render_policy(operation: MockOperation) -> str:
    """Build the ``rawxml`` policy for a mock operation."""
    branches = "".join(
        f"""
            <when condition="@(context.Request.Body.As&lt;string&gt;(preserveContent: true).Contains(&quot;{escape(needle)}&quot;))">
                {_return_response(body)}
            </when>"""  # noqa: E501
        for needle, body in operation.cases.items()
    )
    return f"""<policies>
    <inbound>
        <base />
        <choose>{branches}
            <otherwise>
                {_return_response(operation.default)}
            </otherwise>
        </choose>
    </inbound>
    <backend>
        <base />
    </backend>
    <outbound>
        <base />
    </outbound>
    <on-error>
        <base />
    </on-error>
</policies>"""


def _return_response(body: dict[str, Any]) -> str:
    return (
        "<return-response>"
        '<set-status code="200" reason="OK" />'
        '<set-header name="Content-Type" exists-action="override">'
        "<value>application/json</value></set-header>"
        f"<set-body>{escape(json.dumps(body, sort_keys=True))}</set-body>"
        "</return-response>"
    )
