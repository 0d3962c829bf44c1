"""Database bootstrap script for the manual Query Editor step.

Contained users for a managed identity can only be created by an Entra ID
principal connected to the database itself, which the management plane
cannot do. The deployment therefore renders the script with the Logic App
name filled in and leaves running it to the operator.

Every statement is guarded, so the script can be run any number of times.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from string import Template

from .errors import ProvisioningError

logger = logging.getLogger(__name__)


class DatabaseScriptError(ProvisioningError):
    """The setup script could not be written."""

    remediation = (
        "Point --output (or sql_script_path) at a writable location, then run "
        "'loan-agent-deploy sql-script'."
    )


VALID_PRINCIPAL_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9-]{0,59}$"

SQL_SCRIPT_TEMPLATE = Template(
    """\
-- AI Loan Agent database setup
-- Run in the Azure Portal Query Editor while signed in as the Entra ID admin.

IF NOT EXISTS (SELECT * FROM sysobjects WHERE name='CustomersBankHistory' AND xtype='U')
BEGIN
    CREATE TABLE [dbo].[CustomersBankHistory] (
        [CustomerID] INT IDENTITY(1,1) PRIMARY KEY,
        [SSN] NVARCHAR(11) NOT NULL,
        [CustomerName] NVARCHAR(100) NOT NULL,
        [AccountBalance] DECIMAL(18,2) NOT NULL,
        [AccountType] NVARCHAR(20) NOT NULL,
        [YearsAsCustomer] INT NOT NULL,
        [OverdraftHistory] INT NOT NULL,
        [AverageMonthlyCredits] DECIMAL(18,2) NOT NULL,
        [AverageMonthlyDebits] DECIMAL(18,2) NOT NULL,
        [LastActivityDate] DATETIME NOT NULL,
        [CreditScore] INT NOT NULL,
        [RiskCategory] NVARCHAR(20) NOT NULL
    );
END

IF NOT EXISTS (SELECT * FROM sysobjects WHERE name='AutoLoanSpecialVehicles' AND xtype='U')
BEGIN
    CREATE TABLE [dbo].[AutoLoanSpecialVehicles] (
        [VehicleID] INT IDENTITY(1,1) PRIMARY KEY,
        [Make] NVARCHAR(50) NOT NULL,
        [Model] NVARCHAR(50) NOT NULL,
        [Year] INT NOT NULL,
        [Category] NVARCHAR(30) NOT NULL,
        [BasePrice] DECIMAL(18,2) NOT NULL,
        [RequiresSpecialApproval] BIT NOT NULL DEFAULT 1,
        [Description] NVARCHAR(200) NULL
    );
END

IF NOT EXISTS (SELECT 1 FROM CustomersBankHistory WHERE SSN = '555-12-3456')
BEGIN
    INSERT INTO [dbo].[CustomersBankHistory] VALUES
$customer_rows;
END

IF NOT EXISTS (SELECT 1 FROM AutoLoanSpecialVehicles WHERE Make = 'Ferrari')
BEGIN
    INSERT INTO [dbo].[AutoLoanSpecialVehicles] VALUES
$vehicle_rows;
END

IF NOT EXISTS (SELECT * FROM sys.database_principals WHERE name = '$principal')
BEGIN
    CREATE USER [$principal] FROM EXTERNAL PROVIDER;
END

IF IS_ROLEMEMBER('db_datareader', '$principal') = 0
    ALTER ROLE db_datareader ADD MEMBER [$principal];

GRANT EXECUTE TO [$principal];

PRINT 'AI Loan Agent database setup complete for $principal';
"""
)

# (SSN, name, balance, account type, years, overdrafts, credits, debits,
#  last activity, credit score, risk category)
SAMPLE_CUSTOMERS: tuple[tuple[object, ...], ...] = (
    ("555-12-3456", "Sarah Johnson", 45000.00, "Checking", 8, 0, 5200.00, 3800.00, "2024-09-20", 780, "Low"),  # noqa: E501
    ("555-98-7654", "Michael Chen", 125000.00, "Premium", 12, 1, 12500.00, 8900.00, "2024-09-22", 720, "Medium"),  # noqa: E501
    ("555-11-2233", "Jennifer Martinez", 2800.00, "Basic", 2, 5, 2400.00, 2600.00, "2024-09-15", 580, "High"),  # noqa: E501
    ("555-44-5566", "David Wilson", 185000.00, "VIP", 15, 0, 22000.00, 16500.00, "2024-09-25", 810, "Low"),  # noqa: E501
    ("555-77-8899", "Robert Thompson", 78000.00, "Premium", 25, 2, 8500.00, 6200.00, "2024-09-18", 750, "Low"),  # noqa: E501
    ("555-33-4455", "Alex Rodriguez", 18500.00, "Checking", 3, 1, 4200.00, 3900.00, "2024-09-21", 690, "Medium"),  # noqa: E501
)

# (make, model, year, category, base price, requires approval, description)
SPECIAL_VEHICLES: tuple[tuple[object, ...], ...] = (
    ("Ferrari", "488 GTB", 2024, "Luxury Sports", 330000.00, 1, "High-performance luxury sports car requiring special underwriting"),  # noqa: E501
    ("Lamborghini", "Huracán", 2024, "Luxury Sports", 285000.00, 1, "Exotic sports car with special financing requirements"),  # noqa: E501
    ("Rolls-Royce", "Phantom", 2024, "Ultra Luxury", 550000.00, 1, "Ultra-luxury sedan requiring executive approval"),  # noqa: E501
    ("McLaren", "720S", 2024, "Luxury Sports", 315000.00, 1, "High-performance vehicle with specialized insurance needs"),  # noqa: E501
    ("Bentley", "Continental GT", 2024, "Luxury Grand Touring", 275000.00, 1, "Luxury grand touring vehicle requiring enhanced due diligence"),  # noqa: E501
    ("Aston Martin", "DB12", 2024, "Luxury Sports", 245000.00, 1, "British luxury sports car with premium financing"),  # noqa: E501
    ("Porsche", "911 Turbo S", 2024, "Performance Sports", 220000.00, 1, "High-performance sports car requiring specialized assessment"),  # noqa: E501
    ("Mercedes-AMG", "GT 63 S", 2024, "Performance Luxury", 185000.00, 1, "High-performance luxury coupe with advanced features"),  # noqa: E501
    ("BMW", "M8 Competition", 2024, "Performance Luxury", 165000.00, 1, "High-performance luxury vehicle requiring additional verification"),  # noqa: E501
)


def _sql_literal(value: object) -> str:
    if isinstance(value, str):
        return "N'" + value.replace("'", "''") + "'"
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def _values_block(rows: tuple[tuple[object, ...], ...]) -> str:
    return ",\n".join(
        "    (" + ", ".join(_sql_literal(v) for v in row) + ")" for row in rows
    )


def render_database_script(logic_app_name: str) -> str:
    """Render the setup script for the Logic App's managed identity.

    Raises:
        ProvisioningError: If the name cannot be a SQL principal name.
    """
    if not re.match(VALID_PRINCIPAL_NAME_PATTERN, logic_app_name):
        raise ProvisioningError(f"Not a valid Logic App name: {logic_app_name!r}")

    return SQL_SCRIPT_TEMPLATE.substitute(
        principal=logic_app_name,
        customer_rows=_values_block(SAMPLE_CUSTOMERS),
        vehicle_rows=_values_block(SPECIAL_VEHICLES),
    )


def write_database_script(path: Path, logic_app_name: str) -> Path:
    """Render the script and write it next to the settings document.

    Raises:
        ProvisioningError: If the name cannot be a SQL principal name.
        DatabaseScriptError: If the file cannot be written.
    """
    script = render_database_script(logic_app_name)
    try:
        path.write_text(script, encoding="utf-8")
    except OSError as e:
        raise DatabaseScriptError(f"Cannot write database setup script {path}: {e}") from e
    logger.info(
        "Wrote database setup script",
        extra={"path": str(path), "principal": logic_app_name},
    )
    return path
