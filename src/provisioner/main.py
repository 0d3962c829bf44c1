"""Deployment orchestration for the AI Loan Agent sample.

One invocation runs, in order:

1. Resource provisioner (probe, then create or reuse, step by step)
2. Access binder (permission layer for the Logic App identity)
3. Settings materializer (always, even after a partial run)
4. Database script rendering (manual Query Editor step)

No-op on a converged environment: a second run reuses every resource and
rewrites the same settings.

EXIT CODES:
- 0: success; warnings from optional steps do not change it
- 1: a required step, an access grant or the settings write failed
  (or an optional step failed under ``--strict``)
- 2: configuration or usage error, nothing was touched
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from azure.core.credentials import TokenCredential

from .access import AccessBinder, BindingReport
from .config import Config
from .context import DeploymentContext
from .credentials import PrincipalInfo, get_deployment_credential, resolve_signed_in_principal
from .database_script import write_database_script
from .errors import AccessBindingError, ProvisioningError, RequiredStepFailedError
from .gateway import AzureGateway, CloudGateway
from .naming import NameResolver
from .prober import ExistenceProber
from .provisioner import LOGIC_APP, ResourceProvisioner, RunResult, build_plan
from .settings import MaterializeResult, collect_settings, materialize

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

_LOG_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _LOG_RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging on stderr.

    stdout is left to the human-readable progress and summary.
    """
    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


@dataclass
class DeploymentReport:
    """Everything one invocation produced, for the summary and exit code."""

    run: RunResult | None = None
    binding: BindingReport | None = None
    settings: MaterializeResult | None = None
    sql_script_path: Path | None = None
    errors: list[ProvisioningError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def exit_code(self, *, strict: bool = False) -> int:
        if self.errors:
            return EXIT_FAILURE
        if strict and self.warnings:
            return EXIT_FAILURE
        return EXIT_SUCCESS


def create_context(
    config: Config,
    *,
    credential: TokenCredential | None = None,
    gateway: CloudGateway | None = None,
    principal: PrincipalInfo | None = None,
) -> DeploymentContext:
    """Wire the components for one invocation.

    Tests pass a fake ``gateway`` and ``principal``; otherwise both come
    from the signed-in Azure identity.
    """
    if gateway is None or principal is None:
        credential = credential or get_deployment_credential()
        if principal is None:
            principal = resolve_signed_in_principal(credential)
        if gateway is None:
            gateway = AzureGateway(
                credential,
                config.subscription_id,
                operation_timeout_seconds=config.operation_timeout_seconds,
            )

    return DeploymentContext(
        config=config,
        gateway=gateway,
        resolver=NameResolver(config.seed, config.project_name),
        prober=ExistenceProber(gateway, config.resource_group, config.retry),
        principal=principal,
    )


def deploy(ctx: DeploymentContext) -> DeploymentReport:
    """Provision, bind, and materialize settings."""
    config = ctx.config
    report = DeploymentReport()
    principal = _require_principal(ctx)

    logger.info(
        "Starting deployment",
        extra={
            "subscription_id": config.subscription_id,
            "resource_group": config.resource_group,
            "location": config.location,
            "project_name": config.project_name,
        },
    )

    provisioner = ResourceProvisioner(ctx)
    started = datetime.now(UTC)
    try:
        report.run = provisioner.run(build_plan(config, principal))
        report.warnings.extend(report.run.warnings)
    except RequiredStepFailedError as e:
        # Partial records still drive the summary and the settings document
        report.run = RunResult(records=e.records, start_time=started)
        report.errors.append(e)

    if ctx.succeeded(LOGIC_APP):
        try:
            report.binding = AccessBinder(ctx).bind_logic_app()
        except ProvisioningError as e:
            report.errors.append(e)

    _write_settings(ctx, report)

    if ctx.succeeded(LOGIC_APP):
        try:
            report.sql_script_path = write_database_script(
                config.sql_script_path, ctx.physical_name_of(LOGIC_APP)
            )
        except ProvisioningError as e:
            report.errors.append(e)

    logger.info(
        "Deployment finished",
        extra={
            "errors": len(report.errors),
            "warnings": len(report.warnings),
            "duration_seconds": round(report.run.duration_seconds, 1) if report.run else None,
            "exit_code": report.exit_code(strict=config.strict),
        },
    )
    return report


def discover(ctx: DeploymentContext) -> RunResult:
    """Populate the context with already-deployed resources, creating nothing."""
    return ResourceProvisioner(ctx).discover(build_plan(ctx.config, _require_principal(ctx)))


def grant_access(ctx: DeploymentContext) -> DeploymentReport:
    """Re-run the permission layer against an existing deployment."""
    report = DeploymentReport(run=discover(ctx))
    try:
        report.binding = AccessBinder(ctx).bind_logic_app()
    except ProvisioningError as e:
        report.errors.append(e)
    return report


def verify_access(ctx: DeploymentContext) -> DeploymentReport:
    """Report both access layers of every connection without changing them."""
    report = DeploymentReport(run=discover(ctx))
    try:
        report.binding = AccessBinder(ctx).verify_logic_app()
    except ProvisioningError as e:
        report.errors.append(e)
        return report

    missing_permissions = [
        f"{v.connection_name}: no access policy for the Logic App identity"
        for v in report.binding.connections
        if not v.permission_granted
    ]
    if missing_permissions:
        report.errors.append(AccessBindingError(missing_permissions))

    for verification in report.binding.connections:
        if not verification.authorization.authorized:
            report.warnings.append(
                f"{verification.connection_name}: {verification.authorization.remediation}"
            )
    return report


def refresh_settings(ctx: DeploymentContext) -> DeploymentReport:
    """Re-materialize the settings document from the current deployment."""
    report = DeploymentReport(run=discover(ctx))
    _write_settings(ctx, report)
    return report


def _require_principal(ctx: DeploymentContext) -> PrincipalInfo:
    if ctx.principal is None:
        raise ProvisioningError(
            "The deployment identity was not resolved",
            remediation="Run 'az login' (and 'az account set --subscription <id>') and retry.",
        )
    return ctx.principal


def _write_settings(ctx: DeploymentContext, report: DeploymentReport) -> None:
    try:
        report.settings = materialize(ctx.config.settings_path, collect_settings(ctx))
    except ProvisioningError as e:
        report.errors.append(e)
