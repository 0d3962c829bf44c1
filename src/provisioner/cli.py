"""AI Loan Agent deployment CLI (loan-agent-deploy).

Usage:
    loan-agent-deploy deploy -g rg-loan-agent -l eastus2 -p loanagent
    loan-agent-deploy names -g rg-loan-agent -p loanagent
    loan-agent-deploy access grant -g rg-loan-agent -l eastus2 -p loanagent
    loan-agent-deploy access verify -g rg-loan-agent -l eastus2 -p loanagent
    loan-agent-deploy settings refresh -g rg-loan-agent -l eastus2 -p loanagent
    loan-agent-deploy settings check
    loan-agent-deploy sql-script -g rg-loan-agent -p loanagent

Option precedence: command line, then ``--config-file``, then environment.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .access import BindingReport
from .config import (
    DEFAULT_SETTINGS_PATH,
    Config,
    ConfigurationError,
    load_config_file,
    parse_tags,
)
from .database_script import DatabaseScriptError, write_database_script
from .errors import ProvisioningError
from .main import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    EXIT_USAGE,
    DeploymentReport,
    create_context,
    deploy,
    grant_access,
    refresh_settings,
    setup_logging,
    verify_access,
)
from .models import Outcome, ResourceKind
from .naming import NAMING_RULES, NameResolver
from .settings import missing_settings

OUTCOME_COLORS = {
    Outcome.CREATED: "green",
    Outcome.REUSED: "cyan",
    Outcome.FAILED: "red",
    Outcome.SKIPPED: "yellow",
}


def deployment_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that talks to Azure."""
    options = [
        click.option("--subscription", "-s", "subscription_id", help="Azure subscription ID"),
        click.option("--resource-group", "-g", "resource_group", help="Target resource group"),
        click.option("--location", "-l", "location", help="Azure region"),
        click.option("--project-name", "-p", "project_name", help="Readable name prefix"),
        click.option(
            "--existing-apim", "existing_apim_name", help="Reuse this API Management service"
        ),
        click.option("--tag", "tags", multiple=True, help="Resource tag as key=value"),
        click.option(
            "--config-file",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            help="YAML parameters file",
        ),
        click.option(
            "--settings-path",
            type=click.Path(dir_okay=False, path_type=Path),
            help="Settings document (default: local.settings.json)",
        ),
        click.option("--max-attempts", type=int, help="Attempts per provider call"),
        click.option("--base-delay", "base_delay_seconds", type=float, help="First retry delay"),
        click.option(
            "--allow-timestamp-names",
            is_flag=True,
            default=None,
            help="Fall back to timestamp-suffixed names when every hashed name is taken",
        ),
        click.option("--verbose", "-v", is_flag=True, help="Debug logging"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_config(
    *, config_file: Path | None, tags: tuple[str, ...], **options: Any
) -> Config:
    """Merge config file, environment and command-line options.

    Raises:
        ConfigurationError: If the merged configuration is invalid.
    """
    overrides: dict[str, Any] = load_config_file(config_file) if config_file else {}
    if tags:
        overrides["tags"] = {**overrides.get("tags", {}), **parse_tags(tags)}
    overrides.update({k: v for k, v in options.items() if v is not None})
    return Config.from_env(**overrides)


def _load_config_or_exit(**options: Any) -> Config:
    verbose = options.pop("verbose", False)
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    try:
        return build_config(**options)
    except ConfigurationError as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        sys.exit(EXIT_USAGE)


def _context_or_exit(config: Config) -> Any:
    try:
        return create_context(config)
    except ProvisioningError as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        click.echo(f"  Remediation: {e.remediation}", err=True)
        sys.exit(EXIT_USAGE)


# =============================================================================
# Output
# =============================================================================


def print_report(report: DeploymentReport) -> None:
    """Print the human-readable run summary."""
    if report.run is not None and report.run.records:
        click.echo("")
        click.secho("Resources", bold=True)
        for record in report.run.records:
            label = record.outcome.value.ljust(8)
            click.secho(f"  {label}", fg=OUTCOME_COLORS[record.outcome], nl=False)
            name = record.physical_name or record.logical_name
            click.echo(f" {record.resource_type} {name}")
            if record.message and record.outcome in (Outcome.FAILED, Outcome.SKIPPED):
                click.echo(f"           {record.message}")
        click.echo(
            f"  {len(report.run.records)} resource(s) in {report.run.duration_seconds:.1f}s"
        )

    if report.binding is not None:
        _print_binding(report.binding)

    if report.settings is not None:
        click.echo("")
        click.secho(f"Settings written to {report.settings.path}", bold=True)
        if report.settings.placeholders:
            click.secho(
                "  Update manually: " + ", ".join(report.settings.placeholders), fg="yellow"
            )

    if report.sql_script_path is not None:
        click.echo("")
        click.secho("Next step", bold=True)
        click.echo(
            f"  Run {report.sql_script_path} in the Azure Portal Query Editor "
            "as the SQL Entra ID admin."
        )

    for warning in report.warnings:
        click.secho(f"⚠ {warning}", fg="yellow")

    for error in report.errors:
        click.secho(f"✗ {error}", fg="red", err=True)
        click.echo(f"  Remediation: {error.remediation}", err=True)


def _print_binding(binding: BindingReport) -> None:
    click.echo("")
    click.secho(f"Logic App identity {binding.principal_id}", bold=True)
    if binding.grants:
        click.echo(
            f"  Permission layer: {len(binding.grants)} grant(s), "
            f"{binding.created_count} created"
        )
    for connection in binding.connections:
        permission = "granted" if connection.permission_granted else "MISSING"
        click.echo(
            f"  {connection.connection_name}: access policy {permission}, "
            f"authorization {connection.authorization.status}"
        )
    for pending in binding.pending_consent:
        click.secho(f"  Manual step: {pending.remediation}", fg="yellow")


def _finish(report: DeploymentReport, *, strict: bool = False) -> None:
    print_report(report)
    code = report.exit_code(strict=strict)
    if code == EXIT_SUCCESS:
        click.secho("✓ Done", fg="green")
    sys.exit(code)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="loan-agent-deploy")
def cli() -> None:
    """Idempotent Azure deployment for the AI Loan Agent sample.

    \b
    Quick Start:
        az login
        loan-agent-deploy deploy -g rg-loan-agent -l eastus2 -p loanagent
    """
    pass


@cli.command("deploy")
@deployment_options
@click.option("--strict", is_flag=True, default=None, help="Fail when an optional step fails")
def deploy_command(**options: Any) -> None:
    """Provision everything, bind access and write the settings document."""
    config = _load_config_or_exit(**options)
    ctx = _context_or_exit(config)
    click.echo(
        f"Deploying '{config.project_name}' into {config.resource_group} ({config.location})..."
    )
    _finish(deploy(ctx), strict=config.strict)


@cli.command("names")
@click.option("--subscription", "-s", "subscription_id", help="Azure subscription ID")
@click.option("--resource-group", "-g", "resource_group", help="Target resource group")
@click.option("--project-name", "-p", "project_name", help="Readable name prefix")
@click.option("--all", "show_all", is_flag=True, help="Also list the fallback digest slices")
def names_command(
    subscription_id: str | None,
    resource_group: str | None,
    project_name: str | None,
    show_all: bool,
) -> None:
    """Print the deterministic resource names without calling Azure."""
    # Location is irrelevant to naming; any valid region satisfies validation
    config = _load_config_or_exit(
        config_file=None,
        tags=(),
        subscription_id=subscription_id,
        resource_group=resource_group,
        project_name=project_name,
        location="eastus",
    )
    resolver = NameResolver(config.seed, config.project_name)
    click.echo(f"Seed: {config.seed}")
    for kind in NAMING_RULES:
        if show_all:
            candidates = [c.physical_name for c in resolver.candidates(kind, kind.value)]
            click.echo(f"  {kind.value}: {', '.join(candidates)}")
        else:
            click.echo(f"  {kind.value}: {resolver.resolve(kind, kind.value).physical_name}")


@cli.group()
def access() -> None:
    """Logic App access: permission layer grants and verification."""
    pass


@access.command("grant")
@deployment_options
def access_grant(**options: Any) -> None:
    """Re-create any missing role assignment or connection access policy."""
    config = _load_config_or_exit(**options)
    _finish(grant_access(_context_or_exit(config)))


@access.command("verify")
@deployment_options
def access_verify(**options: Any) -> None:
    """Report the permission and authorization layers of every connection."""
    config = _load_config_or_exit(**options)
    _finish(verify_access(_context_or_exit(config)))


@cli.group()
def settings() -> None:
    """Settings document: refresh and completeness check."""
    pass


@settings.command("refresh")
@deployment_options
def settings_refresh(**options: Any) -> None:
    """Re-read the deployment and merge fresh values into the settings document."""
    config = _load_config_or_exit(**options)
    _finish(refresh_settings(_context_or_exit(config)))


@settings.command("check")
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML parameters file",
)
@click.option(
    "--settings-path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Settings document (default: SETTINGS_PATH or local.settings.json)",
)
def settings_check(config_file: Path | None, settings_path: Path | None) -> None:
    """Exit non-zero if any required setting is absent or a placeholder."""
    try:
        if settings_path is None:
            file_values = load_config_file(config_file) if config_file else {}
            settings_path = Path(
                file_values.get("settings_path")
                or os.environ.get("SETTINGS_PATH", DEFAULT_SETTINGS_PATH)
            )
    except ConfigurationError as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        sys.exit(EXIT_USAGE)

    try:
        missing = missing_settings(settings_path)
    except ProvisioningError as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        sys.exit(EXIT_FAILURE)

    if not missing:
        click.secho(f"✓ {settings_path} is complete", fg="green")
        sys.exit(EXIT_SUCCESS)

    click.secho(f"✗ {len(missing)} setting(s) need a value in {settings_path}:", fg="red")
    for key in missing:
        click.echo(f"  - {key}")
    sys.exit(EXIT_FAILURE)


@cli.command("sql-script")
@click.option("--subscription", "-s", "subscription_id", help="Azure subscription ID")
@click.option("--resource-group", "-g", "resource_group", help="Target resource group")
@click.option("--project-name", "-p", "project_name", help="Readable name prefix")
@click.option("--logic-app-name", help="Override the derived Logic App name")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Output file (default: database-setup.generated.sql)",
)
def sql_script_command(
    subscription_id: str | None,
    resource_group: str | None,
    project_name: str | None,
    logic_app_name: str | None,
    output: Path | None,
) -> None:
    """Render the database setup script for the Logic App identity."""
    config = _load_config_or_exit(
        config_file=None,
        tags=(),
        subscription_id=subscription_id,
        resource_group=resource_group,
        project_name=project_name,
        location="eastus",
        sql_script_path=output,
    )
    if logic_app_name is None:
        resolver = NameResolver(config.seed, config.project_name)
        logic_app_name = resolver.resolve(ResourceKind.LOGIC_APP, "logicApp").physical_name

    try:
        path = write_database_script(config.sql_script_path, logic_app_name)
    except DatabaseScriptError as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        click.echo(f"  Remediation: {e.remediation}", err=True)
        sys.exit(EXIT_FAILURE)
    except ProvisioningError as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        sys.exit(EXIT_USAGE)
    click.secho(f"✓ Wrote {path} for {logic_app_name}", fg="green")


def main() -> None:
    """Entry point for the loan-agent-deploy console script."""
    cli()


if __name__ == "__main__":
    main()
