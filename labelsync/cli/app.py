"""Command-line interface for labelsync."""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import structlog
import typer
from rich.console import Console
from rich.markup import escape

from labelsync.cli.factory import ComponentFactory
from labelsync.cli.formatters import (
    AuditFormatter,
    ConfigFormatter,
    MapFormatter,
    ReportFormatter,
    TreeFormatter,
)
from labelsync.clients.exceptions import ConfigurationError, IncompleteMapError
from labelsync.config.loader import ConfigLoader, find_config_file
from labelsync.config.models import LabelsyncConfig, TenantConfig
from labelsync.core.models import Provider
from labelsync.core.reconciler import ReconcileReport, ReconcileStatus
from labelsync.templates.catalog import TemplateCatalog
from labelsync.templates.resolver import TemplateResolver

console = Console()
logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="labelsync",
    help="Provision and reconcile mailbox label trees for Gmail and Outlook tenants.",
    rich_markup_mode="rich",
)

# Set from the global options; None means "use the configuration file"
_log_overrides: dict = {"level": None, "format": None}


def setup_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    """Setup structured logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    logging.basicConfig(format="%(message)s", level=log_level.upper(), force=True)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)"
    ),
    log_format: Optional[str] = typer.Option(
        None, "--log-format", help="Log format (json or text)"
    ),
) -> None:
    """labelsync command line."""
    _log_overrides["level"] = log_level
    _log_overrides["format"] = log_format
    setup_logging(log_level or "WARNING", log_format or "text")


def load_configuration(config_file: Optional[Path] = None) -> LabelsyncConfig:
    """Load and validate configuration.

    Raises:
        typer.Exit: If configuration loading fails
    """
    if config_file is None:
        config_file = find_config_file()
        if config_file is None:
            console.print("[red]Error: No configuration file found[/red]")
            console.print("Please create a labelsync.yaml file or specify --config")
            raise typer.Exit(1)

    try:
        config = ConfigLoader().load_config(config_file)
    except ConfigurationError as e:
        console.print(f"[red]Error loading configuration: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    setup_logging(
        _log_overrides["level"] or config.logging.level.value,
        _log_overrides["format"] or config.logging.format.value,
    )
    console.print(f"[green]✓[/green] Loaded configuration from {config_file}")
    return config


def select_tenants(config: LabelsyncConfig, tenant_id: Optional[str]) -> List[TenantConfig]:
    """All tenants, or the one named on the command line."""
    if tenant_id is None:
        if not config.tenants:
            console.print("[yellow]No tenants configured[/yellow]")
            raise typer.Exit(1)
        return list(config.tenants)

    tenant = config.get_tenant(tenant_id)
    if tenant is None:
        console.print(f"[red]Unknown tenant: {tenant_id}[/red]")
        raise typer.Exit(1)
    return [tenant]


def select_providers(tenant: TenantConfig, provider: Optional[Provider]) -> List[Provider]:
    if provider is None:
        return list(tenant.providers)
    if provider not in tenant.providers:
        console.print(f"[red]Tenant {tenant.tenant_id} does not use {provider.value}[/red]")
        raise typer.Exit(1)
    return [provider]


@app.command()
def validate(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file"
    ),
) -> None:
    """Validate the configuration file and every template it uses."""
    console.print("[blue]Validating configuration...[/blue]")
    config = load_configuration(config_file)
    ConfigFormatter(console).format_config_summary(config)

    catalog = TemplateCatalog(config.template_directory)
    vertical_names = sorted({t.vertical for t in config.tenants}) or catalog.available_verticals()
    try:
        results = [catalog.validate_template(vertical) for vertical in vertical_names]
    except ConfigurationError as e:
        console.print(f"[red]Template error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    ConfigFormatter(console).format_template_validation(results)
    if not all(result.is_valid for result in results):
        raise typer.Exit(1)
    console.print("[green]✓ Configuration is valid[/green]")


@app.command()
def verticals(
    template_dir: Optional[Path] = typer.Option(
        None, "--templates", "-t", help="Template directory (defaults to packaged templates)"
    ),
) -> None:
    """List supported verticals and their aliases."""
    catalog = TemplateCatalog(template_dir)
    try:
        extensions = {ext.vertical: ext for ext in catalog.load_extensions().values()}
    except ConfigurationError as e:
        console.print(f"[red]Template error: {escape(str(e))}[/red]")
        raise typer.Exit(1)

    for name in sorted(extensions):
        aliases = ", ".join(extensions[name].aliases)
        console.print(f"[cyan]{name}[/cyan]" + (f"  [dim]({aliases})[/dim]" if aliases else ""))


@app.command()
def preview(
    vertical: str = typer.Argument(..., help="Vertical name or alias"),
    team: List[str] = typer.Option([], "--team", help="Team member name (repeatable, in order)"),
    vendor: List[str] = typer.Option([], "--vendor", help="Vendor name (repeatable, in order)"),
    template_dir: Optional[Path] = typer.Option(
        None, "--templates", "-t", help="Template directory (defaults to packaged templates)"
    ),
) -> None:
    """Show the desired label tree for a business profile."""
    resolver = TemplateResolver(TemplateCatalog(template_dir))
    try:
        tree = resolver.resolve(vertical, team, vendor)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)
    TreeFormatter(console).format_tree(tree)


@app.command()
def sync(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file"
    ),
    tenant_id: Optional[str] = typer.Option(None, "--tenant", help="Only this tenant"),
    provider: Optional[Provider] = typer.Option(None, "--provider", help="Only this provider"),
) -> None:
    """Refresh the record store from the providers without creating labels."""
    config = load_configuration(config_file)
    tenants = select_tenants(config, tenant_id)

    async def run_sync() -> bool:
        reconciler = ComponentFactory.create_reconciler(config)
        formatter = ReportFormatter(console)
        ok = True
        try:
            for tenant in tenants:
                profile = tenant.to_profile()
                for selected in select_providers(tenant, provider):
                    try:
                        formatter.format_sync_report(await reconciler.sync(profile, selected))
                    except Exception as e:
                        ok = False
                        console.print(f"[red]{tenant.tenant_id} on {selected.value}: {escape(str(e))}[/red]")
        finally:
            await reconciler.close()
        return ok

    if not asyncio.run(run_sync()):
        raise typer.Exit(1)


@app.command()
def reconcile(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file"
    ),
    tenant_id: Optional[str] = typer.Option(None, "--tenant", help="Only this tenant"),
    provider: Optional[Provider] = typer.Option(None, "--provider", help="Only this provider"),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would be created without making changes"
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the summary table"),
) -> None:
    """Sync, provision missing labels and build identifier maps."""
    config = load_configuration(config_file)
    tenants = select_tenants(config, tenant_id)

    async def run_reconcile() -> List[ReconcileReport]:
        reconciler = ComponentFactory.create_reconciler(config)
        try:
            if provider is None:
                return await reconciler.reconcile_all(
                    [tenant.to_profile() for tenant in tenants], dry_run=dry_run
                )
            reports = []
            for tenant in tenants:
                for selected in select_providers(tenant, provider):
                    reports.append(await reconciler.reconcile(tenant.to_profile(), selected, dry_run=dry_run))
            return reports
        finally:
            await reconciler.close()

    try:
        reports = asyncio.run(run_reconcile())
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)

    formatter = ReportFormatter(console)
    if not quiet:
        for report in reports:
            formatter.format_reconcile_report(report)
    formatter.format_reconcile_summary(reports)

    expected = ReconcileStatus.DRY_RUN if dry_run else ReconcileStatus.CONVERGED
    if len(reports) < sum(len(t.providers) for t in tenants) and provider is None:
        console.print("[red]Some tenants failed before reconciling; see logs[/red]")
        raise typer.Exit(1)
    if any(report.status != expected for report in reports):
        raise typer.Exit(1)


@app.command(name="map")
def show_map(
    tenant_id: str = typer.Argument(..., help="Tenant identifier"),
    provider: Provider = typer.Option(Provider.GMAIL, "--provider", help="Provider"),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file"
    ),
    env: bool = typer.Option(False, "--env", help="Print LABEL_* environment variables"),
) -> None:
    """Print the label path to provider ID map from the record store."""
    config = load_configuration(config_file)
    tenant = select_tenants(config, tenant_id)[0]
    select_providers(tenant, provider)

    reconciler = ComponentFactory.create_reconciler(config)
    try:
        identifier_map = reconciler.identifier_map(tenant.to_profile(), provider)
        formatter = MapFormatter(console)
        if env:
            formatter.format_environment(identifier_map.to_environment())
        else:
            formatter.format_map(identifier_map)
    except IncompleteMapError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        console.print("Run [bold]labelsync reconcile[/bold] first")
        raise typer.Exit(1)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)
    finally:
        asyncio.run(reconciler.close())


@app.command()
def history(
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to configuration file"
    ),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of runs to show"),
) -> None:
    """Show summaries of recent reconcile runs from the audit trail."""
    config = load_configuration(config_file)
    audit_logger = ComponentFactory.create_audit_logger(config)
    if audit_logger is None:
        console.print("[yellow]Audit logging is disabled in this configuration[/yellow]")
        raise typer.Exit(1)

    summaries = audit_logger.get_run_summaries(limit=limit)
    if not summaries:
        console.print("No reconcile runs recorded yet")
        return
    AuditFormatter(console).format_run_summaries(summaries)


if __name__ == "__main__":
    app()
