"""Output formatters for CLI commands."""

from typing import Dict, List

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from labelsync.audit.logger import AuditSummary
from labelsync.config.models import LabelsyncConfig
from labelsync.core.identifier_map import IdentifierMap
from labelsync.core.models import DesiredStateTree
from labelsync.core.provisioner import ItemStatus
from labelsync.core.reconciler import ReconcileReport, ReconcileStatus
from labelsync.core.synchronizer import SyncReport
from labelsync.templates.catalog import TemplateValidation

STATUS_STYLES = {
    ItemStatus.CREATED: "green",
    ItemStatus.ADOPTED: "cyan",
    ItemStatus.MATCHED: "dim",
    ItemStatus.PLANNED: "yellow",
    ItemStatus.FAILED: "red",
    ItemStatus.BLOCKED: "magenta",
    ItemStatus.ABORTED: "red",
    ItemStatus.TIMED_OUT: "red",
}

RUN_STYLES = {
    ReconcileStatus.CONVERGED: "green",
    ReconcileStatus.DRY_RUN: "yellow",
    ReconcileStatus.PARTIAL: "yellow",
    ReconcileStatus.SYNC_FAILED: "red",
}


class ConfigFormatter:
    """Formats configuration for display."""

    def __init__(self, console: Console):
        self.console = console

    def format_config_summary(self, config: LabelsyncConfig) -> None:
        table = Table(title="Configuration Summary", show_header=True)
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        providers = [p for p in ("gmail", "outlook") if getattr(config.providers, p).enabled]
        table.add_row("Providers", ", ".join(providers) or "none")
        table.add_row("Tenants", str(len(config.tenants)))
        table.add_row("Store", f"{config.store.backend} ({config.store.state_directory})")
        table.add_row("Max concurrency", str(config.reconcile.max_concurrency))
        table.add_row("Max attempts", str(config.reconcile.max_attempts))
        table.add_row("Run timeout", str(config.reconcile.run_timeout_seconds or "none"))
        table.add_row("Audit", str(config.audit.audit_directory) if config.audit.enabled else "disabled")
        self.console.print(table)

    def format_template_validation(self, results: List[TemplateValidation]) -> None:
        table = Table(title="Template Integrity", show_header=True)
        table.add_column("Vertical", style="cyan")
        table.add_column("Status")
        table.add_column("Details")
        for result in results:
            status = "[green]valid[/green]" if result.is_valid else "[red]invalid[/red]"
            details = "; ".join(result.errors + result.warnings) or "-"
            table.add_row(result.vertical, status, details)
        self.console.print(table)


class TreeFormatter:
    """Formats desired state trees."""

    def __init__(self, console: Console):
        self.console = console

    def format_tree(self, tree: DesiredStateTree) -> None:
        table = Table(title=f"Desired labels: {tree.vertical}", show_header=True)
        table.add_column("#", justify="right", style="dim")
        table.add_column("Label")
        table.add_column("Colour")
        table.add_column("Intent")
        table.add_column("Critical", justify="center")

        for spec in tree:
            indent = "  " * spec.depth
            colour = f"[on {spec.color_tag}]  [/] {spec.color_tag}" if spec.color_tag else "-"
            table.add_row(
                str(spec.ordinal),
                f"{indent}{spec.name}",
                colour,
                spec.intent_tag or "-",
                "✓" if spec.critical else "",
            )
        self.console.print(table)


class ReportFormatter:
    """Formats sync and reconcile reports."""

    def __init__(self, console: Console):
        self.console = console

    def format_sync_report(self, report: SyncReport) -> None:
        self.console.print(
            f"[bold]{report.tenant_id}[/bold] on {report.provider}: "
            f"{report.snapshot_size} labels seen, {report.upserted} upserted, "
            f"{report.restored} restored, {report.marked_deleted} marked deleted"
        )

    def format_reconcile_report(self, report: ReconcileReport, show_items: bool = True) -> None:
        style = RUN_STYLES[report.status]
        self.console.print()
        self.console.print(
            f"[bold]{report.tenant_id}[/bold] on {report.provider} "
            f"({report.vertical}): [{style}]{report.status.value}[/{style}] "
            f"in {report.duration_seconds:.2f}s"
        )
        if report.sync:
            self.format_sync_report(report.sync)

        if report.provision and show_items:
            table = Table(show_header=True)
            table.add_column("Label")
            table.add_column("Outcome")
            table.add_column("Provider ID", style="dim")
            table.add_column("Attempts", justify="right")
            table.add_column("Error")
            for outcome in report.provision.outcomes:
                item_style = STATUS_STYLES[outcome.status]
                table.add_row(
                    outcome.path,
                    f"[{item_style}]{outcome.status.value}[/{item_style}]",
                    outcome.provider_id or "-",
                    str(outcome.attempts),
                    escape(outcome.error or ""),
                )
            self.console.print(table)

        if report.error:
            self.console.print(f"[yellow]{escape(report.error)}[/yellow]")

    def format_reconcile_summary(self, reports: List[ReconcileReport]) -> None:
        table = Table(title="Reconcile Summary", show_header=True)
        table.add_column("Tenant", style="cyan")
        table.add_column("Provider")
        table.add_column("Status")
        table.add_column("Succeeded", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Blocked", justify="right")
        for report in reports:
            style = RUN_STYLES[report.status]
            table.add_row(
                report.tenant_id,
                report.provider,
                f"[{style}]{report.status.value}[/{style}]",
                str(report.succeeded),
                str(report.failed),
                str(report.blocked),
            )
        self.console.print(table)


class AuditFormatter:
    """Formats audit run summaries."""

    def __init__(self, console: Console):
        self.console = console

    def format_run_summaries(self, summaries: List[AuditSummary]) -> None:
        table = Table(title="Recent Runs", show_header=True)
        table.add_column("Run ID", style="dim", overflow="fold")
        table.add_column("Tenant", style="cyan", no_wrap=True)
        table.add_column("Provider")
        table.add_column("Status", no_wrap=True)
        table.add_column("Started")
        table.add_column("Outcomes")
        table.add_column("Success", justify="right")
        for summary in summaries:
            outcomes = ", ".join(f"{name}={count}" for name, count in sorted(summary.outcomes.items()))
            table.add_row(
                summary.run_id,
                summary.tenant_id,
                summary.provider,
                summary.status or "running",
                summary.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                outcomes or "-",
                f"{summary.get_success_rate():.0f}%",
            )
        self.console.print(table)


class MapFormatter:
    """Formats identifier maps."""

    def __init__(self, console: Console):
        self.console = console

    def format_map(self, identifier_map: IdentifierMap) -> None:
        table = Table(title=f"{identifier_map.tenant_id} on {identifier_map.provider}", show_header=True)
        table.add_column("Label path")
        table.add_column("Provider ID", style="cyan")
        for path, provider_id in identifier_map.entries.items():
            table.add_row(path, provider_id)
        self.console.print(table)

    def format_environment(self, env: Dict[str, str]) -> None:
        for key, value in env.items():
            self.console.print(f"{key}={value}", markup=False, highlight=False)
