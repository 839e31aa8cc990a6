import argparse
import sys

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from ..config import ClusterConfig
from ..gcp import GCPProvider
from ..logger import logger
from ..orchestrator import Orchestrator, Phase, PhaseStateStore, PipelineResult, is_bastion
from ..reconciler import ConfirmDeletes, Reconciler
from ..schemas.actions import ReconcileAction, ReconcileReport
from ..schemas.base import ResourceKind


def make_provider(config: ClusterConfig) -> GCPProvider:
    return GCPProvider(config.project_id, operation_timeout=config.operation_timeout)


def make_confirm(console: Console, assume_yes: bool) -> ConfirmDeletes:
    """
    Shows pending deletes as a table and asks once. Without a terminal the
    answer is no unless --yes was given.
    """

    def confirm(actions: list[ReconcileAction]) -> bool:
        table = Table(title=f"{len(actions)} resource(s) will be deleted")
        table.add_column("Kind", style="cyan")
        table.add_column("Name", style="red")
        table.add_column("Cluster")
        table.add_column("Reason", style="dim")
        for action in actions:
            table.add_row(action.kind.value, action.name, action.spec.cluster or "", action.reason)
        console.print(table)

        if assume_yes:
            return True
        if not sys.stdin.isatty():
            console.print("[yellow]Not a terminal; skipping deletes (use --yes).[/yellow]")
            return False
        return Confirm.ask("Proceed with these deletions?", console=console)

    return confirm


def print_report(console: Console, report: ReconcileReport) -> None:
    style = "green" if report.converged else "yellow"
    console.print(f"[{style}]{report.cluster}: {report.summary()}[/{style}]")
    for failure in report.failed:
        console.print(f"  [red]✗[/red] {failure.describe()}")
    for action in report.blocked:
        console.print(f"  [yellow]•[/yellow] blocked: {action.describe()}")
    for action in report.declined:
        console.print(f"  [dim]•[/dim] declined: {action.describe()}")


def print_result(console: Console, result: PipelineResult) -> int:
    if result.ready:
        console.print("[bold green]Cluster is Ready.[/bold green]")
        return 0
    console.print(f"[bold red]{result.describe()}[/bold red]")
    if result.error is not None:
        console.print(f"[dim]{result.error.describe()}[/dim]")
    return 1


def _orchestrator(args: argparse.Namespace, config: ClusterConfig, console: Console) -> Orchestrator:
    return Orchestrator(
        config,
        make_provider(config),
        confirm=make_confirm(console, args.yes),
    )


def run_create(args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console) -> int:
    """Creates the cluster, resuming from the last completed phase."""
    log_console.print(f"Creating cluster [bold]{config.cluster_name}[/bold] in {config.zone}")
    result = _orchestrator(args, config, log_console).run(resume=True)
    return print_result(out_console, result)


def run_apply(args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console) -> int:
    """Re-applies the configuration through every phase."""
    log_console.print(f"Applying configuration to [bold]{config.cluster_name}[/bold]")
    result = _orchestrator(args, config, log_console).run(resume=False)
    return print_result(out_console, result)


def run_single_phase(
    args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console
) -> int:
    phase = Phase(args.phase)
    log_console.print(f"Running phase {int(phase)} ({phase.label}) for {config.cluster_name}")
    result = _orchestrator(args, config, log_console).run_phase(phase)
    if result.ready:
        out_console.print(f"[green]Phase {phase.label} complete.[/green]")
        return 0
    return print_result(out_console, result)


def run_destroy(args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console) -> int:
    """Deletes every resource labeled with this cluster. Images are kept."""
    reconciler = Reconciler(make_provider(config), config.cluster_name, max_workers=config.max_parallel)
    report = reconciler.reconcile([], confirm=make_confirm(log_console, args.yes))
    print_report(out_console, report)
    if not report.planned:
        out_console.print(f"No resources labeled cluster={config.cluster_name} remain.")
    if report.converged:
        PhaseStateStore(config).clear()
        logger.info("Phase marker cleared")
        return 0
    return 1


def run_recreate_bastion(
    args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console
) -> int:
    provider = make_provider(config)
    confirm = make_confirm(log_console, args.yes)
    reconciler = Reconciler(provider, config.cluster_name, max_workers=config.max_parallel)

    report = reconciler.reconcile([], kinds=[ResourceKind.INSTANCE], selector=is_bastion, confirm=confirm)
    print_report(out_console, report)
    if not report.converged:
        return 1

    orchestrator = Orchestrator(config, provider, reconciler=reconciler, confirm=confirm)
    result = orchestrator.run_phase(Phase.BASTION_SETUP)
    if result.ready:
        out_console.print(f"[green]Bastion {config.bastion_name} recreated.[/green]")
        return 0
    return print_result(out_console, result)
