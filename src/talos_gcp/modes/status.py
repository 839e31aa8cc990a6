import argparse
import json
from datetime import datetime, timezone
from typing import Any

import humanize
from rich.console import Console
from rich.table import Table

from ..bastion import bastion_ready
from ..compiler import compile_desired_state
from ..config import ClusterConfig
from ..logger import logger
from ..orchestrator import Phase, PhaseStateStore, is_bastion
from ..provider import Provider
from ..reconciler import Reconciler
from ..schemas.base import KIND_ORDER, RemoteSnapshot
from ..schemas.compute import InstanceSpec
from .lifecycle import make_provider


def _age(created: datetime | None) -> str:
    if created is None:
        return "-"
    return humanize.naturaltime(datetime.now(timezone.utc) - created)


def health(nodes: list[InstanceSpec]) -> str:
    """Online when every node runs, Offline when none does."""
    if not nodes:
        return "Offline"
    running = sum(1 for n in nodes if n.status == "RUNNING")
    if running == len(nodes):
        return "Online"
    if running == 0:
        return "Offline"
    return "Degraded"


def collect_status(config: ClusterConfig, provider: Provider) -> dict[str, Any]:
    snapshot: RemoteSnapshot = provider.read(config.cluster_name)
    instances = [s for s in snapshot.resources if isinstance(s, InstanceSpec)]
    nodes = [i for i in instances if not is_bastion(i)]
    state = PhaseStateStore(config).load()

    schedule = None
    if config.work_hours:
        wh = config.work_hours
        schedule = f"{wh.start}-{wh.stop} {wh.days} ({wh.timezone})"

    return {
        "cluster": config.cluster_name,
        "project": config.project_id,
        "zone": config.zone,
        "health": health(nodes),
        "phase": Phase(state.completed).label if state.completed else "none",
        "failed_phase": Phase(state.failed_phase).label if state.failed_phase else None,
        "last_error": state.last_error,
        "schedule": schedule,
        "resources": {
            kind.value: sorted(r.name for r in snapshot.of_kind(kind))
            for kind in KIND_ORDER
            if snapshot.of_kind(kind)
        },
        "instances": [
            {
                "name": i.name,
                "role": i.role,
                "pool": i.pool,
                "status": i.status,
                "internal_ip": i.internal_ip,
                "created_at": i.created_at.isoformat() if i.created_at else None,
                "age": _age(i.created_at),
            }
            for i in sorted(instances, key=lambda i: (i.pool, i.index or 0, i.name))
        ],
    }


def run_status(args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console) -> int:
    status = collect_status(config, make_provider(config))

    if args.json:
        print(json.dumps(status, indent=2))
        return 0

    colors = {"Online": "green", "Degraded": "yellow", "Offline": "red"}
    color = colors[status["health"]]
    out_console.print(
        f"[bold]{status['cluster']}[/bold] ({status['project']}/{status['zone']}): "
        f"[{color}]{status['health']}[/{color}]"
    )
    out_console.print(f"Last completed phase: {status['phase']}")
    if status["failed_phase"]:
        out_console.print(f"[red]Failed in {status['failed_phase']}: {status['last_error']}[/red]")
    out_console.print(f"Schedule: {status['schedule'] or 'always on'}")

    table = Table(title="Instances")
    table.add_column("Name", style="cyan")
    table.add_column("Role")
    table.add_column("Status")
    table.add_column("Internal IP")
    table.add_column("Age", justify="right")
    for inst in status["instances"]:
        st = inst["status"] or "UNKNOWN"
        st_style = "green" if st == "RUNNING" else "yellow"
        table.add_row(
            inst["name"],
            inst["role"],
            f"[{st_style}]{st}[/{st_style}]",
            inst["internal_ip"] or "-",
            inst["age"],
        )
    out_console.print(table)

    summary = Table(title="Resources")
    summary.add_column("Kind", style="cyan")
    summary.add_column("Count", justify="right")
    summary.add_column("Names", style="dim")
    for kind, names in status["resources"].items():
        summary.add_row(kind, str(len(names)), ", ".join(names))
    out_console.print(summary)
    return 0


def run_diagnose(args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console) -> int:
    """Read-only health check: plan drift, local artifacts and bastion reachability."""
    problems = 0
    provider = make_provider(config)

    # 1. Drift
    actions = Reconciler(provider, config.cluster_name).plan(compile_desired_state(config))
    if actions:
        table = Table(title="Out of sync")
        table.add_column("Action", style="yellow")
        table.add_column("Kind", style="cyan")
        table.add_column("Name")
        table.add_column("Reason", style="dim")
        for action in actions:
            table.add_row(action.action.value, action.kind.value, action.name, action.reason)
        out_console.print(table)
        problems += len(actions)
    else:
        out_console.print("[green]All resources match the configuration.[/green]")

    # 2. Local artifacts
    for artifact in ("talosconfig", "kubeconfig"):
        path = config.output_dir / artifact
        if path.is_file():
            out_console.print(f"[green]✓[/green] {path}")
        else:
            out_console.print(f"[yellow]✗[/yellow] {path} missing (run get-credentials)")
            problems += 1

    # 3. Bastion
    log_console.print(f"Checking bastion {config.bastion_name} over IAP...")
    if bastion_ready(config):
        out_console.print(f"[green]✓[/green] bastion {config.bastion_name} reachable")
    else:
        logger.debug("Bastion readiness probe failed")
        out_console.print(f"[red]✗[/red] bastion {config.bastion_name} not reachable")
        problems += 1

    return 0 if problems == 0 else 1
