import argparse
import json
from dataclasses import asdict, dataclass
from pathlib import Path

import pandas as pd
from rich.console import Console
from rich.table import Table

from ..compiler import compile_desired_state
from ..config import ClusterConfig, load_known_configs
from ..errors import ConfigurationError
from ..gcp import GCPProvider
from ..logger import logger
from ..provider import Provider
from ..reconciler import ConfirmDeletes, Reconciler
from ..schemas.actions import ReconcileReport
from ..schemas.base import KIND_ORDER, ResourceSpec
from .lifecycle import make_confirm, make_provider, print_report

NOT_DESIRED = "not in the configured desired state"
UNTRACKED = "cluster not tracked by any config file"


@dataclass
class Orphan:
    kind: str
    name: str
    cluster: str
    reason: str


class OrphanHunter:
    """
    Finds labeled resources the compiler no longer lists.

    ``known`` maps cluster names to their configs. A cluster seen in the
    project without an entry there is untracked and all of its resources are
    candidates.
    """

    def __init__(self, provider: Provider, known: dict[str, ClusterConfig]):
        self.provider = provider
        self.known = known
        self.found: dict[str, list[ResourceSpec]] = {}
        self.orphans: list[Orphan] = []

    def _desired_names(self, config: ClusterConfig) -> set[tuple[str, str]]:
        return {(s.kind.value, s.name) for s in compile_desired_state(config)}

    def hunt(self, cluster: str | None = None) -> list[Orphan]:
        """``cluster`` limits the sweep to one label value; None sweeps them all."""
        self.found, self.orphans = {}, []
        snapshot = self.provider.read(cluster)
        clusters = {cluster} if cluster else snapshot.clusters()

        for name in sorted(clusters):
            resources = snapshot.for_cluster(name)
            config = self.known.get(name)
            if config is None:
                reason, residual = UNTRACKED, resources
            else:
                try:
                    desired = self._desired_names(config)
                except ConfigurationError as e:
                    logger.warning(f"Skipping cluster {name}: its config does not compile ({e})")
                    continue
                reason = NOT_DESIRED
                residual = [r for r in resources if (r.kind.value, r.name) not in desired]

            if residual:
                self.found[name] = residual
                self.orphans += [Orphan(r.kind.value, r.name, name, reason) for r in residual]

        order = [k.value for k in KIND_ORDER]
        self.orphans.sort(key=lambda o: (o.cluster, order.index(o.kind), o.name))
        return self.orphans

    def clean(self, confirm: ConfirmDeletes | None = None, max_workers: int = 8) -> list[ReconcileReport]:
        """Deletes exactly the residual set found by hunt(), one cluster at a time."""
        reports = []
        for cluster, specs in self.found.items():
            reconciler = Reconciler(self.provider, cluster, max_workers=max_workers)
            reports.append(reconciler.delete_resources(specs, confirm=confirm))
        return reports


def _known_configs(args: argparse.Namespace, config: ClusterConfig | None) -> dict[str, ClusterConfig]:
    known = load_known_configs(args.clusters_dir) if args.all else {}
    if config is not None:
        known[config.cluster_name] = config
    return known


def run_orphans(
    args: argparse.Namespace,
    config: ClusterConfig | None,
    log_console: Console,
    out_console: Console,
    provider: Provider | None = None,
) -> int:
    if config is None and not args.project_id:
        raise ConfigurationError("orphans needs a config file or --project-id")
    project_id = args.project_id or config.project_id  # type: ignore[union-attr]

    # 1. Scope
    known = _known_configs(args, config)
    if args.cluster:
        scope = args.cluster
    elif args.all or config is None:
        scope = None
    else:
        scope = config.cluster_name

    if config is None and not args.all:
        log_console.print(
            "[yellow]No configuration loaded: every labeled resource of an untracked "
            "cluster is reported.[/yellow]"
        )
    log_console.print(
        f"Hunting orphans in {project_id} "
        f"({'cluster ' + scope if scope else 'all clusters'}, {len(known)} known config(s))..."
    )

    provider = provider or (make_provider(config) if config else GCPProvider(project_id))
    hunter = OrphanHunter(provider, known)
    orphans = hunter.hunt(scope)

    # 2. Report
    records = [asdict(o) for o in orphans]
    if args.json:
        print(json.dumps(records, indent=2))
    elif not orphans:
        out_console.print("[green]No orphaned resources found.[/green]")
    else:
        table = Table(title=f"Orphaned resources ({len(orphans)})")
        table.add_column("Kind", style="cyan")
        table.add_column("Name", style="red")
        table.add_column("Cluster")
        table.add_column("Reason", style="dim")
        previous = None
        for o in orphans:
            table.add_row(o.kind if o.kind != previous else "", o.name, o.cluster, o.reason)
            previous = o.kind
        out_console.print(table)

    if args.csv:
        pd.DataFrame(records, columns=["kind", "name", "cluster", "reason"]).to_csv(
            Path(args.csv), index=False
        )
        log_console.print(f"Orphan list saved to [bold]{args.csv}[/bold]")

    # 3. Clean
    if args.action != "clean" or not orphans:
        return 0
    max_workers = config.max_parallel if config else 8
    reports = hunter.clean(confirm=make_confirm(log_console, args.yes), max_workers=max_workers)
    for report in reports:
        print_report(out_console, report)
    return 0 if all(r.converged for r in reports) else 1
