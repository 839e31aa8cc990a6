import argparse
from concurrent.futures import ThreadPoolExecutor, as_completed

from rich.console import Console

from ..actuators.compute import start_instance, stop_instance
from ..addons import AddonInstaller
from ..compiler import compile_desired_state
from ..config import ClusterConfig
from ..gcp import translate_errors
from ..logger import logger
from ..reconciler import Reconciler
from ..schemas.base import ResourceKind
from ..schemas.compute import InstanceSpec
from .lifecycle import make_confirm, make_provider, print_report

STOPPED_STATES = {"TERMINATED", "STOPPED", "SUSPENDED"}
RUNNING_STATES = {"RUNNING", "PROVISIONING", "STAGING"}


def _power(config: ClusterConfig, start: bool, out_console: Console) -> int:
    snapshot = make_provider(config).read(config.cluster_name, [ResourceKind.INSTANCE])
    instances = [s for s in snapshot.of_kind(ResourceKind.INSTANCE) if isinstance(s, InstanceSpec)]
    wanted = STOPPED_STATES if start else RUNNING_STATES
    targets = [i for i in instances if i.status in wanted]
    verb = "Starting" if start else "Stopping"

    if not targets:
        out_console.print(f"Nothing to do: no instance is {'stopped' if start else 'running'}.")
        return 0

    out_console.print(f"{verb} {len(targets)} instance(s)...")
    action = start_instance if start else stop_instance

    def run(inst: InstanceSpec) -> None:
        with translate_errors(verb.lower(), ResourceKind.INSTANCE.value, inst.name):
            action(config.project_id, inst.zone, inst.name, config.operation_timeout)

    failures = 0
    with ThreadPoolExecutor(max_workers=config.max_parallel) as executor:
        futures = {executor.submit(run, inst): inst for inst in targets}
        for future in as_completed(futures):
            inst = futures[future]
            try:
                future.result()
                out_console.print(f"[green]SUCCESS: {inst.name}[/green]")
            except Exception as e:
                logger.error(f"{verb} {inst.name} failed: {e}")
                out_console.print(f"[red]FAILED: {inst.name} - {e}[/red]")
                failures += 1
    return 0 if failures == 0 else 1


def run_start(args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console) -> int:
    return _power(config, True, out_console)


def run_stop(args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console) -> int:
    return _power(config, False, out_console)


def run_update_schedule(
    args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console
) -> int:
    """Converges only the schedule policy; removes it when work hours are unset."""
    reconciler = Reconciler(make_provider(config), config.cluster_name)
    report = reconciler.reconcile(
        compile_desired_state(config),
        kinds=[ResourceKind.SCHEDULE_POLICY],
        confirm=make_confirm(log_console, args.yes),
    )
    print_report(out_console, report)
    return 0 if report.converged else 1


def run_verify_storage(
    args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console
) -> int:
    log_console.print("Running PVC round-trip test on the cluster...")
    if AddonInstaller(config).verify_storage(args.storage_class):
        out_console.print("[green]SUCCESS: data written to and read back from a PVC.[/green]")
        return 0
    out_console.print("[red]FAILURE: could not read data back from the PVC.[/red]")
    return 1


def run_update_traefik(
    args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console
) -> int:
    ip = AddonInstaller(config).update_traefik()
    out_console.print(f"[green]Traefik deployed on {ip}.[/green]")
    return 0
