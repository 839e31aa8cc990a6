import argparse
import sys
from importlib.metadata import PackageNotFoundError, version

from rich.console import Console

from .config import ClusterConfig, default_config_file, load_config
from .errors import TalosGCPError
from .logger import logger, setup_logger, verbosity_to_level
from .modes import access, lifecycle, ops, orphans, status

COMMANDS = {
    "create": lifecycle.run_create,
    "apply": lifecycle.run_apply,
    "destroy": lifecycle.run_destroy,
    "recreate-bastion": lifecycle.run_recreate_bastion,
    "status": status.run_status,
    "diagnose": status.run_diagnose,
    "start": ops.run_start,
    "stop": ops.run_stop,
    "update-schedule": ops.run_update_schedule,
    "verify-storage": ops.run_verify_storage,
    "update-traefik": ops.run_update_traefik,
    "get-credentials": access.run_get_credentials,
    "grant-admin": access.run_grant_admin,
    "list-admins": access.run_list_admins,
    "bastion-remove-user": access.run_bastion_remove_user,
    "ssh-bastion": access.run_ssh_bastion,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="talos-gcp",
        description="talos-gcp: declarative Talos Linux clusters on Google Cloud",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create (or resume creating) the cluster described by cluster.env
  talos-gcp create

  # Re-apply a changed configuration, deleting removed nodes without asking
  talos-gcp -c clusters/dev.env apply --yes

  # List labeled resources no config file accounts for
  talos-gcp orphans --all --json
""",
    )
    try:
        ver = version("talos-gcp")
    except PackageNotFoundError:
        ver = "unknown"
    parser.add_argument("--version", action="version", version=f"talos-gcp v{ver}")
    parser.add_argument("-c", "--config", help="Cluster config file (default: ./cluster.env)")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="-v for progress, -vv for debug"
    )

    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    def add(name: str, help_text: str, yes: bool = False) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        if yes:
            p.add_argument("-y", "--yes", action="store_true", help="Do not prompt before deleting")
        else:
            p.set_defaults(yes=False)
        return p

    add("create", "Create the cluster, resuming from the last completed phase", yes=True)
    add("apply", "Re-apply the configuration through every phase", yes=True)
    add("destroy", "Delete every resource labeled with this cluster", yes=True)
    for n in range(1, 6):
        add(f"phase{n}", f"Run phase {n} only", yes=True).set_defaults(phase=n)
    add("recreate-bastion", "Delete and rebuild the bastion host", yes=True)

    p = add("status", "Show cluster resources and health")
    p.add_argument("--json", action="store_true", help="Output status as JSON")
    add("diagnose", "Report drift, local artifacts and bastion reachability")

    add("start", "Start stopped cluster instances")
    add("stop", "Stop running cluster instances")
    add("update-schedule", "Reconcile the work-hours schedule only", yes=True)
    p = add("verify-storage", "Run a PVC round-trip test")
    p.add_argument("--storage-class", default="standard-rwo")
    add("update-traefik", "Install or upgrade Traefik on the first ingress IP")

    add("get-credentials", "Rebuild talosconfig and kubeconfig from the bucket secrets")
    p = add("grant-admin", "Grant an operator bastion and secrets access")
    p.add_argument("email")
    add("list-admins", "List members allowed to log in to the bastion")
    p = add("bastion-remove-user", "Remove a local user from the bastion")
    p.add_argument("user")
    p = add("ssh-bastion", "Open an IAP SSH session to the bastion")
    p.add_argument("ssh_args", nargs=argparse.REMAINDER, help="Arguments passed to ssh after --")

    p = add("orphans", "Find (and optionally clean) resources no config accounts for", yes=True)
    p.add_argument("action", nargs="?", choices=["list", "clean"], default="list")
    p.add_argument("--all", action="store_true", help="Sweep every cluster in the project")
    p.add_argument("--cluster", help="Only consider this cluster label")
    p.add_argument("--clusters-dir", default="clusters", help="Directory of known *.env files")
    p.add_argument("--project-id", help="Project to sweep when no config is loaded")
    p.add_argument("--json", action="store_true", help="Output orphans as JSON")
    p.add_argument("--csv", help="Also write the orphan list to this CSV file")
    return parser


def _load(args: argparse.Namespace) -> ClusterConfig:
    return load_config(args.config or default_config_file())


def dispatch(args: argparse.Namespace, log_console: Console, out_console: Console) -> int:
    if args.command == "orphans":
        # Without a config file the sweep runs in unconfigured mode
        has_file = bool(args.config or default_config_file())
        config = _load(args) if has_file else None
        return orphans.run_orphans(args, config, log_console, out_console)

    config = _load(args)
    if args.command.startswith("phase"):
        return lifecycle.run_single_phase(args, config, log_console, out_console)
    return COMMANDS[args.command](args, config, log_console, out_console)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logger(level=verbosity_to_level(args.verbose))

    # Logs and prompts on stderr so JSON output on stdout stays clean
    quiet = bool(getattr(args, "json", False))
    log_console = Console(stderr=True)
    out_console = Console(quiet=quiet)

    try:
        return dispatch(args, log_console, out_console)
    except TalosGCPError as e:
        logger.debug("Command failed", exc_info=True)
        log_console.print(f"[bold red]{e.describe()}[/bold red]")
        return 1
    except KeyboardInterrupt:
        log_console.print("\n[bold red]Operation cancelled by user.[/bold red]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
