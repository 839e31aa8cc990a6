import argparse

from rich.console import Console
from rich.table import Table

from ..actuators.iam import modify_project_bindings, modify_service_account_bindings
from ..actuators.storage import grant_bucket_role
from ..bastion import open_shell, remove_user
from ..compiler import Names
from ..config import ClusterConfig
from ..core import ADMIN_PROJECT_ROLES
from ..credentials import get_credentials
from ..gcp import translate_errors
from ..orchestrator import lookup_endpoint_ip
from ..walkers.iam import get_project_policy
from .lifecycle import make_provider

OS_ADMIN_ROLE = "roles/compute.osAdminLogin"


def _member(identity: str) -> str:
    # Bare emails are users; typed members (group:, serviceAccount:) pass through
    return identity if ":" in identity else f"user:{identity}"


def run_get_credentials(
    args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console
) -> int:
    endpoint = lookup_endpoint_ip(make_provider(config), config)
    log_console.print(f"Rebuilding credentials for {config.cluster_name} (endpoint {endpoint})")
    written = get_credentials(config, endpoint)
    for path in written:
        out_console.print(f"[green]✓[/green] {path}")
    out_console.print(
        "Open a tunnel with 'talos-gcp ssh-bastion -- -L 64430:<endpoint>:6443 "
        "-L 50005:<endpoint>:50000' to use the .local files."
    )
    return 0


def run_grant_admin(args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console) -> int:
    """Gives an operator IAP SSH access to the bastion plus read access to cluster secrets."""
    member = _member(args.email)
    sa_email = f"{Names(config.cluster_name).sa}@{config.project_id}.iam.gserviceaccount.com"

    with translate_errors("grant project roles", "Project", config.project_id):
        modify_project_bindings(config.project_id, member, add=list(ADMIN_PROJECT_ROLES))
    with translate_errors("grant bucket access", "Bucket", config.bucket_name):
        grant_bucket_role(config.bucket_name, member, "roles/storage.objectViewer")
    with translate_errors("grant service account use", "ServiceAccount", sa_email):
        modify_service_account_bindings(
            config.project_id, sa_email, member, ["roles/iam.serviceAccountUser"]
        )

    out_console.print(f"[green]Granted cluster admin access to {member}.[/green]")
    return 0


def run_list_admins(args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console) -> int:
    with translate_errors("read project policy", "Project", config.project_id):
        bindings = get_project_policy(config.project_id)

    members: list[str] = []
    for binding in bindings:
        if binding.role == OS_ADMIN_ROLE:
            members += binding.members

    table = Table(title=f"Bastion admins ({OS_ADMIN_ROLE})")
    table.add_column("Type", style="cyan")
    table.add_column("Member")
    for member in sorted(set(members)):
        kind, _, ident = member.partition(":")
        table.add_row(kind, ident or member)
    out_console.print(table)
    return 0


def run_bastion_remove_user(
    args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console
) -> int:
    remove_user(config, args.user)
    out_console.print(f"Removed {args.user} from {config.bastion_name}.")
    return 0


def run_ssh_bastion(args: argparse.Namespace, config: ClusterConfig, log_console: Console, out_console: Console) -> int:
    ssh_args = list(args.ssh_args or [])
    if ssh_args[:1] == ["--"]:
        ssh_args = ssh_args[1:]
    return open_shell(config, ssh_args or None)
