"""
Bastion host helpers: startup script rendering and IAP-tunnelled SSH.

All cluster-internal commands (talosctl, kubectl, helm) run on the bastion
through ``gcloud compute ssh --tunnel-through-iap``.
"""

import re
import subprocess
from pathlib import Path

import jinja2
from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from .config import ClusterConfig
from .errors import ConfigurationError, PhaseTimeoutError, ProviderError
from .logger import logger

TEMPLATE_DIR = Path(__file__).parent / "templates"
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")


def template_env() -> jinja2.Environment:
    return jinja2.Environment(
        loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
        keep_trailing_newline=True,
        undefined=jinja2.StrictUndefined,
    )


def render_startup_script(config: ClusterConfig) -> str:
    template = template_env().get_template("bastion_startup.sh.j2")
    return template.render(
        cluster=config.cluster_name,
        talos_version=config.talos_version,
        kubectl_version=config.kubernetes_version,
        arch=config.arch,
        install_cilium=config.install_cilium,
    )


def _gcloud_base(config: ClusterConfig, verb: str) -> list[str]:
    return [
        "gcloud",
        "compute",
        verb,
        "--zone",
        config.zone,
        "--project",
        config.project_id,
        "--quiet",
        "--tunnel-through-iap",
    ]


def ssh_command(
    config: ClusterConfig, command: str | None = None, extra_args: list[str] | None = None
) -> list[str]:
    cmd = _gcloud_base(config, "ssh")
    cmd.insert(3, config.bastion_name)
    if command is not None:
        cmd += ["--command", command]
    if extra_args:
        cmd += ["--", *extra_args]
    return cmd


def run_on_bastion(config: ClusterConfig, command: str, input_text: str | None = None) -> str:
    """Runs a shell command on the bastion and returns its stdout."""
    cmd = ssh_command(config, command)
    logger.debug(f"bastion$ {command}")
    res = subprocess.run(cmd, capture_output=True, text=True, input=input_text)
    if res.returncode != 0:
        err = res.stderr.strip().splitlines()[-1] if res.stderr.strip() else "Unknown error"
        raise ProviderError(
            f"Command failed on bastion ({res.returncode}): {err}",
            kind="Instance",
            name=config.bastion_name,
        )
    return res.stdout


def copy_to_bastion(config: ClusterConfig, local: Path, remote: str) -> None:
    cmd = _gcloud_base(config, "scp")
    cmd += [str(local), f"{config.bastion_name}:{remote}"]
    res = subprocess.run(cmd, capture_output=True, text=True)
    if res.returncode != 0:
        raise ProviderError(
            f"Failed to copy {local} to bastion: {res.stderr.strip()}",
            kind="Instance",
            name=config.bastion_name,
        )


def copy_from_bastion(config: ClusterConfig, remote: str, local: Path) -> None:
    cmd = _gcloud_base(config, "scp")
    cmd += [f"{config.bastion_name}:{remote}", str(local)]
    res = subprocess.run(cmd, capture_output=True, text=True)
    if res.returncode != 0:
        raise ProviderError(
            f"Failed to copy {remote} from bastion: {res.stderr.strip()}",
            kind="Instance",
            name=config.bastion_name,
        )


def bastion_ready(config: ClusterConfig) -> bool:
    """True once SSH answers and the startup script has installed talosctl."""
    res = subprocess.run(
        ssh_command(config, "test -f /etc/talos-gcp/ready && talosctl version --client"),
        capture_output=True,
        text=True,
    )
    return res.returncode == 0


def wait_for_bastion(config: ClusterConfig) -> None:
    retrying = Retrying(
        stop=stop_after_delay(config.bastion_timeout),
        wait=wait_fixed(config.poll_interval),
        retry=retry_if_result(lambda ready: not ready),
        before_sleep=lambda state: logger.info(
            f"Bastion not ready yet (attempt {state.attempt_number})..."
        ),
    )
    try:
        retrying(bastion_ready, config)
    except RetryError:
        raise PhaseTimeoutError(
            f"Bastion did not become reachable within {config.bastion_timeout}s",
            kind="Instance",
            name=config.bastion_name,
        ) from None


def open_shell(config: ClusterConfig, ssh_args: list[str] | None = None) -> int:
    """Interactive SSH session; returns the ssh exit code."""
    return subprocess.run(ssh_command(config, extra_args=ssh_args)).returncode


def remove_user(config: ClusterConfig, user: str) -> None:
    if not USERNAME_PATTERN.match(user):
        raise ConfigurationError(f"Invalid username: {user!r}")
    run_on_bastion(
        config,
        f"if id -u {user} >/dev/null 2>&1; then "
        f"sudo pkill -u {user} || true; sudo userdel -r {user}; fi",
    )
