"""
Cluster secrets and operator credentials.

The Talos secrets bundle is the one piece of state that cannot be derived
from labels. It is kept in the cluster bucket at
``gs://<bucket>/<cluster>/secrets.yaml`` so credentials can be rebuilt on
any machine with ``get-credentials``.
"""

import os
import re
import shutil
import subprocess
from pathlib import Path

from google.api_core import exceptions

from .bastion import copy_from_bastion
from .clients import get_storage_client
from .config import ClusterConfig
from .core import KUBE_API_PORT, LOCAL_KUBE_PORT, LOCAL_TALOS_PORT
from .errors import ConfigurationError, ProviderError
from .gcp import translate_errors
from .logger import logger


def run_local(cmd: list[str], cwd: Path | None = None) -> str:
    """Runs a local CLI tool (talosctl) and returns stdout."""
    if shutil.which(cmd[0]) is None:
        raise ConfigurationError(f"{cmd[0]} not found on PATH")
    logger.debug(f"$ {' '.join(cmd)}")
    res = subprocess.run(cmd, capture_output=True, text=True, cwd=cwd)
    if res.returncode != 0:
        raise ProviderError(f"{cmd[0]} {cmd[1]} failed: {res.stderr.strip()}")
    return res.stdout


class SecretStore:
    """The secrets bundle object in the cluster bucket."""

    def __init__(self, config: ClusterConfig):
        self.config = config
        self.blob_name = f"{config.cluster_name}/secrets.yaml"

    def _blob(self):
        return get_storage_client().bucket(self.config.bucket_name).blob(self.blob_name)

    def exists(self) -> bool:
        with translate_errors("check secrets", "Bucket", self.config.bucket_name):
            return self._blob().exists()

    def upload(self, local: Path) -> None:
        with translate_errors("upload secrets", "Bucket", self.config.bucket_name):
            self._blob().upload_from_filename(str(local))
        logger.info(f"Secrets stored at {self.config.secrets_uri}")

    def download(self, local: Path) -> bool:
        """Fetches the bundle into ``local``. False when none is stored yet."""
        with translate_errors("download secrets", "Bucket", self.config.bucket_name):
            try:
                self._blob().download_to_filename(str(local))
            except exceptions.NotFound:
                if local.exists() and local.stat().st_size == 0:
                    local.unlink()
                return False
        os.chmod(local, 0o600)
        return True


def localize_kubeconfig(source: Path, dest: Path) -> None:
    """Points a kubeconfig at the local IAP tunnel port."""
    text = source.read_text()
    text = re.sub(
        rf"server: https://[^\s:]+:{KUBE_API_PORT}",
        f"server: https://127.0.0.1:{LOCAL_KUBE_PORT}",
        text,
    )
    dest.write_text(text)
    os.chmod(dest, 0o600)


def localize_talosconfig(source: Path, dest: Path) -> None:
    shutil.copyfile(source, dest)
    os.chmod(dest, 0o600)
    local_endpoint = f"127.0.0.1:{LOCAL_TALOS_PORT}"
    run_local(["talosctl", "--talosconfig", str(dest), "config", "endpoint", local_endpoint])
    run_local(["talosctl", "--talosconfig", str(dest), "config", "node", local_endpoint])


def get_credentials(config: ClusterConfig, endpoint_ip: str) -> list[Path]:
    """
    Rebuilds talosconfig from the stored secrets, fetches the kubeconfig from
    the bastion and writes tunnel-friendly ``.local`` copies of both.
    """
    out = config.output_dir
    out.mkdir(parents=True, exist_ok=True)

    secrets = out / "secrets.yaml"
    if not SecretStore(config).download(secrets):
        raise ProviderError(
            f"No secrets found at {config.secrets_uri}; has the cluster been created?",
            kind="Bucket",
            name=config.bucket_name,
        )

    talosconfig = out / "talosconfig"
    run_local(
        [
            "talosctl",
            "gen",
            "config",
            config.cluster_name,
            f"https://{endpoint_ip}:{KUBE_API_PORT}",
            "--with-secrets",
            str(secrets),
            "--output-types",
            "talosconfig",
            "--output",
            str(talosconfig),
            "--force",
        ]
    )
    run_local(["talosctl", "--talosconfig", str(talosconfig), "config", "endpoint", endpoint_ip])
    run_local(["talosctl", "--talosconfig", str(talosconfig), "config", "node", endpoint_ip])

    kubeconfig = out / "kubeconfig"
    copy_from_bastion(config, "~/.kube/config", kubeconfig)
    os.chmod(kubeconfig, 0o600)

    localize_kubeconfig(kubeconfig, out / "kubeconfig.local")
    localize_talosconfig(talosconfig, out / "talosconfig.local")
    return [talosconfig, kubeconfig, out / "talosconfig.local", out / "kubeconfig.local"]
