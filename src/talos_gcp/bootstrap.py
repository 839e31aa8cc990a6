"""
Talos machine configuration and cluster bootstrap.

Configs are generated locally with ``talosctl gen config`` from the secrets
bundle stored in the cluster bucket. Everything that has to reach the
nodes themselves (bootstrap, kubeconfig, node listing) runs on the bastion.
"""

import json
import os
import shlex
from pathlib import Path
from typing import Any

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

from .bastion import copy_from_bastion, copy_to_bastion, run_on_bastion
from .config import ClusterConfig, PoolConfig
from .core import KUBE_API_PORT
from .credentials import SecretStore, run_local
from .errors import PhaseTimeoutError, ProviderError
from .logger import logger

KUBEPRISM_PORT = 7445
GCP_MTU = 1460


def _cluster_patch(config: ClusterConfig) -> dict[str, Any]:
    """Settings shared by every node in the cluster."""
    cluster: dict[str, Any] = {
        "network": {
            "podSubnets": [config.pod_cidr],
            "serviceSubnets": [config.service_cidr],
        },
    }
    machine: dict[str, Any] = {
        "features": {"kubePrism": {"enabled": True, "port": KUBEPRISM_PORT}},
        "kubelet": {"nodeIP": {"validSubnets": _node_subnets(config)}},
        "network": {"interfaces": _interfaces(config)},
    }
    if config.install_cilium:
        cluster["network"]["cni"] = {"name": "none"}
        cluster["proxy"] = {"disabled": True}
        machine["sysctls"] = {
            "net.ipv4.conf.all.rp_filter": "0",
            "net.ipv4.conf.default.rp_filter": "0",
            "net.ipv4.ip_forward": "1",
        }
    return {"cluster": cluster, "machine": machine}


def _node_subnets(config: ClusterConfig) -> list[str]:
    subnets = [config.subnet_range]
    if config.storage_cidr:
        subnets.append(f"!{config.storage_cidr}")
    return subnets


def _interfaces(config: ClusterConfig) -> list[dict[str, Any]]:
    interfaces: list[dict[str, Any]] = [
        {"deviceSelector": {"busPath": "0*"}, "dhcp": True, "mtu": GCP_MTU}
    ]
    if config.storage_cidr:
        # The storage NIC must never carry the default route
        interfaces.append(
            {
                "deviceSelector": {"busPath": "1*"},
                "dhcp": True,
                "mtu": GCP_MTU,
                "dhcpOptions": {"routeMetric": 2048},
            }
        )
    return interfaces


def _control_plane_patch(config: ClusterConfig, endpoint_ip: str) -> dict[str, Any]:
    return {
        "machine": {"certSANs": [endpoint_ip]},
        "cluster": {"etcd": {"advertisedSubnets": [config.subnet_range, f"!{endpoint_ip}"]}},
    }


def _pool_patch(pool: PoolConfig) -> dict[str, Any]:
    labels = {"talos-gcp/pool": pool.name, **pool.labels}
    return {"machine": {"nodeLabels": labels}}


def _write_patch(path: Path, patch: dict[str, Any]) -> str:
    # JSON is valid YAML, which is all talosctl asks of a patch file
    path.write_text(json.dumps(patch, indent=2, sort_keys=True))
    return f"@{path}"


class TalosBootstrapper:
    def __init__(self, config: ClusterConfig, secrets: SecretStore | None = None):
        self.config = config
        self.secrets = secrets or SecretStore(config)

    @property
    def output_dir(self) -> Path:
        return self.config.output_dir

    def ensure_secrets(self) -> Path:
        """
        Fetches the secrets bundle from the bucket, generating and uploading a
        new one on first use. The bucket copy always wins over a local file.
        """
        secrets = self.output_dir / "secrets.yaml"
        if self.secrets.download(secrets):
            logger.info(f"Using secrets from {self.config.secrets_uri}")
            return secrets

        if secrets.exists():
            logger.info("Uploading local secrets bundle")
        else:
            logger.info("Generating new Talos secrets")
            run_local(["talosctl", "gen", "secrets", "--output-file", str(secrets)])
        os.chmod(secrets, 0o600)
        self.secrets.upload(secrets)
        return secrets

    def prepare_configs(self, endpoint_ip: str) -> list[Path]:
        """
        Generates controlplane.yaml, worker.yaml, one worker-<pool>.yaml per
        worker pool and talosconfig, all pointing at the control-plane
        endpoint.
        """
        out = self.output_dir
        out.mkdir(parents=True, exist_ok=True)
        secrets = self.ensure_secrets()
        patches = out / "patches"
        patches.mkdir(exist_ok=True)

        logger.info(f"Generating Talos configs (endpoint https://{endpoint_ip}:{KUBE_API_PORT})")
        run_local(
            [
                "talosctl",
                "gen",
                "config",
                self.config.cluster_name,
                f"https://{endpoint_ip}:{KUBE_API_PORT}",
                "--with-secrets",
                str(secrets),
                "--kubernetes-version",
                self.config.kubernetes_version.lstrip("v"),
                "--with-docs=false",
                "--with-examples=false",
                "--config-patch",
                _write_patch(patches / "cluster.json", _cluster_patch(self.config)),
                "--config-patch-control-plane",
                _write_patch(
                    patches / "controlplane.json",
                    _control_plane_patch(self.config, endpoint_ip),
                ),
                "--output",
                str(out),
                "--force",
            ]
        )

        generated = [out / "controlplane.yaml", out / "worker.yaml", out / "talosconfig"]
        for pool in self.config.worker_pools:
            target = out / f"worker-{pool.name}.yaml"
            run_local(
                [
                    "talosctl",
                    "machineconfig",
                    "patch",
                    str(out / "worker.yaml"),
                    "--patch",
                    _write_patch(patches / f"pool-{pool.name}.json", _pool_patch(pool)),
                    "--output",
                    str(target),
                ]
            )
            generated.append(target)

        talosconfig = out / "talosconfig"
        run_local(["talosctl", "--talosconfig", str(talosconfig), "config", "endpoint", endpoint_ip])
        run_local(["talosctl", "--talosconfig", str(talosconfig), "config", "node", endpoint_ip])
        for path in generated:
            os.chmod(path, 0o600)
        return generated

    def push_to_bastion(self) -> None:
        """Installs talosconfig on the bastion as ~/.talos/config."""
        run_on_bastion(self.config, "mkdir -p ~/.talos ~/.kube && chmod 700 ~/.talos ~/.kube")
        copy_to_bastion(self.config, self.output_dir / "talosconfig", "~/.talos/config")
        run_on_bastion(self.config, "chmod 600 ~/.talos/config")

    def _retrying(self, what: str) -> Retrying:
        return Retrying(
            stop=stop_after_delay(self.config.bootstrap_timeout),
            wait=wait_fixed(self.config.poll_interval),
            retry=retry_if_exception_type(ProviderError),
            before_sleep=lambda state: logger.info(
                f"Waiting for {what} (attempt {state.attempt_number})..."
            ),
            reraise=True,
        )

    def _bootstrap_once(self, node_ip: str) -> None:
        talos = "talosctl --talosconfig ~/.talos/config"
        # Output goes to stdout so AlreadyExists can be told apart from real failures
        out = run_on_bastion(
            self.config,
            f"{talos} bootstrap --nodes {node_ip} --endpoints {node_ip} 2>&1 "
            f"|| echo BOOTSTRAP_FAILED",
        )
        if "AlreadyExists" in out:
            logger.info("etcd is already bootstrapped")
            return
        if "BOOTSTRAP_FAILED" in out:
            raise ProviderError(f"talosctl bootstrap: {out.strip().splitlines()[0]}")

    def bootstrap(self, node_ip: str) -> None:
        """
        Bootstraps etcd on the first control-plane node. Idempotent: a cluster
        that is already bootstrapped counts as success.
        """
        logger.info(f"Bootstrapping etcd on {node_ip}")
        try:
            self._retrying("Talos API")(self._bootstrap_once, node_ip)
        except ProviderError as e:
            raise PhaseTimeoutError(
                f"etcd bootstrap did not succeed within {self.config.bootstrap_timeout}s: {e}"
            ) from e

    def fetch_kubeconfig(self, node_ip: str) -> Path:
        """Writes the admin kubeconfig on the bastion and copies it locally."""
        talos = "talosctl --talosconfig ~/.talos/config"
        try:
            self._retrying("kubeconfig")(
                run_on_bastion,
                self.config,
                f"{talos} kubeconfig ~/.kube/config --nodes {node_ip} --force "
                f"&& chmod 600 ~/.kube/config",
            )
        except ProviderError as e:
            raise PhaseTimeoutError(
                f"kubeconfig was not issued within {self.config.bootstrap_timeout}s: {e}"
            ) from e

        local = self.output_dir / "kubeconfig"
        copy_from_bastion(self.config, "~/.kube/config", local)
        os.chmod(local, 0o600)
        return local

    def registered_nodes(self) -> set[str]:
        out = run_on_bastion(self.config, "kubectl get nodes -o name")
        return {line.split("/", 1)[-1] for line in out.split() if line}

    def wait_registered(self, expected: list[str]) -> set[str]:
        """Polls until every expected node name has registered with the API server."""
        wanted = set(expected)

        def missing() -> set[str]:
            try:
                return wanted - self.registered_nodes()
            except ProviderError as e:
                logger.debug(f"Node listing failed: {e}")
                return wanted

        retrying = Retrying(
            stop=stop_after_delay(self.config.bootstrap_timeout),
            wait=wait_fixed(self.config.poll_interval),
            retry=retry_if_result(bool),
            before_sleep=lambda state: logger.info(
                f"{len(state.outcome.result())} node(s) not registered yet: "
                f"{', '.join(sorted(state.outcome.result()))}"
            ),
        )
        try:
            retrying(missing)
        except RetryError as e:
            left = e.last_attempt.result()
            raise PhaseTimeoutError(
                f"Nodes did not register within {self.config.bootstrap_timeout}s: "
                f"{', '.join(sorted(left))}"
            ) from None
        logger.info(f"All {len(wanted)} node(s) registered")
        return wanted

    def finalize_bastion(self, endpoint_ip: str) -> None:
        """Points the bastion talosconfig at the load balancer and seeds /etc/skel."""
        talos = "talosctl --talosconfig ~/.talos/config"
        ip = shlex.quote(endpoint_ip)
        run_on_bastion(
            self.config,
            f"{talos} config endpoint {ip} && {talos} config node {ip} && "
            "sudo mkdir -p /etc/skel/.kube /etc/skel/.talos && "
            "sudo cp ~/.kube/config /etc/skel/.kube/config && "
            "sudo cp ~/.talos/config /etc/skel/.talos/config",
        )
