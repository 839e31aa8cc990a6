"""
Cluster add-ons installed from the bastion: Cilium (with Hubble), the GCE
persistent disk CSI driver and Traefik.

Values files are rendered locally from the package templates and streamed
to the bastion over SSH; helm and kubectl run there against ~/.kube/config.
"""

import shlex
import uuid

from google.api_core import exceptions
from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from .actuators.compute import get_address_ip
from .bastion import run_on_bastion, template_env
from .compiler import Names
from .config import ClusterConfig
from .errors import ConfigurationError, PhaseTimeoutError, ProviderError
from .gcp import translate_errors
from .logger import logger

CILIUM_REPO = "https://helm.cilium.io/"
TRAEFIK_REPO = "https://traefik.github.io/charts"
CSI_KUSTOMIZATION = (
    "github.com/kubernetes-sigs/gcp-compute-persistent-disk-csi-driver/"
    "deploy/kubernetes/overlays/stable-master?ref=v1.16.0"
)
STORAGE_TEST_NAME = "talos-gcp-storage-test"


class AddonInstaller:
    def __init__(self, config: ClusterConfig):
        self.config = config
        self.env = template_env()

    def _run(self, command: str) -> str:
        return run_on_bastion(self.config, command)

    def _push(self, template: str, remote: str, **context) -> str:
        content = self.env.get_template(template).render(**context)
        run_on_bastion(self.config, f"cat > {remote}", input_text=content)
        return remote

    def install_cilium(self) -> None:
        values = self._push(
            "cilium_values.yaml.j2",
            "cilium-values.yaml",
            kubeprism_port=7445,
            routing_mode=self.config.cilium_routing_mode,
            pod_cidr=self.config.pod_cidr,
            install_hubble=self.config.install_hubble,
        )
        logger.info(f"Installing Cilium {self.config.cilium_version}")
        self._run(
            f"helm repo add cilium {CILIUM_REPO} --force-update && "
            f"helm upgrade --install cilium cilium/cilium "
            f"--version {shlex.quote(self.config.cilium_version)} "
            f"--namespace kube-system --values {values} && "
            f"kubectl rollout status ds/cilium -n kube-system --timeout=300s"
        )

    def install_csi(self) -> None:
        logger.info("Installing GCE persistent disk CSI driver")
        self._run(
            "kubectl create namespace gce-pd-csi-driver --dry-run=client -o yaml "
            "| kubectl apply -f - && "
            "kubectl label namespace gce-pd-csi-driver "
            "pod-security.kubernetes.io/enforce=privileged --overwrite && "
            f"kubectl apply -k {shlex.quote(CSI_KUSTOMIZATION)}"
        )
        classes = self._push("storage_classes.yaml.j2", "storage-classes.yaml")
        self._run(f"kubectl apply -f {classes}")

    def update_traefik(self) -> str:
        """Installs or upgrades Traefik bound to the first ingress address. Returns the IP."""
        address = Names(self.config.cluster_name).ingress_address(0)
        with translate_errors("get address", "StaticAddress", address):
            try:
                ip = get_address_ip(self.config.project_id, self.config.region, address)
            except exceptions.NotFound:
                ip = ""
        if not ip:
            raise ConfigurationError(
                f"Ingress address {address} does not exist; run 'create' first",
                kind="StaticAddress",
                name=address,
            )

        values = self._push("traefik_values.yaml.j2", "traefik-values.yaml", ingress_ip=ip)
        logger.info(f"Installing Traefik on {ip}")
        self._run(
            f"helm repo add traefik {TRAEFIK_REPO} --force-update && "
            f"helm upgrade --install traefik traefik/traefik "
            f"--namespace traefik --create-namespace --values {values} "
            f"--wait --timeout 10m"
        )
        return ip

    def ensure_installed(self) -> list[str]:
        """Installs every enabled add-on. Helm and kubectl apply make this safe to repeat."""
        installed = []
        if self.config.install_cilium:
            self.install_cilium()
            installed.append("cilium")
        if self.config.install_csi:
            self.install_csi()
            installed.append("csi")
        if self.config.install_traefik:
            self.update_traefik()
            installed.append("traefik")
        return installed

    def _pod_phase(self) -> str:
        try:
            return self._run(
                f"kubectl get pod {STORAGE_TEST_NAME} -o jsonpath='{{.status.phase}}'"
            ).strip()
        except ProviderError as e:
            logger.debug(f"Storage test pod not visible yet: {e}")
            return ""

    def verify_storage(self, storage_class: str = "standard-rwo") -> bool:
        """
        Provisions a PVC, writes a marker file from a pod and reads it back.
        The test objects are removed whatever the outcome.
        """
        marker = f"talos-gcp-{uuid.uuid4().hex[:8]}"
        manifest = self._push(
            "storage_test.yaml.j2",
            "storage-test.yaml",
            name=STORAGE_TEST_NAME,
            storage_class=storage_class,
            marker=marker,
        )
        self._run(f"kubectl apply -f {manifest}")
        try:
            retrying = Retrying(
                stop=stop_after_delay(self.config.ready_timeout),
                wait=wait_fixed(self.config.poll_interval),
                retry=retry_if_result(lambda phase: phase != "Running"),
            )
            try:
                retrying(self._pod_phase)
            except RetryError as e:
                raise PhaseTimeoutError(
                    f"Storage test pod stuck in {e.last_attempt.result() or 'Unknown'}"
                ) from None
            content = self._run(f"kubectl exec {STORAGE_TEST_NAME} -- cat /data/probe")
            ok = marker in content
            if ok:
                logger.info("Storage round-trip succeeded")
            else:
                logger.error("Storage test pod is running but the marker could not be read back")
            return ok
        finally:
            self._run(f"kubectl delete -f {manifest} --grace-period=0 --force --ignore-not-found")
