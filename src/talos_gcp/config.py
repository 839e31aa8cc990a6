"""
Cluster configuration.

Values come from three layers, highest precedence first: the process
environment, a shell-style ``KEY="value"`` config file, and built-in
defaults. The result is an immutable ``ClusterConfig`` built once per
invocation and passed explicitly to every component.
"""

import os
import re
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field

from .core import HEALTH_CHECK_RANGES, timezone_for_region
from .errors import ConfigurationError
from .logger import logger

DEFAULT_CONFIG_FILE = "cluster.env"

DEFAULTS: dict[str, str] = {
    "CLUSTER_NAME": "talos-gcp-cluster",
    "REGION": "us-central1",
    "ARCH": "amd64",
    "TALOS_VERSION": "v1.12.3",
    "KUBERNETES_VERSION": "v1.32.0",
    "CILIUM_VERSION": "1.18.6",
    "CP_COUNT": "1",
    "CP_MACHINE_TYPE": "e2-standard-2",
    "CP_DISK_SIZE": "200GB",
    "CP_EXTENSIONS": "",
    "WORKER_COUNT": "1",
    "WORKER_MACHINE_TYPE": "e2-standard-2",
    "WORKER_DISK_SIZE": "200GB",
    "WORKER_EXTENSIONS": "",
    "NODE_POOLS": "worker",
    "SUBNET_RANGE": "10.100.0.0/20",
    "POD_CIDR": "10.200.0.0/14",
    "SERVICE_CIDR": "10.96.0.0/20",
    "STORAGE_CIDR": "",
    "CILIUM_ROUTING_MODE": "native",
    "INSTALL_CILIUM": "true",
    "INSTALL_HUBBLE": "true",
    "INSTALL_CSI": "true",
    "INSTALL_TRAEFIK": "false",
    "INGRESS_IP_COUNT": "1",
    "WORKER_OPEN_TCP_PORTS": "",
    "WORKER_OPEN_UDP_PORTS": "",
    "WORKER_OPEN_SOURCE_RANGES": "0.0.0.0/0",
    "BASTION_MACHINE_TYPE": "e2-micro",
    "BASTION_IMAGE_FAMILY": "ubuntu-2404-lts-amd64",
    "BASTION_IMAGE_PROJECT": "ubuntu-os-cloud",
    "WORK_HOURS_START": "",
    "WORK_HOURS_STOP": "",
    "WORK_HOURS_DAYS": "Mon-Fri",
    "OUTPUT_ROOT": "_out",
    "OPERATION_TIMEOUT": "600",
    "READY_TIMEOUT": "600",
    "BASTION_TIMEOUT": "300",
    "BOOTSTRAP_TIMEOUT": "600",
    "POLL_INTERVAL": "10",
    "MAX_PARALLEL": "8",
    "LABELS": "",
}

CRON_DAY_ALIASES = {
    "Mon-Fri": "1-5",
    "Mon-Sat": "1-6",
    "Sun-Sat": "0-6",
    "Everyday": "0-6",
    "Daily": "0-6",
}

TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
SIZE_PATTERN = re.compile(r"^(\d+)\s*(GB|G|TB|T)?$", re.IGNORECASE)


class PoolConfig(BaseModel):
    """A homogeneous group of nodes (the control plane or one worker pool)."""

    model_config = ConfigDict(frozen=True)

    name: str
    role: str = Field(description="control-plane or worker")
    count: int
    machine_type: str
    disk_size_gb: int
    talos_version: str
    extensions: tuple[str, ...] = ()
    labels: dict[str, str] = Field(default_factory=dict)
    use_storage_net: bool = False


class WorkHours(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: str
    stop: str
    days: str
    timezone: str

    @property
    def cron_days(self) -> str:
        if self.days in CRON_DAY_ALIASES:
            return CRON_DAY_ALIASES[self.days]
        return self.days

    def _cron(self, hhmm: str) -> str:
        hours, minutes = hhmm.split(":")
        return f"{int(minutes)} {int(hours)} * * {self.cron_days}"

    @property
    def start_cron(self) -> str:
        return self._cron(self.start)

    @property
    def stop_cron(self) -> str:
        return self._cron(self.stop)


class ClusterConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    cluster_name: str
    project_id: str
    region: str
    zone: str
    arch: str = "amd64"

    talos_version: str
    kubernetes_version: str
    cilium_version: str

    control_plane: PoolConfig
    worker_pools: tuple[PoolConfig, ...] = ()

    subnet_range: str
    pod_cidr: str
    service_cidr: str
    storage_cidr: str | None = None
    cilium_routing_mode: str = "native"

    install_cilium: bool = True
    install_hubble: bool = True
    install_csi: bool = True
    install_traefik: bool = False
    ingress_ip_count: int = 1

    worker_open_tcp_ports: tuple[str, ...] = ()
    worker_open_udp_ports: tuple[str, ...] = ()
    worker_open_source_ranges: tuple[str, ...] = ("0.0.0.0/0",)
    hc_source_ranges: tuple[str, ...] = tuple(HEALTH_CHECK_RANGES)

    bucket_name: str
    bastion_machine_type: str = "e2-micro"
    bastion_image_family: str = "ubuntu-2404-lts-amd64"
    bastion_image_project: str = "ubuntu-os-cloud"

    work_hours: WorkHours | None = None
    extra_labels: dict[str, str] = Field(default_factory=dict)

    output_root: Path = Path("_out")
    operation_timeout: int = 600
    ready_timeout: int = 600
    bastion_timeout: int = 300
    bootstrap_timeout: int = 600
    poll_interval: int = 10
    max_parallel: int = 8

    @property
    def pools(self) -> tuple[PoolConfig, ...]:
        return (self.control_plane, *self.worker_pools)

    @property
    def output_dir(self) -> Path:
        return self.output_root / self.cluster_name

    @property
    def secrets_uri(self) -> str:
        return f"gs://{self.bucket_name}/{self.cluster_name}/secrets.yaml"

    @property
    def bastion_name(self) -> str:
        return f"{self.cluster_name}-bastion"


def read_settings(
    config_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Merges defaults, the config file and the environment into one flat
    mapping. Only keys known to the file or defaults (plus POOL_* keys) are
    taken from the environment.
    """
    file_values: dict[str, str] = {}
    if config_file is not None:
        path = Path(config_file)
        if not path.is_file():
            raise ConfigurationError(f"Config file not found: {path}")
        logger.debug(f"Loading config file {path}")
        file_values = {k: v or "" for k, v in dotenv_values(path).items()}

    env = dict(os.environ if environ is None else environ)

    merged = dict(DEFAULTS)
    merged.update(file_values)
    for key, value in env.items():
        if key in merged or key.startswith("POOL_") or key in {
            "PROJECT_ID",
            "ZONE",
            "BUCKET_NAME",
            "CP_TALOS_VERSION",
            "WORKER_TALOS_VERSION",
            "WORK_HOURS_TIMEZONE",
            "HC_SOURCE_RANGES",
        }:
            merged[key] = value
    return merged


def _split(value: str) -> tuple[str, ...]:
    return tuple(v for v in re.split(r"[,\s]+", value.strip()) if v)


def _int(settings: Mapping[str, str], key: str) -> int:
    raw = settings.get(key, "").strip()
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None


def _bool(settings: Mapping[str, str], key: str) -> bool:
    raw = settings.get(key, "").strip().lower()
    if raw in {"true", "1", "yes", "on"}:
        return True
    if raw in {"false", "0", "no", "off", ""}:
        return False
    raise ConfigurationError(f"{key} must be true or false, got {raw!r}")


def _size_gb(settings: Mapping[str, str], key: str) -> int:
    raw = settings.get(key, "").strip()
    match = SIZE_PATTERN.match(raw)
    if not match:
        raise ConfigurationError(f"{key} must look like 200GB, got {raw!r}")
    size = int(match.group(1))
    unit = (match.group(2) or "GB").upper()
    return size * 1024 if unit.startswith("T") else size


def _labels(raw: str, key: str) -> dict[str, str]:
    labels = {}
    for item in _split(raw):
        if "=" not in item:
            raise ConfigurationError(f"{key} entries must be key=value, got {item!r}")
        k, v = item.split("=", 1)
        labels[k.strip()] = v.strip()
    return labels


def _pool(settings: Mapping[str, str], name: str, default_version: str) -> PoolConfig:
    """
    Builds a worker pool from POOL_<NAME>_* variables. The implicit 'worker'
    pool falls back to the WORKER_* variables.
    """
    prefix = f"POOL_{name.upper().replace('-', '_')}_"
    legacy = name == "worker"

    def pick(suffix: str, legacy_key: str) -> str:
        if prefix + suffix in settings:
            return settings[prefix + suffix]
        if legacy and legacy_key in settings:
            return settings[legacy_key]
        return DEFAULTS.get(legacy_key, "")

    lookup = {
        "COUNT": pick("COUNT", "WORKER_COUNT"),
        "TYPE": pick("TYPE", "WORKER_MACHINE_TYPE"),
        "DISK_SIZE": pick("DISK_SIZE", "WORKER_DISK_SIZE"),
        "EXTENSIONS": pick("EXTENSIONS", "WORKER_EXTENSIONS"),
    }
    version = settings.get(prefix + "VERSION") or default_version

    return PoolConfig(
        name=name,
        role="worker",
        count=_int({prefix + "COUNT": lookup["COUNT"]}, prefix + "COUNT"),
        machine_type=lookup["TYPE"],
        disk_size_gb=_size_gb({prefix + "DISK_SIZE": lookup["DISK_SIZE"]}, prefix + "DISK_SIZE"),
        talos_version=version,
        extensions=_split(lookup["EXTENSIONS"]),
        labels=_labels(settings.get(prefix + "LABELS", ""), prefix + "LABELS"),
        use_storage_net=_bool(settings, prefix + "USE_STORAGE_NET"),
    )


def _work_hours(settings: Mapping[str, str], region: str) -> WorkHours | None:
    start = settings.get("WORK_HOURS_START", "").strip()
    stop = settings.get("WORK_HOURS_STOP", "").strip()
    if not start and not stop:
        return None
    if not (start and stop):
        raise ConfigurationError("WORK_HOURS_START and WORK_HOURS_STOP must be set together")
    for key, value in (("WORK_HOURS_START", start), ("WORK_HOURS_STOP", stop)):
        if not TIME_PATTERN.match(value):
            raise ConfigurationError(f"{key} must be HH:MM, got {value!r}")

    days = settings.get("WORK_HOURS_DAYS", "").strip() or "Mon-Fri"
    if days not in CRON_DAY_ALIASES and not re.fullmatch(r"[0-6,\-]+", days):
        raise ConfigurationError(
            f"WORK_HOURS_DAYS must be one of {', '.join(CRON_DAY_ALIASES)} "
            f"or a cron day list, got {days!r}"
        )
    timezone = settings.get("WORK_HOURS_TIMEZONE") or timezone_for_region(region)
    return WorkHours(start=start, stop=stop, days=days, timezone=timezone)


def build_config(settings: Mapping[str, str]) -> ClusterConfig:
    """Turns a flat settings mapping into a validated ClusterConfig."""
    project_id = settings.get("PROJECT_ID", "").strip()
    if not project_id:
        raise ConfigurationError("PROJECT_ID is required")

    cluster = settings["CLUSTER_NAME"].strip()
    region = settings["REGION"].strip()
    zone = settings.get("ZONE", "").strip() or f"{region}-b"
    talos_version = settings["TALOS_VERSION"].strip()

    control_plane = PoolConfig(
        name="cp",
        role="control-plane",
        count=_int(settings, "CP_COUNT"),
        machine_type=settings["CP_MACHINE_TYPE"],
        disk_size_gb=_size_gb(settings, "CP_DISK_SIZE"),
        talos_version=settings.get("CP_TALOS_VERSION") or talos_version,
        extensions=_split(settings.get("CP_EXTENSIONS", "")),
    )

    worker_version = settings.get("WORKER_TALOS_VERSION") or talos_version
    worker_pools = tuple(
        _pool(settings, name, worker_version) for name in _split(settings["NODE_POOLS"])
    )

    routing = settings["CILIUM_ROUTING_MODE"].strip().lower()
    if routing not in {"native", "tunnel"}:
        raise ConfigurationError(f"CILIUM_ROUTING_MODE must be native or tunnel, got {routing!r}")

    return ClusterConfig(
        cluster_name=cluster,
        project_id=project_id,
        region=region,
        zone=zone,
        arch=settings["ARCH"],
        talos_version=talos_version,
        kubernetes_version=settings["KUBERNETES_VERSION"],
        cilium_version=settings["CILIUM_VERSION"],
        control_plane=control_plane,
        worker_pools=worker_pools,
        subnet_range=settings["SUBNET_RANGE"],
        pod_cidr=settings["POD_CIDR"],
        service_cidr=settings["SERVICE_CIDR"],
        storage_cidr=settings.get("STORAGE_CIDR") or None,
        cilium_routing_mode=routing,
        install_cilium=_bool(settings, "INSTALL_CILIUM"),
        install_hubble=_bool(settings, "INSTALL_HUBBLE"),
        install_csi=_bool(settings, "INSTALL_CSI"),
        install_traefik=_bool(settings, "INSTALL_TRAEFIK"),
        ingress_ip_count=_int(settings, "INGRESS_IP_COUNT"),
        worker_open_tcp_ports=_split(settings["WORKER_OPEN_TCP_PORTS"]),
        worker_open_udp_ports=_split(settings["WORKER_OPEN_UDP_PORTS"]),
        worker_open_source_ranges=_split(settings["WORKER_OPEN_SOURCE_RANGES"]),
        hc_source_ranges=_split(settings.get("HC_SOURCE_RANGES") or ",".join(HEALTH_CHECK_RANGES)),
        bucket_name=settings.get("BUCKET_NAME") or f"{project_id}-{cluster}-talos",
        bastion_machine_type=settings["BASTION_MACHINE_TYPE"],
        bastion_image_family=settings["BASTION_IMAGE_FAMILY"],
        bastion_image_project=settings["BASTION_IMAGE_PROJECT"],
        work_hours=_work_hours(settings, region),
        extra_labels=_labels(settings["LABELS"], "LABELS"),
        output_root=Path(settings["OUTPUT_ROOT"]),
        operation_timeout=_int(settings, "OPERATION_TIMEOUT"),
        ready_timeout=_int(settings, "READY_TIMEOUT"),
        bastion_timeout=_int(settings, "BASTION_TIMEOUT"),
        bootstrap_timeout=_int(settings, "BOOTSTRAP_TIMEOUT"),
        poll_interval=_int(settings, "POLL_INTERVAL"),
        max_parallel=_int(settings, "MAX_PARALLEL"),
    )


def load_config(
    config_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ClusterConfig:
    return build_config(read_settings(config_file, environ))


def default_config_file() -> Path | None:
    path = Path(DEFAULT_CONFIG_FILE)
    return path if path.is_file() else None


def load_known_configs(clusters_dir: str | Path) -> dict[str, ClusterConfig]:
    """
    Loads every ``*.env`` under clusters_dir, keyed by cluster name.

    Files are read with an empty environment so that an exported
    CLUSTER_NAME does not make every file resolve to the same cluster.
    Files that fail to load are skipped with a warning.
    """
    configs: dict[str, ClusterConfig] = {}
    directory = Path(clusters_dir)
    if not directory.is_dir():
        return configs
    for path in sorted(directory.glob("*.env")):
        try:
            cfg = load_config(path, environ={})
        except ConfigurationError as e:
            logger.warning(f"Skipping {path}: {e}")
            continue
        configs[cfg.cluster_name] = cfg
    return configs
