"""
Desired-state compiler: ClusterConfig -> ordered list of ResourceSpecs.

compile_desired_state is a pure function of its input. The same
configuration always yields the same specs in the same order, which
render_desired_state turns into byte-identical text.
"""

import hashlib
import ipaddress
import json
import re
from itertools import combinations

from .bastion import render_startup_script
from .config import ClusterConfig, PoolConfig
from .core import (
    CLUSTER_LABEL,
    CONTROL_PLANE_PORTS,
    IAP_RANGE,
    KUBE_API_PORT,
    MAX_CLUSTER_NAME_LENGTH,
    NAME_PATTERN,
    NODE_SERVICE_ACCOUNT_ROLES,
    RESERVED_RANGES,
    TALOS_API_PORT,
)
from .errors import ConfigurationError
from .schemas.base import KIND_ORDER, ResourceSpec
from .schemas.compute import (
    InstanceGroupSpec,
    InstanceSpec,
    LoadBalancerSpec,
    SchedulePolicySpec,
    StaticAddressSpec,
)
from .schemas.iam import ServiceAccountSpec
from .schemas.network import (
    FirewallRuleSpec,
    NatSpec,
    NetworkSpec,
    RouterSpec,
    SubnetSpec,
)
from .schemas.storage import BucketSpec

VERSION_PATTERN = re.compile(r"^v\d+\.\d+\.\d+$")
ADDON_VERSION_PATTERN = re.compile(r"^v?\d+\.\d+\.\d+$")
EXTENSION_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*/[a-z0-9][a-z0-9._-]*$")
PORT_PATTERN = re.compile(r"^\d{1,5}(-\d{1,5})?$")
RESERVED_POOL_NAMES = {"cp", "bastion", "storage"}
SUPPORTED_ARCHES = {"amd64", "arm64"}
MAX_POOL_NAME_LENGTH = 20


class _Role:
    """A fixed per-cluster resource name: attribute ``storage_vpc`` -> ``<cluster>-storage-vpc``."""

    def __set_name__(self, owner: type, attr: str) -> None:
        self.suffix = attr.replace("_", "-")

    def __get__(self, names: "Names | None", owner: type | None = None) -> str:
        if names is None:
            return self.suffix
        return f"{names.cluster}-{self.suffix}"


class Names:
    """Deterministic resource names for one cluster."""

    vpc = _Role()
    subnet = _Role()
    router = _Role()
    nat = _Role()
    storage_vpc = _Role()
    storage_subnet = _Role()
    internal = _Role()
    bastion_ssh = _Role()
    bastion_internal = _Role()
    healthcheck = _Role()
    worker_custom = _Role()
    storage_internal = _Role()
    sa = _Role()
    cp_ilb_ip = _Role()
    cp = _Role()
    worker = _Role()
    bastion = _Role()
    schedule = _Role()

    def __init__(self, cluster: str):
        self.cluster = cluster

    def instance(self, pool: str, index: int) -> str:
        return f"{self.cluster}-{pool}-{index}"

    def instance_group(self, pool: str) -> str:
        return f"{self.cluster}-ig-{pool}"

    def ingress_address(self, index: int) -> str:
        return f"{self.cluster}-ingress-v4-{index}"


def label_value(value: str) -> str:
    """GCE label values: lowercase letters, digits, '-' and '_', max 63."""
    return re.sub(r"[^a-z0-9_-]", "-", value.lower())[:63]


def image_name(version: str, arch: str, role: str, extensions: tuple[str, ...]) -> str:
    """
    Name of the GCE image for a Talos version/extension combination.

    Stock images are shared by every pool; images with system extensions get
    a short hash of the sorted extension list so each combination is built
    once.
    """
    ver = version.replace(".", "-").lower()
    if not extensions:
        return f"talos-{ver}-gcp-{arch}"
    digest = hashlib.md5(",".join(sorted(extensions)).encode()).hexdigest()[:8]
    return f"talos-{ver}-{role}-{digest}-{arch}"


def pool_image(config: ClusterConfig, pool: PoolConfig) -> str:
    role = "cp" if pool.role == "control-plane" else "worker"
    return image_name(pool.talos_version, config.arch, role, pool.extensions)


def required_images(config: ClusterConfig) -> dict[str, PoolConfig]:
    """Image name -> a pool that needs it (for version and extensions)."""
    images: dict[str, PoolConfig] = {}
    for pool in config.pools:
        if pool.count > 0:
            images.setdefault(pool_image(config, pool), pool)
    return images


def _parse_cidr(label: str, value: str) -> ipaddress.IPv4Network:
    try:
        return ipaddress.IPv4Network(value, strict=True)
    except ValueError as e:
        raise ConfigurationError(f"{label} is not a valid IPv4 CIDR: {value!r} ({e})") from None


def validate_config(config: ClusterConfig) -> None:
    """Raises ConfigurationError on the first problem found."""
    name = config.cluster_name
    if len(name) > MAX_CLUSTER_NAME_LENGTH:
        raise ConfigurationError(
            f"CLUSTER_NAME '{name}' is {len(name)} characters; "
            f"the limit is {MAX_CLUSTER_NAME_LENGTH}"
        )
    if not NAME_PATTERN.match(name):
        raise ConfigurationError(
            f"CLUSTER_NAME '{name}' must start with a letter and contain only "
            "lowercase letters, digits and hyphens"
        )
    if config.arch not in SUPPORTED_ARCHES:
        raise ConfigurationError(f"ARCH must be one of {sorted(SUPPORTED_ARCHES)}")

    # Pools
    if config.control_plane.count < 1:
        raise ConfigurationError(
            f"CP_COUNT must be at least 1, got {config.control_plane.count}"
        )
    seen: set[str] = set()
    for pool in config.worker_pools:
        if pool.name in seen:
            raise ConfigurationError(f"Node pool '{pool.name}' is declared twice")
        seen.add(pool.name)
        if pool.name in RESERVED_POOL_NAMES:
            raise ConfigurationError(f"Node pool name '{pool.name}' is reserved")
        if len(pool.name) > MAX_POOL_NAME_LENGTH or not NAME_PATTERN.match(pool.name):
            raise ConfigurationError(f"Node pool name '{pool.name}' is not a valid name")
    for pool in config.pools:
        if pool.count < 0:
            raise ConfigurationError(f"Pool '{pool.name}' count must be >= 0, got {pool.count}")
        if pool.disk_size_gb < 10:
            raise ConfigurationError(f"Pool '{pool.name}' disk must be at least 10GB")
        if not VERSION_PATTERN.match(pool.talos_version):
            raise ConfigurationError(
                f"Pool '{pool.name}' Talos version {pool.talos_version!r} is not vMAJOR.MINOR.PATCH"
            )
        for ext in pool.extensions:
            if not EXTENSION_PATTERN.match(ext):
                raise ConfigurationError(
                    f"Pool '{pool.name}' extension {ext!r} is not in <org>/<name> form"
                )
        if pool.use_storage_net and not config.storage_cidr:
            raise ConfigurationError(
                f"Pool '{pool.name}' uses the storage network but STORAGE_CIDR is unset"
            )

    # Versions
    if not VERSION_PATTERN.match(config.talos_version):
        raise ConfigurationError(f"TALOS_VERSION {config.talos_version!r} is not vMAJOR.MINOR.PATCH")
    if not VERSION_PATTERN.match(config.kubernetes_version):
        raise ConfigurationError(
            f"KUBERNETES_VERSION {config.kubernetes_version!r} is not vMAJOR.MINOR.PATCH"
        )
    if not ADDON_VERSION_PATTERN.match(config.cilium_version):
        raise ConfigurationError(f"CILIUM_VERSION {config.cilium_version!r} is not MAJOR.MINOR.PATCH")

    # Networks: must parse, stay clear of reserved ranges and of each other
    ranges = {
        "SUBNET_RANGE": config.subnet_range,
        "POD_CIDR": config.pod_cidr,
        "SERVICE_CIDR": config.service_cidr,
    }
    if config.storage_cidr:
        ranges["STORAGE_CIDR"] = config.storage_cidr
    parsed = {label: _parse_cidr(label, value) for label, value in ranges.items()}
    reserved = {label: ipaddress.IPv4Network(cidr) for label, cidr in RESERVED_RANGES.items()}

    for label, net in parsed.items():
        for reserved_label, reserved_net in reserved.items():
            if net.overlaps(reserved_net):
                raise ConfigurationError(
                    f"{label} {net} overlaps the reserved {reserved_label} range {reserved_net}"
                )
    for (a_label, a), (b_label, b) in combinations(parsed.items(), 2):
        if a.overlaps(b):
            raise ConfigurationError(f"{a_label} {a} overlaps {b_label} {b}")

    for source in config.worker_open_source_ranges:
        _parse_cidr("WORKER_OPEN_SOURCE_RANGES", source)
    for source in config.hc_source_ranges:
        _parse_cidr("HC_SOURCE_RANGES", source)
    for port in (*config.worker_open_tcp_ports, *config.worker_open_udp_ports):
        if not PORT_PATTERN.match(port):
            raise ConfigurationError(f"Worker port {port!r} is not a port or port range")

    if config.ingress_ip_count < 0:
        raise ConfigurationError("INGRESS_IP_COUNT must be >= 0")


def _network_specs(config: ClusterConfig, n: Names, labels: dict[str, str]) -> list[ResourceSpec]:
    specs: list[ResourceSpec] = [
        NetworkSpec(name=n.vpc, labels=labels),
        SubnetSpec(
            name=n.subnet,
            labels=labels,
            network=n.vpc,
            region=config.region,
            cidr_range=config.subnet_range,
            secondary_ranges=(
                {"pods": config.pod_cidr} if config.cilium_routing_mode == "native" else {}
            ),
            depends_on=(n.vpc,),
        ),
        RouterSpec(
            name=n.router,
            labels=labels,
            network=n.vpc,
            region=config.region,
            depends_on=(n.vpc,),
        ),
        NatSpec(
            name=n.nat,
            labels=labels,
            router=n.router,
            region=config.region,
            depends_on=(n.router, n.subnet),
        ),
    ]

    cp_ports = [str(p) for p in CONTROL_PLANE_PORTS]
    internal_sources = sorted({config.subnet_range, config.pod_cidr, config.service_cidr})
    specs += [
        FirewallRuleSpec(
            name=n.internal,
            labels=labels,
            network=n.vpc,
            allowed=["icmp", "tcp", "udp"],
            source_ranges=internal_sources,
            depends_on=(n.vpc,),
        ),
        FirewallRuleSpec(
            name=n.bastion_ssh,
            labels=labels,
            network=n.vpc,
            allowed=["tcp:22"],
            source_ranges=[IAP_RANGE],
            target_tags=["bastion"],
            depends_on=(n.vpc,),
        ),
        FirewallRuleSpec(
            name=n.bastion_internal,
            labels=labels,
            network=n.vpc,
            allowed=[f"tcp:{','.join(cp_ports)}"],
            source_tags=["bastion"],
            depends_on=(n.vpc,),
        ),
        FirewallRuleSpec(
            name=n.healthcheck,
            labels=labels,
            network=n.vpc,
            allowed=[f"tcp:{','.join(cp_ports)}"],
            source_ranges=sorted(config.hc_source_ranges),
            depends_on=(n.vpc,),
        ),
    ]

    if config.worker_open_tcp_ports or config.worker_open_udp_ports:
        allowed = []
        if config.worker_open_tcp_ports:
            allowed.append(f"tcp:{','.join(sorted(config.worker_open_tcp_ports))}")
        if config.worker_open_udp_ports:
            allowed.append(f"udp:{','.join(sorted(config.worker_open_udp_ports))}")
        specs.append(
            FirewallRuleSpec(
                name=n.worker_custom,
                labels=labels,
                network=n.vpc,
                allowed=allowed,
                source_ranges=sorted(config.worker_open_source_ranges),
                target_tags=[n.worker],
                depends_on=(n.vpc,),
            )
        )

    if config.storage_cidr:
        specs += [
            NetworkSpec(name=n.storage_vpc, labels=labels, mtu=8896),
            SubnetSpec(
                name=n.storage_subnet,
                labels=labels,
                network=n.storage_vpc,
                region=config.region,
                cidr_range=config.storage_cidr,
                depends_on=(n.storage_vpc,),
            ),
            FirewallRuleSpec(
                name=n.storage_internal,
                labels=labels,
                network=n.storage_vpc,
                allowed=["icmp", "tcp", "udp"],
                source_ranges=[config.storage_cidr],
                depends_on=(n.storage_vpc,),
            ),
        ]
    return specs


def _instance_labels(config: ClusterConfig, pool: PoolConfig, base: dict[str, str]) -> dict[str, str]:
    labels = {label_value(k): label_value(v) for k, v in config.extra_labels.items()}
    labels.update(base)
    labels["role"] = pool.role
    labels["pool"] = pool.name
    labels["talos-version"] = label_value(pool.talos_version)
    labels["k8s-version"] = label_value(config.kubernetes_version)
    if config.install_cilium:
        labels["cilium-version"] = label_value(config.cilium_version)
    return labels


def _node_specs(config: ClusterConfig, n: Names, labels: dict[str, str]) -> list[ResourceSpec]:
    specs: list[ResourceSpec] = []
    out = config.output_dir

    for pool in config.pools:
        group = n.instance_group(pool.name)
        named_ports = {f"tcp{KUBE_API_PORT}": KUBE_API_PORT} if pool.role == "control-plane" else {}
        specs.append(
            InstanceGroupSpec(
                name=group,
                labels=labels,
                zone=config.zone,
                network=n.vpc,
                named_ports=named_ports,
                depends_on=(n.subnet,),
            )
        )

    for pool in config.pools:
        is_cp = pool.role == "control-plane"
        if is_cp:
            tags = ["talos-controlplane", n.cp]
            user_data = out / "controlplane.yaml"
        else:
            tags = ["talos-worker", n.worker, f"{config.cluster_name}-{pool.name}"]
            user_data = out / f"worker-{pool.name}.yaml"
        depends = [n.subnet, n.instance_group(pool.name), n.sa]
        if pool.use_storage_net:
            depends.append(n.storage_subnet)

        for index in range(max(pool.count, 0)):
            specs.append(
                InstanceSpec(
                    name=n.instance(pool.name, index),
                    labels=_instance_labels(config, pool, labels),
                    zone=config.zone,
                    role=pool.role,
                    pool=pool.name,
                    index=index,
                    machine_type=pool.machine_type,
                    disk_size_gb=pool.disk_size_gb,
                    image=pool_image(config, pool),
                    subnetwork=n.subnet,
                    storage_subnetwork=n.storage_subnet if pool.use_storage_net else None,
                    service_account=n.sa,
                    pod_alias=config.cilium_routing_mode == "native",
                    tags=sorted(set(tags)),
                    instance_group=n.instance_group(pool.name),
                    user_data_file=str(user_data),
                    depends_on=tuple(depends),
                )
            )
    return specs


def bastion_spec(config: ClusterConfig) -> InstanceSpec:
    n = Names(config.cluster_name)
    labels = {CLUSTER_LABEL: config.cluster_name, "role": "bastion", "pool": "bastion"}
    return InstanceSpec(
        name=n.bastion,
        labels=labels,
        zone=config.zone,
        role="bastion",
        pool="bastion",
        machine_type=config.bastion_machine_type,
        disk_size_gb=20,
        image=f"{config.bastion_image_project}/family/{config.bastion_image_family}",
        subnetwork=n.subnet,
        service_account=n.sa,
        tags=sorted(["bastion", n.bastion]),
        startup_script=render_startup_script(config),
        depends_on=(n.subnet, n.sa, n.bastion_ssh),
    )


def compile_desired_state(config: ClusterConfig) -> list[ResourceSpec]:
    """
    Validates the configuration and expands it into every resource the
    cluster should own, ordered by kind dependency order.
    """
    validate_config(config)

    n = Names(config.cluster_name)
    labels = {CLUSTER_LABEL: config.cluster_name}

    specs: list[ResourceSpec] = _network_specs(config, n, labels)

    specs.append(
        ServiceAccountSpec(
            name=n.sa,
            labels=labels,
            project_id=config.project_id,
            display_name=f"Talos nodes for {config.cluster_name}",
            roles=sorted(NODE_SERVICE_ACCOUNT_ROLES),
        )
    )
    specs.append(BucketSpec(name=config.bucket_name, labels=labels, location=config.region.upper()))

    specs.append(
        StaticAddressSpec(
            name=n.cp_ilb_ip,
            labels=labels,
            region=config.region,
            address_type="INTERNAL",
            subnetwork=n.subnet,
            depends_on=(n.subnet,),
        )
    )
    for i in range(config.ingress_ip_count):
        specs.append(
            StaticAddressSpec(
                name=n.ingress_address(i),
                labels=labels,
                region=config.region,
                address_type="EXTERNAL",
            )
        )

    specs += _node_specs(config, n, labels)
    specs.append(bastion_spec(config))

    specs.append(
        LoadBalancerSpec(
            name=n.cp,
            labels=labels,
            region=config.region,
            zone=config.zone,
            ports=list(CONTROL_PLANE_PORTS),
            health_check_port=TALOS_API_PORT,
            address=n.cp_ilb_ip,
            network=n.vpc,
            subnetwork=n.subnet,
            backends=[n.instance_group("cp")],
            depends_on=(n.cp_ilb_ip, n.instance_group("cp"), n.healthcheck),
        )
    )

    if config.work_hours:
        attached = [s.name for s in specs if isinstance(s, InstanceSpec)]
        specs.append(
            SchedulePolicySpec(
                name=n.schedule,
                labels=labels,
                region=config.region,
                zone=config.zone,
                start_cron=config.work_hours.start_cron,
                stop_cron=config.work_hours.stop_cron,
                timezone=config.work_hours.timezone,
                instances=sorted(attached),
                depends_on=tuple(attached),
            )
        )

    # Stable sort keeps generation order within a kind
    return sorted(specs, key=lambda s: KIND_ORDER.index(s.kind))


def render_desired_state(specs: list[ResourceSpec]) -> str:
    """Canonical JSON text of a compiled state."""
    records = [{**s.as_record(), "depends_on": list(s.depends_on)} for s in specs]
    return json.dumps(records, indent=2, sort_keys=True)
