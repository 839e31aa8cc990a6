import re
from datetime import datetime
from typing import Any

from tenacity import retry

from ..clients import (
    get_addresses_client,
    get_backend_services_client,
    get_forwarding_rules_client,
    get_health_checks_client,
    get_instance_groups_client,
    get_instances_client,
    get_resource_policies_client,
)
from ..core import CLUSTER_LABEL, RETRY_CONFIG, decode_description, short_name
from ..logger import logger
from ..schemas.compute import (
    InstanceGroupSpec,
    InstanceSpec,
    LoadBalancerSpec,
    SchedulePolicySpec,
    StaticAddressSpec,
)

# Metadata key recording which image an instance was created from
IMAGE_METADATA_KEY = "talos-gcp-image"


@retry(**RETRY_CONFIG)  # type: ignore[call-overload, untyped-decorator]
def _aggregated(client: Any, attr: str, project_id: str) -> list[tuple[str, Any]]:
    """Flattens an aggregated list into (region-or-zone, item) pairs."""
    items = []
    for scope, scoped_list in client.aggregated_list(project=project_id):
        for item in getattr(scoped_list, attr, None) or []:
            items.append((scope.split("/")[-1], item))
    return items


def list_addresses(project_id: str) -> list[StaticAddressSpec]:
    addresses = []
    for region, addr in _aggregated(get_addresses_client(), "addresses", project_id):
        subnet = short_name(addr.subnetwork) or None
        addresses.append(
            StaticAddressSpec(
                name=addr.name,
                labels=dict(addr.labels),
                region=region,
                address_type=addr.address_type or "EXTERNAL",
                subnetwork=subnet,
                address=addr.address or None,
                status=str(addr.status) if addr.status else None,
                depends_on=(subnet,) if subnet else (),
            )
        )
    return addresses


def list_instance_groups(project_id: str) -> list[InstanceGroupSpec]:
    groups = []
    for zone, ig in _aggregated(get_instance_groups_client(), "instance_groups", project_id):
        subnet = short_name(ig.subnetwork)
        groups.append(
            InstanceGroupSpec(
                name=ig.name,
                labels=decode_description(ig.description),
                zone=zone,
                network=short_name(ig.network),
                named_ports={np.name: np.port for np in ig.named_ports},
                depends_on=(subnet,) if subnet else (),
            )
        )
    return groups


@retry(**RETRY_CONFIG)  # type: ignore[call-overload, untyped-decorator]
def group_memberships(project_id: str, groups: list[InstanceGroupSpec]) -> dict[str, str]:
    """instance name -> instance group name, for the given groups."""
    client = get_instance_groups_client()
    members: dict[str, str] = {}
    for group in groups:
        for entry in client.list_instances(
            project=project_id, zone=group.zone, instance_group=group.name
        ):
            members[short_name(entry.instance)] = group.name
    return members


def _pool_index(name: str, labels: dict[str, str]) -> int | None:
    cluster, pool = labels.get(CLUSTER_LABEL), labels.get("pool")
    if not cluster or not pool or pool == "bastion":
        return None
    match = re.fullmatch(rf"{re.escape(cluster)}-{re.escape(pool)}-(\d+)", name)
    return int(match.group(1)) if match else None


def _metadata_value(inst: Any, key: str) -> str | None:
    if not inst.metadata:
        return None
    for item in inst.metadata.items:
        if item.key == key:
            return item.value
    return None


def _created_at(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        logger.debug(f"Unparseable creation timestamp {raw!r}")
        return None


def list_instances(project_id: str, memberships: dict[str, str] | None = None) -> list[InstanceSpec]:
    """
    VM instances. ``memberships`` (see group_memberships) fills in the
    instance group of each instance.
    """
    memberships = memberships or {}
    instances = []
    for zone, inst in _aggregated(get_instances_client(), "instances", project_id):
        labels = dict(inst.labels)
        nics = list(inst.network_interfaces)
        nic0 = nics[0] if nics else None
        subnet = short_name(nic0.subnetwork) if nic0 else ""
        group = memberships.get(inst.name)
        sa = None
        if inst.service_accounts:
            sa = inst.service_accounts[0].email.split("@")[0]
        disk_size = inst.disks[0].disk_size_gb if inst.disks else 0

        depends = [d for d in (subnet, group, sa) if d]
        instances.append(
            InstanceSpec(
                name=inst.name,
                labels=labels,
                zone=zone,
                role=labels.get("role", ""),
                pool=labels.get("pool", ""),
                index=_pool_index(inst.name, labels),
                machine_type=short_name(inst.machine_type),
                disk_size_gb=disk_size,
                image=_metadata_value(inst, IMAGE_METADATA_KEY) or "",
                subnetwork=subnet,
                storage_subnetwork=short_name(nics[1].subnetwork) if len(nics) > 1 else None,
                service_account=sa,
                pod_alias=bool(nic0 and nic0.alias_ip_ranges),
                tags=sorted(inst.tags.items) if inst.tags else [],
                instance_group=group,
                status=str(inst.status) if inst.status else None,
                internal_ip=nic0.network_i_p if nic0 else None,
                created_at=_created_at(inst.creation_timestamp),
                depends_on=tuple(depends),
            )
        )
    return instances


def list_load_balancers(
    project_id: str, addresses: list[StaticAddressSpec] | None = None
) -> list[LoadBalancerSpec]:
    """
    Reassembles managed load balancers from their forwarding rules
    (``<name>-rule``), backend services and health checks.
    """
    by_ip = {(a.region, a.address): a.name for a in addresses or [] if a.address}
    be_client = get_backend_services_client()
    hc_client = get_health_checks_client()

    lbs = []
    for region, rule in _aggregated(get_forwarding_rules_client(), "forwarding_rules", project_id):
        labels = decode_description(rule.description)
        if not labels or not rule.name.endswith("-rule") or not rule.backend_service:
            continue
        name = rule.name[: -len("-rule")]

        backend = be_client.get(
            project=project_id, region=region, backend_service=short_name(rule.backend_service)
        )
        hc_port = 0
        if backend.health_checks:
            hc = hc_client.get(
                project=project_id,
                region=region,
                health_check=short_name(backend.health_checks[0]),
            )
            hc_port = hc.tcp_health_check.port if hc.tcp_health_check else 0

        address = by_ip.get((region, rule.I_p_address), rule.I_p_address)
        backends = sorted(short_name(b.group) for b in backend.backends)
        zone = backend.backends[0].group.split("/")[-3] if backend.backends else ""
        lbs.append(
            LoadBalancerSpec(
                name=name,
                labels=labels,
                region=region,
                zone=zone,
                scheme=rule.load_balancing_scheme or "INTERNAL",
                ports=sorted(int(p) for p in rule.ports),
                health_check_port=hc_port,
                address=address,
                network=short_name(rule.network),
                subnetwork=short_name(rule.subnetwork),
                backends=backends,
                depends_on=(address, *backends),
            )
        )
    return lbs


def list_schedule_policies(project_id: str) -> list[SchedulePolicySpec]:
    """Instance schedule policies and the instances each is attached to."""
    attached: dict[str, list[tuple[str, str]]] = {}
    for zone, inst in _aggregated(get_instances_client(), "instances", project_id):
        for policy in inst.resource_policies:
            attached.setdefault(short_name(policy), []).append((zone, inst.name))

    policies = []
    for region, policy in _aggregated(
        get_resource_policies_client(), "resource_policies", project_id
    ):
        schedule = policy.instance_schedule_policy
        if not schedule or not schedule.vm_start_schedule:
            continue
        members = attached.get(policy.name, [])
        names = sorted(name for _zone, name in members)
        policies.append(
            SchedulePolicySpec(
                name=policy.name,
                labels=decode_description(policy.description),
                region=region,
                zone=members[0][0] if members else "",
                start_cron=schedule.vm_start_schedule.schedule,
                stop_cron=schedule.vm_stop_schedule.schedule,
                timezone=schedule.time_zone,
                instances=names,
                depends_on=tuple(names),
            )
        )
    return policies
