import contextlib

from google.api_core import exceptions
from google.cloud import compute_v1

from ..clients import (
    get_firewalls_client,
    get_networks_client,
    get_routers_client,
    get_subnetworks_client,
)
from ..core import encode_description
from ..logger import logger
from ..schemas.network import (
    FirewallRuleSpec,
    NatSpec,
    NetworkSpec,
    RouterSpec,
    SubnetSpec,
)


def network_url(project_id: str, network: str) -> str:
    return f"projects/{project_id}/global/networks/{network}"


def subnet_url(project_id: str, region: str, subnet: str) -> str:
    return f"projects/{project_id}/regions/{region}/subnetworks/{subnet}"


# --- Networks ---


def create_network(project_id: str, spec: NetworkSpec, timeout: int) -> None:
    network = compute_v1.Network(
        name=spec.name,
        auto_create_subnetworks=spec.auto_create_subnetworks,
        mtu=spec.mtu,
        description=encode_description(spec.labels),
        routing_config=compute_v1.NetworkRoutingConfig(routing_mode="REGIONAL"),
    )
    op = get_networks_client().insert(project=project_id, network_resource=network)
    op.result(timeout=timeout)


def delete_network(project_id: str, spec: NetworkSpec, timeout: int) -> None:
    with contextlib.suppress(exceptions.NotFound):
        get_networks_client().delete(project=project_id, network=spec.name).result(timeout=timeout)


# --- Subnets ---


def _secondary_ranges(spec: SubnetSpec) -> list[compute_v1.SubnetworkSecondaryRange]:
    return [
        compute_v1.SubnetworkSecondaryRange(range_name=name, ip_cidr_range=cidr)
        for name, cidr in sorted(spec.secondary_ranges.items())
    ]


def create_subnet(project_id: str, spec: SubnetSpec, timeout: int) -> None:
    subnet = compute_v1.Subnetwork(
        name=spec.name,
        network=network_url(project_id, spec.network),
        region=spec.region,
        ip_cidr_range=spec.cidr_range,
        private_ip_google_access=spec.private_google_access,
        secondary_ip_ranges=_secondary_ranges(spec),
        description=encode_description(spec.labels),
    )
    op = get_subnetworks_client().insert(
        project=project_id, region=spec.region, subnetwork_resource=subnet
    )
    op.result(timeout=timeout)


def update_subnet(project_id: str, desired: SubnetSpec, actual: SubnetSpec, timeout: int) -> None:
    client = get_subnetworks_client()
    if desired.private_google_access != actual.private_google_access:
        request = compute_v1.SubnetworksSetPrivateIpGoogleAccessRequest(
            private_ip_google_access=desired.private_google_access
        )
        client.set_private_ip_google_access(
            project=project_id,
            region=desired.region,
            subnetwork=desired.name,
            subnetworks_set_private_ip_google_access_request_resource=request,
        ).result(timeout=timeout)

    if desired.secondary_ranges != actual.secondary_ranges:
        current = client.get(project=project_id, region=desired.region, subnetwork=desired.name)
        patch = compute_v1.Subnetwork(
            secondary_ip_ranges=_secondary_ranges(desired),
            fingerprint=current.fingerprint,
        )
        client.patch(
            project=project_id,
            region=desired.region,
            subnetwork=desired.name,
            subnetwork_resource=patch,
        ).result(timeout=timeout)


def delete_subnet(project_id: str, spec: SubnetSpec, timeout: int) -> None:
    with contextlib.suppress(exceptions.NotFound):
        get_subnetworks_client().delete(
            project=project_id, region=spec.region, subnetwork=spec.name
        ).result(timeout=timeout)


# --- Routers & NAT ---


def create_router(project_id: str, spec: RouterSpec, timeout: int) -> None:
    router = compute_v1.Router(
        name=spec.name,
        network=network_url(project_id, spec.network),
        region=spec.region,
        description=encode_description(spec.labels),
    )
    op = get_routers_client().insert(project=project_id, region=spec.region, router_resource=router)
    op.result(timeout=timeout)


def delete_router(project_id: str, spec: RouterSpec, timeout: int) -> None:
    with contextlib.suppress(exceptions.NotFound):
        get_routers_client().delete(
            project=project_id, region=spec.region, router=spec.name
        ).result(timeout=timeout)


def create_nat(project_id: str, spec: NatSpec, timeout: int) -> None:
    """Adds the NAT config to its router (full update, so the NAT list is exact)."""
    client = get_routers_client()
    router = client.get(project=project_id, region=spec.region, router=spec.router)
    if any(n.name == spec.name for n in router.nats):
        raise exceptions.Conflict(f"NAT {spec.name} already exists on router {spec.router}")
    router.nats.append(
        compute_v1.RouterNat(
            name=spec.name,
            nat_ip_allocate_option="AUTO_ONLY",
            source_subnetwork_ip_ranges_to_nat="ALL_SUBNETWORKS_ALL_IP_RANGES",
            log_config=compute_v1.RouterNatLogConfig(enable=True, filter="ERRORS_ONLY"),
        )
    )
    client.update(
        project=project_id, region=spec.region, router=spec.router, router_resource=router
    ).result(timeout=timeout)


def delete_nat(project_id: str, spec: NatSpec, timeout: int) -> None:
    client = get_routers_client()
    try:
        router = client.get(project=project_id, region=spec.region, router=spec.router)
    except exceptions.NotFound:
        logger.debug(f"Router {spec.router} already gone; NAT {spec.name} with it")
        return
    count = len(router.nats)
    for i in reversed(range(count)):
        if router.nats[i].name == spec.name:
            del router.nats[i]
    if len(router.nats) == count:
        return
    client.update(
        project=project_id, region=spec.region, router=spec.router, router_resource=router
    ).result(timeout=timeout)


# --- Firewalls ---


def parse_allowed(entries: list[str]) -> list[compute_v1.Allowed]:
    """['tcp:22,80', 'icmp'] -> Allowed messages."""
    allowed = []
    for entry in entries:
        proto, _, ports = entry.partition(":")
        allowed.append(
            compute_v1.Allowed(I_p_protocol=proto, ports=ports.split(",") if ports else [])
        )
    return allowed


def _firewall(project_id: str, spec: FirewallRuleSpec) -> compute_v1.Firewall:
    return compute_v1.Firewall(
        name=spec.name,
        network=network_url(project_id, spec.network),
        direction=spec.direction,
        priority=spec.priority,
        allowed=parse_allowed(spec.allowed),
        source_ranges=spec.source_ranges,
        source_tags=spec.source_tags,
        target_tags=spec.target_tags,
        description=encode_description(spec.labels),
    )


def create_firewall(project_id: str, spec: FirewallRuleSpec, timeout: int) -> None:
    op = get_firewalls_client().insert(project=project_id, firewall_resource=_firewall(project_id, spec))
    op.result(timeout=timeout)


def update_firewall(
    project_id: str, desired: FirewallRuleSpec, actual: FirewallRuleSpec, timeout: int
) -> None:
    # PUT rather than PATCH so emptied lists (e.g. source_tags) are cleared
    op = get_firewalls_client().update(
        project=project_id,
        firewall=desired.name,
        firewall_resource=_firewall(project_id, desired),
    )
    op.result(timeout=timeout)


def delete_firewall(project_id: str, spec: FirewallRuleSpec, timeout: int) -> None:
    with contextlib.suppress(exceptions.NotFound):
        get_firewalls_client().delete(project=project_id, firewall=spec.name).result(timeout=timeout)
