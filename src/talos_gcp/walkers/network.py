from typing import Any

from tenacity import retry

from ..clients import (
    get_firewalls_client,
    get_networks_client,
    get_routers_client,
    get_subnetworks_client,
)
from ..core import RETRY_CONFIG, decode_description, short_name
from ..schemas.network import (
    FirewallRuleSpec,
    NatSpec,
    NetworkSpec,
    RouterSpec,
    SubnetSpec,
)


@retry(**RETRY_CONFIG)  # type: ignore[call-overload, untyped-decorator]
def list_networks(project_id: str) -> list[NetworkSpec]:
    """VPC networks in the project. Ownership labels live in the description."""
    client = get_networks_client()
    return [
        NetworkSpec(
            name=net.name,
            labels=decode_description(net.description),
            auto_create_subnetworks=bool(net.auto_create_subnetworks),
            mtu=net.mtu or 1460,
        )
        for net in client.list(project=project_id)
    ]


@retry(**RETRY_CONFIG)  # type: ignore[call-overload, untyped-decorator]
def list_subnets(project_id: str) -> list[SubnetSpec]:
    client = get_subnetworks_client()
    subnets = []
    for region, subnet_list in client.aggregated_list(project=project_id):
        if not subnet_list.subnetworks:
            continue
        for sn in subnet_list.subnetworks:
            network = short_name(sn.network)
            subnets.append(
                SubnetSpec(
                    name=sn.name,
                    labels=decode_description(sn.description),
                    network=network,
                    region=region.split("/")[-1],
                    cidr_range=sn.ip_cidr_range,
                    secondary_ranges={
                        r.range_name: r.ip_cidr_range for r in sn.secondary_ip_ranges
                    },
                    private_google_access=bool(sn.private_ip_google_access),
                    depends_on=(network,),
                )
            )
    return subnets


@retry(**RETRY_CONFIG)  # type: ignore[call-overload, untyped-decorator]
def _list_routers(project_id: str) -> list[tuple[str, Any]]:
    client = get_routers_client()
    routers = []
    for region, router_list in client.aggregated_list(project=project_id):
        if not router_list.routers:
            continue
        routers.extend((region.split("/")[-1], r) for r in router_list.routers)
    return routers


def list_routers(project_id: str) -> list[RouterSpec]:
    return [
        RouterSpec(
            name=router.name,
            labels=decode_description(router.description),
            network=short_name(router.network),
            region=region,
            depends_on=(short_name(router.network),),
        )
        for region, router in _list_routers(project_id)
    ]


def list_nats(project_id: str) -> list[NatSpec]:
    """
    Cloud NAT configs. They have no description of their own and inherit
    the labels of the router that holds them.
    """
    nats = []
    for region, router in _list_routers(project_id):
        labels = decode_description(router.description)
        for nat in router.nats:
            nats.append(
                NatSpec(
                    name=nat.name,
                    labels=labels,
                    router=router.name,
                    region=region,
                    depends_on=(router.name,),
                )
            )
    return nats


def _format_allowed(items: Any) -> list[str]:
    entries = []
    for item in items or []:
        proto = str(getattr(item, "I_p_protocol", getattr(item, "IP_protocol", "unknown")))
        if item.ports:
            proto += f":{','.join(item.ports)}"
        entries.append(proto)
    return sorted(entries)


@retry(**RETRY_CONFIG)  # type: ignore[call-overload, untyped-decorator]
def list_firewalls(project_id: str) -> list[FirewallRuleSpec]:
    client = get_firewalls_client()
    rules = []
    for fw in client.list(project=project_id):
        network = short_name(fw.network)
        rules.append(
            FirewallRuleSpec(
                name=fw.name,
                labels=decode_description(fw.description),
                network=network,
                direction=fw.direction or "INGRESS",
                priority=fw.priority,
                allowed=_format_allowed(fw.allowed),
                source_ranges=sorted(fw.source_ranges),
                source_tags=sorted(fw.source_tags),
                target_tags=sorted(fw.target_tags),
                depends_on=(network,),
            )
        )
    return rules
