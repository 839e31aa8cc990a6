from collections.abc import Callable, Iterable

from .core import in_scope
from .logger import logger
from .schemas.base import KIND_ORDER, RemoteSnapshot, ResourceKind, ResourceSpec
from .walkers import compute, iam, network, storage


def _instances(project_id: str) -> list[ResourceSpec]:
    # Membership lookups only for managed groups
    groups = [g for g in compute.list_instance_groups(project_id) if g.labels]
    memberships = compute.group_memberships(project_id, groups)
    return list(compute.list_instances(project_id, memberships))


def _load_balancers(project_id: str) -> list[ResourceSpec]:
    return list(compute.list_load_balancers(project_id, compute.list_addresses(project_id)))


READERS: dict[ResourceKind, Callable[[str], list]] = {
    ResourceKind.NETWORK: network.list_networks,
    ResourceKind.SUBNET: network.list_subnets,
    ResourceKind.ROUTER: network.list_routers,
    ResourceKind.NAT: network.list_nats,
    ResourceKind.FIREWALL_RULE: network.list_firewalls,
    ResourceKind.SERVICE_ACCOUNT: iam.list_service_accounts,
    ResourceKind.BUCKET: storage.list_buckets,
    ResourceKind.STATIC_ADDRESS: compute.list_addresses,
    ResourceKind.INSTANCE_GROUP: compute.list_instance_groups,
    ResourceKind.INSTANCE: _instances,
    ResourceKind.LOAD_BALANCER: _load_balancers,
    ResourceKind.SCHEDULE_POLICY: compute.list_schedule_policies,
}


def read_kind(project_id: str, kind: ResourceKind) -> list[ResourceSpec]:
    """Every resource of a kind in the project, managed or not."""
    return READERS[kind](project_id)


def read_snapshot(
    project_id: str, cluster: str | None, kinds: Iterable[ResourceKind] | None = None
) -> RemoteSnapshot:
    """
    Reads the label scope: resources labeled cluster=<cluster>, or with
    cluster=None every resource labeled by any managed cluster.
    """
    wanted = set(kinds) if kinds is not None else set(KIND_ORDER)
    resources: list[ResourceSpec] = []
    for kind in KIND_ORDER:
        if kind not in wanted:
            continue
        found = [r for r in read_kind(project_id, kind) if in_scope(r.labels, cluster)]
        logger.debug(f"{kind.value}: {len(found)} in scope {cluster or '*'}")
        resources.extend(found)
    return RemoteSnapshot.build(cluster, resources)
