import contextlib
from pathlib import Path

from google.api_core import exceptions
from google.cloud import compute_v1

from ..clients import (
    get_addresses_client,
    get_backend_services_client,
    get_forwarding_rules_client,
    get_health_checks_client,
    get_instance_groups_client,
    get_instances_client,
    get_resource_policies_client,
)
from ..core import encode_description
from ..errors import ConfigurationError
from ..logger import logger
from ..schemas.compute import (
    InstanceGroupSpec,
    InstanceSpec,
    LoadBalancerSpec,
    SchedulePolicySpec,
    StaticAddressSpec,
)
from ..walkers.compute import IMAGE_METADATA_KEY
from .network import network_url, subnet_url

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


def region_of(zone: str) -> str:
    return zone.rsplit("-", 1)[0]


def instance_url(project_id: str, zone: str, name: str) -> str:
    return f"projects/{project_id}/zones/{zone}/instances/{name}"


def instance_group_url(project_id: str, zone: str, name: str) -> str:
    return f"projects/{project_id}/zones/{zone}/instanceGroups/{name}"


def image_url(project_id: str, image: str) -> str:
    """'talos-...' -> project image; '<project>/family/<family>' -> family in that project."""
    if "/family/" in image:
        image_project, family = image.split("/family/", 1)
        return f"projects/{image_project}/global/images/family/{family}"
    return f"projects/{project_id}/global/images/{image}"


# --- Static addresses ---


def create_address(project_id: str, spec: StaticAddressSpec, timeout: int) -> None:
    address = compute_v1.Address(
        name=spec.name,
        address_type=spec.address_type,
        labels=spec.labels,
        description=encode_description(spec.labels),
    )
    if spec.subnetwork:
        address.subnetwork = subnet_url(project_id, spec.region, spec.subnetwork)
    op = get_addresses_client().insert(
        project=project_id, region=spec.region, address_resource=address
    )
    op.result(timeout=timeout)


def delete_address(project_id: str, spec: StaticAddressSpec, timeout: int) -> None:
    with contextlib.suppress(exceptions.NotFound):
        get_addresses_client().delete(
            project=project_id, region=spec.region, address=spec.name
        ).result(timeout=timeout)


def get_address_ip(project_id: str, region: str, name: str) -> str:
    return get_addresses_client().get(project=project_id, region=region, address=name).address


# --- Instance groups ---


def _named_ports(ports: dict[str, int]) -> list[compute_v1.NamedPort]:
    return [compute_v1.NamedPort(name=k, port=v) for k, v in sorted(ports.items())]


def create_instance_group(project_id: str, spec: InstanceGroupSpec, timeout: int) -> None:
    group = compute_v1.InstanceGroup(
        name=spec.name,
        network=network_url(project_id, spec.network),
        named_ports=_named_ports(spec.named_ports),
        description=encode_description(spec.labels),
    )
    op = get_instance_groups_client().insert(
        project=project_id, zone=spec.zone, instance_group_resource=group
    )
    op.result(timeout=timeout)


def update_instance_group(
    project_id: str, desired: InstanceGroupSpec, actual: InstanceGroupSpec, timeout: int
) -> None:
    client = get_instance_groups_client()
    current = client.get(project=project_id, zone=desired.zone, instance_group=desired.name)
    request = compute_v1.InstanceGroupsSetNamedPortsRequest(
        named_ports=_named_ports(desired.named_ports), fingerprint=current.fingerprint
    )
    client.set_named_ports(
        project=project_id,
        zone=desired.zone,
        instance_group=desired.name,
        instance_groups_set_named_ports_request_resource=request,
    ).result(timeout=timeout)


def delete_instance_group(project_id: str, spec: InstanceGroupSpec, timeout: int) -> None:
    with contextlib.suppress(exceptions.NotFound):
        get_instance_groups_client().delete(
            project=project_id, zone=spec.zone, instance_group=spec.name
        ).result(timeout=timeout)


def add_to_group(project_id: str, zone: str, group: str, instance: str, timeout: int) -> None:
    request = compute_v1.InstanceGroupsAddInstancesRequest(
        instances=[compute_v1.InstanceReference(instance=instance_url(project_id, zone, instance))]
    )
    get_instance_groups_client().add_instances(
        project=project_id,
        zone=zone,
        instance_group=group,
        instance_groups_add_instances_request_resource=request,
    ).result(timeout=timeout)


def remove_from_group(project_id: str, zone: str, group: str, instance: str, timeout: int) -> None:
    request = compute_v1.InstanceGroupsRemoveInstancesRequest(
        instances=[compute_v1.InstanceReference(instance=instance_url(project_id, zone, instance))]
    )
    with contextlib.suppress(exceptions.NotFound):
        get_instance_groups_client().remove_instances(
            project=project_id,
            zone=zone,
            instance_group=group,
            instance_groups_remove_instances_request_resource=request,
        ).result(timeout=timeout)


# --- Instances ---


def _metadata(spec: InstanceSpec) -> compute_v1.Metadata:
    items = {IMAGE_METADATA_KEY: spec.image, "enable-oslogin": "TRUE"}
    if spec.user_data_file:
        path = Path(spec.user_data_file)
        if not path.is_file():
            raise ConfigurationError(
                f"Machine config {path} has not been generated; run the infrastructure phase",
                kind=spec.kind.value,
                name=spec.name,
            )
        items["user-data"] = path.read_text()
    if spec.startup_script:
        items["startup-script"] = spec.startup_script
    return compute_v1.Metadata(
        items=[compute_v1.Items(key=k, value=v) for k, v in sorted(items.items())]
    )


def build_instance(project_id: str, spec: InstanceSpec) -> compute_v1.Instance:
    region = region_of(spec.zone)
    nic0 = compute_v1.NetworkInterface(subnetwork=subnet_url(project_id, region, spec.subnetwork))
    if spec.pod_alias:
        nic0.alias_ip_ranges = [
            compute_v1.AliasIpRange(ip_cidr_range="/24", subnetwork_range_name="pods")
        ]
    nics = [nic0]
    if spec.storage_subnetwork:
        nics.append(
            compute_v1.NetworkInterface(
                subnetwork=subnet_url(project_id, region, spec.storage_subnetwork)
            )
        )

    disk = compute_v1.AttachedDisk(
        boot=True,
        auto_delete=True,
        initialize_params=compute_v1.AttachedDiskInitializeParams(
            source_image=image_url(project_id, spec.image),
            disk_size_gb=spec.disk_size_gb,
            disk_type=f"zones/{spec.zone}/diskTypes/pd-balanced",
        ),
    )

    instance = compute_v1.Instance(
        name=spec.name,
        machine_type=f"zones/{spec.zone}/machineTypes/{spec.machine_type}",
        disks=[disk],
        network_interfaces=nics,
        labels=spec.labels,
        tags=compute_v1.Tags(items=spec.tags),
        metadata=_metadata(spec),
        can_ip_forward=spec.role != "bastion",
    )
    if spec.service_account:
        instance.service_accounts = [
            compute_v1.ServiceAccount(
                email=f"{spec.service_account}@{project_id}.iam.gserviceaccount.com",
                scopes=[CLOUD_PLATFORM_SCOPE],
            )
        ]
    return instance


def create_instance(project_id: str, spec: InstanceSpec, timeout: int) -> None:
    op = get_instances_client().insert(
        project=project_id, zone=spec.zone, instance_resource=build_instance(project_id, spec)
    )
    op.result(timeout=timeout)
    if spec.instance_group:
        add_to_group(project_id, spec.zone, spec.instance_group, spec.name, timeout)


def update_instance(
    project_id: str, desired: InstanceSpec, actual: InstanceSpec, timeout: int
) -> None:
    client = get_instances_client()
    current = client.get(project=project_id, zone=desired.zone, instance=desired.name)

    if desired.labels != actual.labels:
        request = compute_v1.InstancesSetLabelsRequest(
            labels=desired.labels, label_fingerprint=current.label_fingerprint
        )
        client.set_labels(
            project=project_id,
            zone=desired.zone,
            instance=desired.name,
            instances_set_labels_request_resource=request,
        ).result(timeout=timeout)

    if desired.tags != actual.tags:
        tags = compute_v1.Tags(items=desired.tags, fingerprint=current.tags.fingerprint)
        client.set_tags(
            project=project_id, zone=desired.zone, instance=desired.name, tags_resource=tags
        ).result(timeout=timeout)

    if desired.instance_group != actual.instance_group:
        if actual.instance_group:
            remove_from_group(project_id, desired.zone, actual.instance_group, desired.name, timeout)
        if desired.instance_group:
            add_to_group(project_id, desired.zone, desired.instance_group, desired.name, timeout)


def delete_instance(project_id: str, spec: InstanceSpec, timeout: int) -> None:
    with contextlib.suppress(exceptions.NotFound):
        get_instances_client().delete(
            project=project_id, zone=spec.zone, instance=spec.name
        ).result(timeout=timeout)


def start_instance(project_id: str, zone: str, name: str, timeout: int) -> None:
    get_instances_client().start(project=project_id, zone=zone, instance=name).result(
        timeout=timeout
    )


def stop_instance(project_id: str, zone: str, name: str, timeout: int) -> None:
    get_instances_client().stop(project=project_id, zone=zone, instance=name).result(
        timeout=timeout
    )


# --- Load balancers ---


def create_load_balancer(project_id: str, spec: LoadBalancerSpec, timeout: int) -> None:
    """
    Health check, backend service, then forwarding rule. Parts left behind
    by an interrupted earlier attempt are reused.
    """
    description = encode_description(spec.labels)
    region = spec.region

    hc = compute_v1.HealthCheck(
        name=spec.health_check_name,
        type_="TCP",
        tcp_health_check=compute_v1.TCPHealthCheck(port=spec.health_check_port),
        check_interval_sec=5,
        timeout_sec=5,
        description=description,
    )
    try:
        get_health_checks_client().insert(
            project=project_id, region=region, health_check_resource=hc
        ).result(timeout=timeout)
    except exceptions.Conflict:
        logger.debug(f"Health check {hc.name} already present")

    backend = compute_v1.BackendService(
        name=spec.backend_service_name,
        load_balancing_scheme=spec.scheme,
        protocol="TCP",
        health_checks=[f"projects/{project_id}/regions/{region}/healthChecks/{hc.name}"],
        backends=[
            compute_v1.Backend(
                group=instance_group_url(project_id, spec.zone, group),
                balancing_mode="CONNECTION",
            )
            for group in spec.backends
        ],
        description=description,
    )
    try:
        get_backend_services_client().insert(
            project=project_id, region=region, backend_service_resource=backend
        ).result(timeout=timeout)
    except exceptions.Conflict:
        logger.debug(f"Backend service {backend.name} already present")

    rule = compute_v1.ForwardingRule(
        name=spec.forwarding_rule_name,
        I_p_address=get_address_ip(project_id, region, spec.address),
        I_p_protocol="TCP",
        ports=[str(p) for p in spec.ports],
        load_balancing_scheme=spec.scheme,
        backend_service=f"projects/{project_id}/regions/{region}/backendServices/{backend.name}",
        network=network_url(project_id, spec.network),
        subnetwork=subnet_url(project_id, region, spec.subnetwork),
        description=description,
    )
    get_forwarding_rules_client().insert(
        project=project_id, region=region, forwarding_rule_resource=rule
    ).result(timeout=timeout)


def update_load_balancer(
    project_id: str, desired: LoadBalancerSpec, actual: LoadBalancerSpec, timeout: int
) -> None:
    client = get_backend_services_client()
    backend = client.get(
        project=project_id, region=desired.region, backend_service=desired.backend_service_name
    )
    del backend.backends[:]
    backend.backends.extend(
        compute_v1.Backend(
            group=instance_group_url(project_id, desired.zone, group),
            balancing_mode="CONNECTION",
        )
        for group in desired.backends
    )
    client.update(
        project=project_id,
        region=desired.region,
        backend_service=desired.backend_service_name,
        backend_service_resource=backend,
    ).result(timeout=timeout)


def delete_load_balancer(project_id: str, spec: LoadBalancerSpec, timeout: int) -> None:
    region = spec.region
    with contextlib.suppress(exceptions.NotFound):
        get_forwarding_rules_client().delete(
            project=project_id, region=region, forwarding_rule=spec.forwarding_rule_name
        ).result(timeout=timeout)
    with contextlib.suppress(exceptions.NotFound):
        get_backend_services_client().delete(
            project=project_id, region=region, backend_service=spec.backend_service_name
        ).result(timeout=timeout)
    with contextlib.suppress(exceptions.NotFound):
        get_health_checks_client().delete(
            project=project_id, region=region, health_check=spec.health_check_name
        ).result(timeout=timeout)


# --- Schedule policies ---


def _schedule(spec: SchedulePolicySpec) -> compute_v1.ResourcePolicyInstanceSchedulePolicy:
    return compute_v1.ResourcePolicyInstanceSchedulePolicy(
        vm_start_schedule=compute_v1.ResourcePolicyInstanceSchedulePolicySchedule(
            schedule=spec.start_cron
        ),
        vm_stop_schedule=compute_v1.ResourcePolicyInstanceSchedulePolicySchedule(
            schedule=spec.stop_cron
        ),
        time_zone=spec.timezone,
    )


def _policy_url(project_id: str, spec: SchedulePolicySpec) -> str:
    return f"projects/{project_id}/regions/{spec.region}/resourcePolicies/{spec.name}"


def _attach(project_id: str, spec: SchedulePolicySpec, instance: str, timeout: int) -> None:
    request = compute_v1.InstancesAddResourcePoliciesRequest(
        resource_policies=[_policy_url(project_id, spec)]
    )
    get_instances_client().add_resource_policies(
        project=project_id,
        zone=spec.zone,
        instance=instance,
        instances_add_resource_policies_request_resource=request,
    ).result(timeout=timeout)


def _detach(project_id: str, spec: SchedulePolicySpec, zone: str, instance: str, timeout: int) -> None:
    request = compute_v1.InstancesRemoveResourcePoliciesRequest(
        resource_policies=[_policy_url(project_id, spec)]
    )
    with contextlib.suppress(exceptions.NotFound):
        get_instances_client().remove_resource_policies(
            project=project_id,
            zone=zone,
            instance=instance,
            instances_remove_resource_policies_request_resource=request,
        ).result(timeout=timeout)


def create_schedule_policy(project_id: str, spec: SchedulePolicySpec, timeout: int) -> None:
    policy = compute_v1.ResourcePolicy(
        name=spec.name,
        region=spec.region,
        description=encode_description(spec.labels),
        instance_schedule_policy=_schedule(spec),
    )
    get_resource_policies_client().insert(
        project=project_id, region=spec.region, resource_policy_resource=policy
    ).result(timeout=timeout)
    for instance in spec.instances:
        _attach(project_id, spec, instance, timeout)


def update_schedule_policy(
    project_id: str, desired: SchedulePolicySpec, actual: SchedulePolicySpec, timeout: int
) -> None:
    if (desired.start_cron, desired.stop_cron, desired.timezone) != (
        actual.start_cron,
        actual.stop_cron,
        actual.timezone,
    ):
        patch = compute_v1.ResourcePolicy(instance_schedule_policy=_schedule(desired))
        get_resource_policies_client().patch(
            project=project_id,
            region=desired.region,
            resource_policy=desired.name,
            resource_policy_resource=patch,
        ).result(timeout=timeout)

    for instance in sorted(set(desired.instances) - set(actual.instances)):
        _attach(project_id, desired, instance, timeout)
    for instance in sorted(set(actual.instances) - set(desired.instances)):
        _detach(project_id, desired, actual.zone or desired.zone, instance, timeout)


def delete_schedule_policy(project_id: str, spec: SchedulePolicySpec, timeout: int) -> None:
    # Policies cannot be deleted while attached
    for instance in spec.instances:
        _detach(project_id, spec, spec.zone, instance, timeout)
    with contextlib.suppress(exceptions.NotFound):
        get_resource_policies_client().delete(
            project=project_id, region=spec.region, resource_policy=spec.name
        ).result(timeout=timeout)
