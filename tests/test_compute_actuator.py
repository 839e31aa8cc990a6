from pathlib import Path

import pytest
from google.cloud import compute_v1

from talos_gcp.actuators.compute import (
    create_instance,
    create_load_balancer,
    update_schedule_policy,
)
from talos_gcp.compiler import bastion_spec, compile_desired_state
from talos_gcp.errors import ConfigurationError
from talos_gcp.schemas.compute import (
    InstanceSpec,
    LoadBalancerSpec,
    SchedulePolicySpec,
    StaticAddressSpec,
)
from talos_gcp.walkers.compute import list_instances, list_load_balancers


def _write_user_data(spec):
    if spec.user_data_file:
        path = Path(spec.user_data_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("machine: {}\n")


def _as_stored(instance):
    """What a later get/list returns for an inserted instance."""
    stored = compute_v1.Instance(instance)
    disk = stored.disks[0]
    disk.disk_size_gb = disk.initialize_params.disk_size_gb
    stored.status = "RUNNING"
    return stored


@pytest.fixture
def storage_config(make_config):
    return make_config(
        CP_COUNT=1,
        WORKER_COUNT=2,
        STORAGE_CIDR="10.250.0.0/24",
        POOL_WORKER_USE_STORAGE_NET="true",
    )


def test_created_instances_read_back_without_drift(mocker, storage_config):
    instances = mocker.patch("talos_gcp.actuators.compute.get_instances_client").return_value
    groups = mocker.patch("talos_gcp.actuators.compute.get_instance_groups_client").return_value

    desired = [s for s in compile_desired_state(storage_config) if isinstance(s, InstanceSpec)]
    desired.append(bastion_spec(storage_config))
    for spec in desired:
        _write_user_data(spec)
        create_instance("test-project", spec, 60)

    inserted = [c.kwargs["instance_resource"] for c in instances.insert.call_args_list]
    assert groups.add_instances.call_count == len(desired) - 1

    walker = mocker.patch("talos_gcp.walkers.compute.get_instances_client").return_value
    walker.aggregated_list.return_value = [
        ("zones/us-central1-b", mocker.Mock(instances=[_as_stored(i) for i in inserted])),
    ]
    memberships = {s.name: s.instance_group for s in desired if s.instance_group}
    observed = {s.name: s for s in list_instances("test-project", memberships)}

    assert sorted(observed) == sorted(s.name for s in desired)
    for spec in desired:
        assert spec.drift(observed[spec.name]) == ([], []), spec.name

    worker = observed["a-worker-1"]
    assert worker.storage_subnetwork == "a-storage-subnet"
    assert worker.pod_alias
    assert worker.tags == ["a-worker", "talos-worker"]
    assert observed["a-bastion"].service_account == "a-sa"


def test_instance_metadata_carries_the_machine_config(mocker, config):
    instances = mocker.patch("talos_gcp.actuators.compute.get_instances_client").return_value
    mocker.patch("talos_gcp.actuators.compute.get_instance_groups_client")
    spec = next(s for s in compile_desired_state(config) if s.name == "a-cp-0")
    _write_user_data(spec)

    create_instance("test-project", spec, 60)

    instance = instances.insert.call_args.kwargs["instance_resource"]
    metadata = {item.key: item.value for item in instance.metadata.items}
    assert metadata["user-data"] == "machine: {}\n"
    assert instance.can_ip_forward
    assert instance.disks[0].initialize_params.source_image == (
        f"projects/test-project/global/images/{spec.image}"
    )


def test_instance_without_generated_config_is_refused(mocker, config):
    instances = mocker.patch("talos_gcp.actuators.compute.get_instances_client").return_value
    spec = next(s for s in compile_desired_state(config) if s.name == "a-worker-0")

    with pytest.raises(ConfigurationError, match="has not been generated"):
        create_instance("test-project", spec, 60)

    instances.insert.assert_not_called()


def test_created_load_balancer_reads_back_without_drift(mocker, config):
    hcs = mocker.patch("talos_gcp.actuators.compute.get_health_checks_client").return_value
    backends = mocker.patch("talos_gcp.actuators.compute.get_backend_services_client").return_value
    rules = mocker.patch("talos_gcp.actuators.compute.get_forwarding_rules_client").return_value
    addresses = mocker.patch("talos_gcp.actuators.compute.get_addresses_client").return_value
    addresses.get.return_value.address = "10.100.0.10"

    spec = next(s for s in compile_desired_state(config) if isinstance(s, LoadBalancerSpec))
    create_load_balancer("test-project", spec, 60)

    hc = hcs.insert.call_args.kwargs["health_check_resource"]
    backend = backends.insert.call_args.kwargs["backend_service_resource"]
    rule = rules.insert.call_args.kwargs["forwarding_rule_resource"]
    assert rule.I_p_address == "10.100.0.10"

    walk_rules = mocker.patch("talos_gcp.walkers.compute.get_forwarding_rules_client").return_value
    walk_rules.aggregated_list.return_value = [
        ("regions/us-central1", mocker.Mock(forwarding_rules=[rule])),
    ]
    mocker.patch(
        "talos_gcp.walkers.compute.get_backend_services_client"
    ).return_value.get.return_value = backend
    mocker.patch(
        "talos_gcp.walkers.compute.get_health_checks_client"
    ).return_value.get.return_value = hc
    reserved = StaticAddressSpec(
        name=spec.address,
        region="us-central1",
        address_type="INTERNAL",
        address="10.100.0.10",
    )

    (observed,) = list_load_balancers("test-project", [reserved])

    assert observed.name == spec.name
    assert observed.address == spec.address
    assert spec.drift(observed) == ([], [])


def _policy(instances, start="0 8 * * 1-5"):
    return SchedulePolicySpec(
        name="a-schedule",
        labels={"cluster": "a"},
        region="us-central1",
        zone="us-central1-b",
        start_cron=start,
        stop_cron="0 18 * * 1-5",
        timezone="America/Chicago",
        instances=instances,
    )


def test_schedule_policy_update_attaches_and_detaches(mocker):
    instances = mocker.patch("talos_gcp.actuators.compute.get_instances_client").return_value
    policies = mocker.patch("talos_gcp.actuators.compute.get_resource_policies_client").return_value

    update_schedule_policy(
        "test-project", _policy(["a-cp-0", "a-worker-0"]), _policy(["a-worker-0", "a-worker-1"]), 60
    )

    policies.patch.assert_not_called()
    (added,) = instances.add_resource_policies.call_args_list
    assert added.kwargs["instance"] == "a-cp-0"
    (removed,) = instances.remove_resource_policies.call_args_list
    assert removed.kwargs["instance"] == "a-worker-1"
    assert removed.kwargs["instances_remove_resource_policies_request_resource"].resource_policies == [
        "projects/test-project/regions/us-central1/resourcePolicies/a-schedule"
    ]


def test_schedule_policy_update_patches_changed_hours(mocker):
    instances = mocker.patch("talos_gcp.actuators.compute.get_instances_client").return_value
    policies = mocker.patch("talos_gcp.actuators.compute.get_resource_policies_client").return_value

    update_schedule_policy(
        "test-project", _policy(["a-cp-0"], start="0 7 * * 1-5"), _policy(["a-cp-0"]), 60
    )

    patch = policies.patch.call_args.kwargs["resource_policy_resource"]
    assert patch.instance_schedule_policy.vm_start_schedule.schedule == "0 7 * * 1-5"
    instances.add_resource_policies.assert_not_called()
    instances.remove_resource_policies.assert_not_called()
