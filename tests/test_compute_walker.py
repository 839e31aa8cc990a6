from talos_gcp.walkers.compute import (
    IMAGE_METADATA_KEY,
    list_addresses,
    list_instances,
    list_load_balancers,
    list_schedule_policies,
)


def _instance(mocker, name, labels, subnet="dev-subnet"):
    inst = mocker.Mock()
    inst.name = name
    inst.labels = labels
    inst.status = "RUNNING"
    inst.machine_type = "zones/us-central1-b/machineTypes/e2-standard-2"
    inst.creation_timestamp = "2026-01-01T12:00:00.000-07:00"
    nic = mocker.Mock(network_i_p="10.100.0.5", alias_ip_ranges=[])
    nic.subnetwork = f"projects/p/regions/us-central1/subnetworks/{subnet}"
    inst.network_interfaces = [nic]
    inst.service_accounts = [mocker.Mock(email="dev-sa@p.iam.gserviceaccount.com")]
    inst.disks = [mocker.Mock(disk_size_gb=200)]
    inst.metadata.items = [mocker.Mock(key=IMAGE_METADATA_KEY, value="talos-v1-12-3-gcp-amd64")]
    inst.tags.items = ["talos-worker", "dev-worker"]
    inst.resource_policies = []
    return inst


def test_list_instances_deep_mock(mocker):
    mock_get = mocker.patch("talos_gcp.walkers.compute.get_instances_client")
    mock_client = mock_get.return_value

    worker = _instance(mocker, "dev-worker-3", {"cluster": "dev", "pool": "worker", "role": "worker"})
    bastion = _instance(mocker, "dev-bastion", {"cluster": "dev", "pool": "bastion", "role": "bastion"})
    mock_client.aggregated_list.return_value = [
        ("zones/us-central1-b", mocker.Mock(instances=[worker, bastion])),
        ("zones/us-central1-c", mocker.Mock(instances=[])),
    ]

    specs = list_instances("test-project", {"dev-worker-3": "dev-ig-worker"})

    inst = specs[0]
    assert inst.index == 3
    assert inst.zone == "us-central1-b"
    assert inst.machine_type == "e2-standard-2"
    assert inst.image == "talos-v1-12-3-gcp-amd64"
    assert inst.service_account == "dev-sa"
    assert inst.instance_group == "dev-ig-worker"
    assert inst.tags == ["dev-worker", "talos-worker"]
    assert inst.internal_ip == "10.100.0.5"
    assert inst.created_at.year == 2026
    assert inst.depends_on == ("dev-subnet", "dev-ig-worker", "dev-sa")
    assert specs[1].index is None
    assert specs[1].role == "bastion"


def test_list_addresses_mock(mocker):
    mock_get = mocker.patch("talos_gcp.walkers.compute.get_addresses_client")
    addr = mocker.Mock(
        labels={"cluster": "dev"},
        address_type="INTERNAL",
        subnetwork="projects/p/regions/us-central1/subnetworks/dev-subnet",
        address="10.100.0.2",
        status="RESERVED",
    )
    addr.name = "dev-cp-ilb-ip"
    mock_get.return_value.aggregated_list.return_value = [
        ("regions/us-central1", mocker.Mock(addresses=[addr]))
    ]

    (spec,) = list_addresses("test-project")

    assert spec.address == "10.100.0.2"
    assert spec.subnetwork == "dev-subnet"
    assert spec.depends_on == ("dev-subnet",)


def test_list_load_balancers_reassembles_parts(mocker):
    rules = mocker.patch("talos_gcp.walkers.compute.get_forwarding_rules_client").return_value
    backends = mocker.patch("talos_gcp.walkers.compute.get_backend_services_client").return_value
    checks = mocker.patch("talos_gcp.walkers.compute.get_health_checks_client").return_value

    rule = mocker.Mock(
        description="managed-by=talos-gcp cluster=dev",
        backend_service="projects/p/regions/us-central1/backendServices/dev-cp-be",
        I_p_address="10.100.0.2",
        load_balancing_scheme="INTERNAL",
        ports=["6443", "50000"],
        network="global/networks/dev-vpc",
        subnetwork="regions/us-central1/subnetworks/dev-subnet",
    )
    rule.name = "dev-cp-rule"
    stray = mocker.Mock(description="")
    stray.name = "someone-else"
    rules.aggregated_list.return_value = [
        ("regions/us-central1", mocker.Mock(forwarding_rules=[rule, stray]))
    ]
    group = mocker.Mock(group="projects/p/zones/us-central1-b/instanceGroups/dev-ig-cp")
    backends.get.return_value = mocker.Mock(
        health_checks=["projects/p/regions/us-central1/healthChecks/dev-cp-hc"], backends=[group]
    )
    checks.get.return_value.tcp_health_check.port = 50000
    address = mocker.Mock(region="us-central1", address="10.100.0.2")
    address.name = "dev-cp-ilb-ip"

    (lb,) = list_load_balancers("test-project", [address])

    assert lb.name == "dev-cp"
    assert lb.address == "dev-cp-ilb-ip"
    assert lb.backends == ["dev-ig-cp"]
    assert lb.zone == "us-central1-b"
    assert lb.ports == [6443, 50000]
    assert lb.health_check_port == 50000


def test_list_schedule_policies_collects_attachments(mocker):
    instances = mocker.patch("talos_gcp.walkers.compute.get_instances_client").return_value
    policies = mocker.patch("talos_gcp.walkers.compute.get_resource_policies_client").return_value

    node = _instance(mocker, "dev-cp-0", {"cluster": "dev"})
    node.resource_policies = ["projects/p/regions/us-central1/resourcePolicies/dev-schedule"]
    instances.aggregated_list.return_value = [("zones/us-central1-b", mocker.Mock(instances=[node]))]

    policy = mocker.Mock(description="managed-by=talos-gcp cluster=dev")
    policy.name = "dev-schedule"
    policy.instance_schedule_policy.vm_start_schedule.schedule = "0 8 * * 1-5"
    policy.instance_schedule_policy.vm_stop_schedule.schedule = "0 18 * * 1-5"
    policy.instance_schedule_policy.time_zone = "America/Chicago"
    policies.aggregated_list.return_value = [
        ("regions/us-central1", mocker.Mock(resource_policies=[policy]))
    ]

    (spec,) = list_schedule_policies("test-project")

    assert spec.instances == ["dev-cp-0"]
    assert spec.zone == "us-central1-b"
    assert spec.start_cron == "0 8 * * 1-5"
    assert spec.cluster == "dev"
