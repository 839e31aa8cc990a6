import pytest

from talos_gcp.compiler import (
    Names,
    compile_desired_state,
    image_name,
    render_desired_state,
    required_images,
)
from talos_gcp.errors import ConfigurationError
from talos_gcp.schemas.base import KIND_ORDER, ResourceKind
from talos_gcp.schemas.compute import InstanceSpec, LoadBalancerSpec, SchedulePolicySpec


def names_of(specs, kind):
    return [s.name for s in specs if s.kind == kind]


def test_compile_is_deterministic(config):
    first = render_desired_state(compile_desired_state(config))
    second = render_desired_state(compile_desired_state(config))
    assert first == second


def test_specs_follow_kind_order_and_carry_the_cluster_label(config):
    specs = compile_desired_state(config)

    positions = [KIND_ORDER.index(s.kind) for s in specs]
    assert positions == sorted(positions)
    assert all(s.labels["cluster"] == "a" for s in specs)


def test_instance_names_per_pool(config):
    specs = compile_desired_state(config)

    assert names_of(specs, ResourceKind.INSTANCE) == [
        "a-cp-0",
        "a-cp-1",
        "a-cp-2",
        "a-worker-0",
        "a-worker-1",
        "a-bastion",
    ]
    assert names_of(specs, ResourceKind.INSTANCE_GROUP) == ["a-ig-cp", "a-ig-worker"]


def test_control_plane_instances(config):
    specs = compile_desired_state(config)
    cp = next(s for s in specs if s.name == "a-cp-1")

    assert isinstance(cp, InstanceSpec)
    assert cp.role == "control-plane"
    assert cp.pool == "cp"
    assert cp.index == 1
    assert cp.instance_group == "a-ig-cp"
    assert cp.image == "talos-v1-12-3-gcp-amd64"
    assert cp.user_data_file.endswith("controlplane.yaml")
    assert "a-sa" in cp.depends_on


def test_worker_user_data_is_per_pool(make_config):
    specs = compile_desired_state(make_config(NODE_POOLS="worker,gpu", POOL_GPU_COUNT=1))
    gpu = next(s for s in specs if s.name == "a-gpu-0")
    assert gpu.user_data_file.endswith("worker-gpu.yaml")
    assert "a-gpu" in gpu.tags


def test_control_plane_load_balancer(config):
    specs = compile_desired_state(config)
    (lb,) = [s for s in specs if isinstance(s, LoadBalancerSpec)]

    assert lb.name == "a-cp"
    assert lb.address == "a-cp-ilb-ip"
    assert lb.backends == ["a-ig-cp"]
    assert lb.ports == [6443, 50000, 50001]


def test_ingress_addresses(make_config):
    specs = compile_desired_state(make_config(INGRESS_IP_COUNT=2))
    assert names_of(specs, ResourceKind.STATIC_ADDRESS) == [
        "a-cp-ilb-ip",
        "a-ingress-v4-0",
        "a-ingress-v4-1",
    ]


def test_empty_pool_keeps_its_group_but_no_instances(make_config):
    config = make_config(WORKER_COUNT=0)
    specs = compile_desired_state(config)

    assert "a-ig-worker" in names_of(specs, ResourceKind.INSTANCE_GROUP)
    assert not [s for s in specs if getattr(s, "pool", None) == "worker"]
    assert list(required_images(config)) == ["talos-v1-12-3-gcp-amd64"]


def test_schedule_policy_covers_every_instance(make_config):
    specs = compile_desired_state(
        make_config(CP_COUNT=1, WORK_HOURS_START="07:00", WORK_HOURS_STOP="19:00")
    )
    (policy,) = [s for s in specs if isinstance(s, SchedulePolicySpec)]

    assert policy.instances == ["a-bastion", "a-cp-0", "a-worker-0"]
    assert policy.start_cron == "0 7 * * 1-5"


def test_storage_network(make_config):
    specs = compile_desired_state(
        make_config(STORAGE_CIDR="10.250.0.0/24", POOL_WORKER_USE_STORAGE_NET="true")
    )
    worker = next(s for s in specs if s.name == "a-worker-0")

    assert "a-storage-vpc" in names_of(specs, ResourceKind.NETWORK)
    assert worker.storage_subnetwork == "a-storage-subnet"
    assert "a-storage-subnet" in worker.depends_on


def test_image_names():
    assert image_name("v1.12.3", "amd64", "worker", ()) == "talos-v1-12-3-gcp-amd64"
    with_ext = image_name("v1.12.3", "arm64", "worker", ("siderolabs/iscsi-tools",))
    assert with_ext.startswith("talos-v1-12-3-worker-")
    assert with_ext.endswith("-arm64")
    assert with_ext == image_name(
        "v1.12.3", "arm64", "worker", ("siderolabs/iscsi-tools",)
    )


def test_names():
    n = Names("dev")
    assert n.cp_ilb_ip == "dev-cp-ilb-ip"
    assert n.instance("gpu", 2) == "dev-gpu-2"
    assert n.instance_group("cp") == "dev-ig-cp"
    assert n.storage_subnet == "dev-storage-subnet"
    with pytest.raises(AttributeError):
        n.storge_subnet  # noqa: B018


@pytest.mark.parametrize(
    "settings, message",
    [
        ({"CP_COUNT": 0}, "CP_COUNT"),
        ({"WORKER_COUNT": -1}, ">= 0"),
        ({"CLUSTER_NAME": "Bad_Name"}, "CLUSTER_NAME"),
        ({"CLUSTER_NAME": "a-very-long-cluster-name"}, "limit"),
        ({"POD_CIDR": "35.235.0.0/16"}, "reserved"),
        ({"SUBNET_RANGE": "10.200.0.0/24"}, "overlaps POD_CIDR"),
        ({"TALOS_VERSION": "1.12"}, "vMAJOR.MINOR.PATCH"),
        ({"WORKER_EXTENSIONS": "iscsi-tools"}, "extension"),
        ({"NODE_POOLS": "cp"}, "reserved"),
        ({"POOL_WORKER_USE_STORAGE_NET": "true"}, "STORAGE_CIDR"),
        ({"WORKER_OPEN_TCP_PORTS": "http"}, "port"),
    ],
)
def test_validation_errors(make_config, settings, message):
    with pytest.raises(ConfigurationError, match=message):
        compile_desired_state(make_config(**settings))
