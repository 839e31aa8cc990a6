import pytest
from google.api_core import exceptions
from google.cloud import compute_v1

from talos_gcp.actuators.network import (
    create_firewall,
    create_nat,
    delete_nat,
    parse_allowed,
    update_firewall,
)
from talos_gcp.compiler import compile_desired_state
from talos_gcp.schemas.network import FirewallRuleSpec, NatSpec
from talos_gcp.walkers.network import list_firewalls


def test_parse_allowed():
    tcp, icmp = parse_allowed(["tcp:22,6443", "icmp"])

    assert tcp.I_p_protocol == "tcp"
    assert list(tcp.ports) == ["22", "6443"]
    assert icmp.I_p_protocol == "icmp"
    assert list(icmp.ports) == []


def test_created_firewalls_read_back_without_drift(mocker, make_config):
    config = make_config(
        WORKER_OPEN_TCP_PORTS="443,80",
        WORKER_OPEN_UDP_PORTS="51820",
        STORAGE_CIDR="10.250.0.0/24",
        POOL_WORKER_USE_STORAGE_NET="true",
    )
    client = mocker.patch("talos_gcp.actuators.network.get_firewalls_client").return_value
    desired = [s for s in compile_desired_state(config) if isinstance(s, FirewallRuleSpec)]

    for spec in desired:
        create_firewall("test-project", spec, 60)

    created = [c.kwargs["firewall_resource"] for c in client.insert.call_args_list]
    mocker.patch(
        "talos_gcp.walkers.network.get_firewalls_client"
    ).return_value.list.return_value = created
    observed = {s.name: s for s in list_firewalls("test-project")}

    assert "a-worker-custom" in observed
    for spec in desired:
        assert spec.drift(observed[spec.name]) == ([], []), spec.name


def test_firewall_update_clears_emptied_lists(mocker):
    client = mocker.patch("talos_gcp.actuators.network.get_firewalls_client").return_value
    actual = FirewallRuleSpec(
        name="a-internal", network="a-vpc", allowed=["tcp"], source_tags=["bastion"]
    )
    desired = actual.model_copy(update={"source_tags": [], "source_ranges": ["10.0.0.0/8"]})

    update_firewall("test-project", desired, actual, 60)

    body = client.update.call_args.kwargs["firewall_resource"]
    assert list(body.source_tags) == []
    assert list(body.source_ranges) == ["10.0.0.0/8"]
    client.patch.assert_not_called()


@pytest.fixture
def router(mocker):
    router = compute_v1.Router(
        name="a-router", nats=[compute_v1.RouterNat(name="someone-elses-nat")]
    )
    client = mocker.patch("talos_gcp.actuators.network.get_routers_client").return_value
    client.get.return_value = router
    return router, client


NAT = NatSpec(name="a-nat", router="a-router", region="us-central1")


def test_nat_is_added_to_its_router(router):
    router, client = router

    create_nat("test-project", NAT, 60)

    assert [n.name for n in router.nats] == ["someone-elses-nat", "a-nat"]
    assert client.update.call_args.kwargs["router_resource"] is router


def test_existing_nat_conflicts(router):
    router, client = router
    router.nats.append(compute_v1.RouterNat(name="a-nat"))

    with pytest.raises(exceptions.Conflict):
        create_nat("test-project", NAT, 60)

    client.update.assert_not_called()


def test_nat_delete_keeps_other_nats(router):
    router, client = router
    router.nats.append(compute_v1.RouterNat(name="a-nat"))

    delete_nat("test-project", NAT, 60)

    assert [n.name for n in router.nats] == ["someone-elses-nat"]
    client.update.assert_called_once()


def test_nat_delete_is_a_noop_when_absent(router):
    router, client = router

    delete_nat("test-project", NAT, 60)

    client.update.assert_not_called()


def test_nat_delete_tolerates_missing_router(router):
    router, client = router
    client.get.side_effect = exceptions.NotFound("router gone")

    delete_nat("test-project", NAT, 60)

    client.update.assert_not_called()
