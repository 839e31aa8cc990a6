import pytest

from talos_gcp.errors import ConfigurationError, PhaseTimeoutError, ProviderError
from talos_gcp.orchestrator import (
    Orchestrator,
    Phase,
    PhaseStateStore,
    lookup_endpoint_ip,
)
from talos_gcp.schemas.base import ResourceKind

INSTANCE = ResourceKind.INSTANCE


@pytest.fixture
def wait_for_bastion(mocker):
    return mocker.patch("talos_gcp.orchestrator.wait_for_bastion")


@pytest.fixture
def make_orchestrator(provider, reconciler, mocker, wait_for_bastion):
    images = mocker.Mock()
    images.ensure_images.return_value = []
    bootstrapper = mocker.Mock()
    addons = mocker.Mock()
    addons.ensure_installed.return_value = ["cilium"]

    def _make(config):
        orch = Orchestrator(
            config,
            provider,
            reconciler=reconciler,
            image_builder=images,
            bootstrapper=bootstrapper,
            addons=addons,
        )
        return orch

    return _make


def test_full_run_reaches_ready(provider, config, make_orchestrator, wait_for_bastion):
    orch = make_orchestrator(config)

    result = orch.run()

    assert result.ready
    assert result.describe() == "Ready"
    assert PhaseStateStore(config).load().completed == 5

    endpoint = lookup_endpoint_ip(provider, config)
    orch.bootstrapper.prepare_configs.assert_called_once_with(endpoint)
    cp0 = provider.resources[(INSTANCE, "a-cp-0")]
    orch.bootstrapper.bootstrap.assert_called_once_with(cp0.internal_ip)
    orch.bootstrapper.wait_registered.assert_called_once_with(
        ["a-cp-0", "a-cp-1", "a-cp-2", "a-worker-0", "a-worker-1"]
    )
    orch.bootstrapper.finalize_bastion.assert_called_once_with(endpoint)
    wait_for_bastion.assert_called_once_with(config)


def test_bastion_is_created_after_the_nodes(provider, config, make_orchestrator):
    make_orchestrator(config).run()

    created = provider.ops("create", INSTANCE)
    assert created[-1] == "a-bastion"
    assert set(created[:-1]) == {"a-cp-0", "a-cp-1", "a-cp-2", "a-worker-0", "a-worker-1"}


def test_interrupted_create_resumes_without_recreating(provider, config, make_orchestrator):
    provider.fail("create", "a-cp-2", ProviderError("quota exceeded"))
    first = make_orchestrator(config)

    result = first.run()

    assert not result.ready
    assert result.phase == Phase.INFRASTRUCTURE
    assert result.error.phase == "Infrastructure"
    assert "Instance/a-cp-2" in result.reason
    state = PhaseStateStore(config).load()
    assert state.completed == Phase.RESOURCES
    assert state.failed_phase == Phase.INFRASTRUCTURE
    assert {"a-cp-0", "a-cp-1"} <= set(provider.names(INSTANCE))

    second = make_orchestrator(config)
    result = second.run()

    assert result.ready
    # Phase 1 was not repeated and no existing node was created twice
    second.image_builder.ensure_images.assert_called_once()
    creates = provider.ops("create", INSTANCE)
    assert creates.count("a-cp-0") == 1
    assert creates.count("a-cp-1") == 1
    assert creates.count("a-cp-2") == 2
    assert PhaseStateStore(config).load().failed_phase is None


def test_completed_cluster_only_rechecks_the_last_phase(config, make_orchestrator):
    orch = make_orchestrator(config)
    orch.run()

    result = make_orchestrator(config).run()

    assert result.ready
    orch.image_builder.ensure_images.assert_called_once()
    assert orch.bootstrapper.bootstrap.call_count == 2


def test_apply_runs_every_phase(config, make_orchestrator):
    orch = make_orchestrator(config)
    orch.run()

    orch.run(resume=False)

    assert orch.image_builder.ensure_images.call_count == 2
    assert orch.bootstrapper.prepare_configs.call_count == 2


def test_single_phase_requires_its_predecessor(provider, config, make_orchestrator):
    result = make_orchestrator(config).run_phase(Phase.WAIT_READY)

    assert not result.ready
    assert isinstance(result.error, ConfigurationError)
    assert "phase 2 (Infrastructure)" in result.reason
    assert provider.calls == []


def test_single_phase_runs_after_predecessor(provider, config, make_orchestrator):
    orch = make_orchestrator(config)
    orch.run_phase(Phase.RESOURCES)

    result = orch.run_phase(Phase.INFRASTRUCTURE)

    assert result.ready
    assert PhaseStateStore(config).load().completed == Phase.INFRASTRUCTURE
    assert "a-bastion" not in provider.names(INSTANCE)


def test_wait_ready_times_out(provider, make_config, make_orchestrator):
    config = make_config(CP_COUNT=1, WORKER_COUNT=1, READY_TIMEOUT=0)
    orch = make_orchestrator(config)
    orch.run_phase(Phase.RESOURCES)
    orch.run_phase(Phase.INFRASTRUCTURE)
    stopped = provider.resources[(INSTANCE, "a-worker-0")]
    provider.resources[(INSTANCE, "a-worker-0")] = stopped.model_copy(update={"status": "STAGING"})

    result = orch.run_phase(Phase.WAIT_READY)

    assert isinstance(result.error, PhaseTimeoutError)
    assert "a-worker-0" in result.reason
    assert PhaseStateStore(config).load().failed_phase == Phase.WAIT_READY


def test_provider_errors_carry_the_phase(config, make_orchestrator):
    orch = make_orchestrator(config)
    orch.image_builder.ensure_images.side_effect = ProviderError("image import failed")

    result = orch.run()

    assert result.phase == Phase.RESOURCES
    assert result.describe() == "Failed in Resources: image import failed"


def test_endpoint_lookup_requires_an_address(provider, config):
    with pytest.raises(ProviderError, match="not been allocated"):
        lookup_endpoint_ip(provider, config)


def test_unreadable_marker_starts_over(config):
    store = PhaseStateStore(config)
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json")

    assert store.load().completed == 0
    assert store.load().next_phase == Phase.RESOURCES


def test_marker_round_trip(config):
    store = PhaseStateStore(config)
    store.mark_completed(Phase.INFRASTRUCTURE)
    store.mark_failed(Phase.WAIT_READY, "timeout")

    state = store.load()
    assert state.completed == 2
    assert state.failed_phase == 3
    assert state.last_error == "timeout"
    assert state.updated_at is not None

    store.clear()
    assert not store.path.exists()


def test_removing_the_storage_network_moves_the_nodes_first(provider, make_config, make_orchestrator):
    provider.guard_in_use = True
    storage = {"STORAGE_CIDR": "10.250.0.0/24", "POOL_WORKER_USE_STORAGE_NET": "true"}
    assert make_orchestrator(make_config(CP_COUNT=1, WORKER_COUNT=2, **storage)).run().ready
    provider.calls.clear()

    result = make_orchestrator(make_config(CP_COUNT=1, WORKER_COUNT=2)).run(resume=False)

    assert result.ready, result.reason
    assert provider.names(ResourceKind.SUBNET) == ["a-subnet"]
    assert provider.names(ResourceKind.NETWORK) == ["a-vpc"]
    assert provider.resources[(INSTANCE, "a-worker-1")].storage_subnetwork is None
    calls = [(op, name) for op, _, name in provider.calls]
    assert calls.index(("create", "a-worker-1")) < calls.index(("delete", "a-storage-subnet"))
    assert calls.index(("delete", "a-storage-subnet")) < calls.index(("delete", "a-storage-vpc"))


def test_tunnel_routing_drops_the_pod_range_after_the_nodes(provider, make_config, make_orchestrator):
    provider.guard_in_use = True
    assert make_orchestrator(make_config(CP_COUNT=1, WORKER_COUNT=1)).run().ready
    provider.calls.clear()

    result = make_orchestrator(
        make_config(CP_COUNT=1, WORKER_COUNT=1, CILIUM_ROUTING_MODE="tunnel")
    ).run(resume=False)

    assert result.ready, result.reason
    assert provider.resources[(ResourceKind.SUBNET, "a-subnet")].secondary_ranges == {}
    assert not provider.resources[(INSTANCE, "a-worker-0")].pod_alias
    calls = [(op, name) for op, _, name in provider.calls]
    assert calls.count(("update", "a-subnet")) == 1
    assert calls.index(("create", "a-worker-0")) < calls.index(("update", "a-subnet"))
