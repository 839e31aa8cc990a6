from talos_gcp.compiler import compile_desired_state
from talos_gcp.modes.status import collect_status, health
from talos_gcp.orchestrator import Phase, PhaseStateStore
from talos_gcp.schemas.base import ResourceKind
from talos_gcp.schemas.compute import InstanceSpec


def _node(name, status):
    return InstanceSpec(
        name=name,
        zone="us-central1-b",
        role="worker",
        pool="worker",
        machine_type="e2-standard-2",
        disk_size_gb=200,
        image="talos",
        subnetwork="a-subnet",
        status=status,
    )


def test_health():
    assert health([]) == "Offline"
    assert health([_node("a", "RUNNING"), _node("b", "RUNNING")]) == "Online"
    assert health([_node("a", "RUNNING"), _node("b", "TERMINATED")]) == "Degraded"
    assert health([_node("a", "TERMINATED")]) == "Offline"


def test_collect_status(provider, make_config):
    config = make_config(CP_COUNT=1, WORKER_COUNT=1, WORK_HOURS_START="08:00", WORK_HOURS_STOP="18:00")
    provider.seed(*compile_desired_state(config))
    store = PhaseStateStore(config)
    store.mark_completed(Phase.WAIT_READY)
    store.mark_failed(Phase.BASTION_SETUP, "bastion unreachable")

    status = collect_status(config, provider)

    # The bastion does not count towards node health
    assert status["health"] == "Online"
    assert status["phase"] == "WaitReady"
    assert status["failed_phase"] == "BastionSetup"
    assert status["schedule"] == "08:00-18:00 Mon-Fri (America/Chicago)"
    assert status["resources"][ResourceKind.INSTANCE.value] == ["a-bastion", "a-cp-0", "a-worker-0"]
    assert [i["name"] for i in status["instances"]] == ["a-bastion", "a-cp-0", "a-worker-0"]
    assert status["instances"][0]["age"] == "-"
