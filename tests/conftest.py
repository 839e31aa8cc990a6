import threading
from collections import defaultdict

import pytest
from tenacity import retry_if_exception_type, stop_after_attempt, wait_none

from talos_gcp.config import load_config
from talos_gcp.core import in_scope
from talos_gcp.errors import ConflictError, TransientProviderError
from talos_gcp.reconciler import Reconciler
from talos_gcp.schemas.base import KIND_ORDER, RemoteSnapshot, ResourceKind, ResourceSpec
from talos_gcp.schemas.compute import InstanceSpec, StaticAddressSpec
from talos_gcp.schemas.network import SubnetSpec

# Same policy as production, without the sleeping
FAST_RETRY = {
    "stop": stop_after_attempt(3),
    "wait": wait_none(),
    "retry": retry_if_exception_type(TransientProviderError),
    "reraise": True,
}


class InMemoryProvider:
    """
    Provider double: a dict of resources keyed by (kind, name).

    Every mutating call is appended to ``calls`` as (op, kind, name).
    ``fail(op, name, *errors)`` queues errors raised by the next calls.
    With ``guard_in_use`` it refuses, like GCE, to delete a subnet or drop
    a subnet range that instances still use.
    """

    def __init__(self):
        self.guard_in_use = False
        self.resources: dict[tuple[ResourceKind, str], ResourceSpec] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.reads = 0
        self._failures: dict[tuple[str, str], list[Exception]] = defaultdict(list)
        self._lock = threading.Lock()
        self._ips = 10

    def seed(self, *specs: ResourceSpec) -> None:
        for spec in specs:
            self.resources[spec.key] = self._observed(spec)

    def fail(self, op: str, name: str, *errors: Exception) -> None:
        self._failures[(op, name)].extend(errors)

    def names(self, kind: ResourceKind) -> list[str]:
        return sorted(name for (k, name) in self.resources if k == kind)

    def ops(self, op: str, kind: ResourceKind | None = None) -> list[str]:
        return [n for (o, k, n) in self.calls if o == op and (kind is None or k == kind.value)]

    def _observed(self, spec: ResourceSpec) -> ResourceSpec:
        if isinstance(spec, InstanceSpec) and spec.status is None:
            self._ips += 1
            return spec.model_copy(
                update={"status": "RUNNING", "internal_ip": f"10.100.0.{self._ips}"}
            )
        if isinstance(spec, StaticAddressSpec) and spec.address is None:
            self._ips += 1
            return spec.model_copy(update={"address": f"10.100.15.{self._ips}"})
        return spec

    def _in_use(self, subnet: str, pod_range: bool = False) -> list[str]:
        return [
            r.name
            for r in self.resources.values()
            if isinstance(r, InstanceSpec)
            and (
                (pod_range and r.pod_alias and r.subnetwork == subnet)
                or (not pod_range and subnet in (r.subnetwork, r.storage_subnetwork))
            )
        ]

    def _refuse(self, users: list[str]) -> None:
        if self.guard_in_use and users:
            raise TransientProviderError(
                f"resourceInUseByAnotherResource: used by {', '.join(users)}"
            )

    def _record(self, op: str, spec: ResourceSpec) -> None:
        with self._lock:
            self.calls.append((op, spec.kind.value, spec.name))
            queued = self._failures.get((op, spec.name))
            error = queued.pop(0) if queued else None
        if error is not None:
            raise error

    def read(self, cluster, kinds=None):
        self.reads += 1
        wanted = set(kinds) if kinds is not None else set(KIND_ORDER)
        with self._lock:
            found = [
                r
                for r in self.resources.values()
                if r.kind in wanted and in_scope(r.labels, cluster)
            ]
        found.sort(key=lambda r: (KIND_ORDER.index(r.kind), r.name))
        return RemoteSnapshot.build(cluster, found)

    def describe(self, kind, name):
        return self.resources.get((kind, name))

    def create(self, spec):
        self._record("create", spec)
        with self._lock:
            if spec.key in self.resources:
                raise ConflictError("already exists", kind=spec.kind.value, name=spec.name)
            self.resources[spec.key] = self._observed(spec)

    def update(self, desired, actual):
        self._record("update", desired)
        with self._lock:
            current = self.resources[desired.key]
            if isinstance(current, SubnetSpec) and set(current.secondary_ranges) - set(
                desired.secondary_ranges
            ):
                self._refuse(self._in_use(desired.name, pod_range=True))
            observed = {
                f: getattr(current, f)
                for f in ("status", "internal_ip", "address")
                if hasattr(current, f)
            }
            self.resources[desired.key] = desired.model_copy(update=observed)

    def delete(self, spec):
        self._record("delete", spec)
        with self._lock:
            if spec.kind == ResourceKind.SUBNET:
                self._refuse(self._in_use(spec.name))
            self.resources.pop(spec.key, None)


@pytest.fixture
def provider():
    return InMemoryProvider()


@pytest.fixture
def reconciler(provider):
    return Reconciler(provider, "a", max_workers=4, retry_config=FAST_RETRY)


@pytest.fixture
def make_config(tmp_path):
    def _make(**settings):
        environ = {
            "PROJECT_ID": "test-project",
            "CLUSTER_NAME": "a",
            "REGION": "us-central1",
            "OUTPUT_ROOT": str(tmp_path / "out"),
            "POLL_INTERVAL": "0",
        }
        environ.update({k: str(v) for k, v in settings.items()})
        return load_config(environ=environ)

    return _make


@pytest.fixture
def config(make_config):
    return make_config(CP_COUNT=3, WORKER_COUNT=2)
