"""
GCPProvider: the Provider protocol backed by the Google Cloud APIs.

Reads go through the walkers, mutations through the actuators. Every call
is wrapped in translate_errors so callers only ever see the error taxonomy
in talos_gcp.errors.
"""

import concurrent.futures
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from typing import Any

from google.api_core import exceptions

from . import walker
from .actuators import compute, iam, network, storage
from .core import TRANSIENT_API_ERRORS
from .errors import ConflictError, ProviderError, TransientProviderError
from .logger import logger
from .schemas.base import RemoteSnapshot, ResourceKind, ResourceSpec

# Error reasons GCP reports while a dependency is still settling
TRANSIENT_REASONS = ("resourceNotReady", "resourceInUseByAnotherResource", "is not ready")


@contextmanager
def translate_errors(operation: str, kind: str | None = None, name: str | None = None) -> Iterator[None]:
    """Maps google.api_core exceptions onto the provisioner's error taxonomy."""
    try:
        yield
    except TRANSIENT_API_ERRORS as e:
        # Aborted is a Conflict subclass; it must be matched first
        raise TransientProviderError(f"{operation}: {e.message}", kind=kind, name=name) from e
    except exceptions.Conflict as e:
        raise ConflictError(f"{operation}: {e.message}", kind=kind, name=name) from e
    except exceptions.GoogleAPICallError as e:
        if any(reason in str(e) for reason in TRANSIENT_REASONS):
            raise TransientProviderError(f"{operation}: {e.message}", kind=kind, name=name) from e
        raise ProviderError(f"{operation}: {e.message}", kind=kind, name=name) from e
    except concurrent.futures.TimeoutError as e:
        raise TransientProviderError(
            f"{operation}: operation did not finish in time", kind=kind, name=name
        ) from e


Handler = Callable[..., None]

CREATE: dict[ResourceKind, Handler] = {
    ResourceKind.NETWORK: network.create_network,
    ResourceKind.SUBNET: network.create_subnet,
    ResourceKind.ROUTER: network.create_router,
    ResourceKind.NAT: network.create_nat,
    ResourceKind.FIREWALL_RULE: network.create_firewall,
    ResourceKind.SERVICE_ACCOUNT: iam.create_service_account,
    ResourceKind.BUCKET: storage.create_bucket,
    ResourceKind.STATIC_ADDRESS: compute.create_address,
    ResourceKind.INSTANCE_GROUP: compute.create_instance_group,
    ResourceKind.INSTANCE: compute.create_instance,
    ResourceKind.LOAD_BALANCER: compute.create_load_balancer,
    ResourceKind.SCHEDULE_POLICY: compute.create_schedule_policy,
}

UPDATE: dict[ResourceKind, Handler] = {
    ResourceKind.SUBNET: network.update_subnet,
    ResourceKind.FIREWALL_RULE: network.update_firewall,
    ResourceKind.SERVICE_ACCOUNT: iam.update_service_account,
    ResourceKind.BUCKET: storage.update_bucket,
    ResourceKind.INSTANCE_GROUP: compute.update_instance_group,
    ResourceKind.INSTANCE: compute.update_instance,
    ResourceKind.LOAD_BALANCER: compute.update_load_balancer,
    ResourceKind.SCHEDULE_POLICY: compute.update_schedule_policy,
}

DELETE: dict[ResourceKind, Handler] = {
    ResourceKind.NETWORK: network.delete_network,
    ResourceKind.SUBNET: network.delete_subnet,
    ResourceKind.ROUTER: network.delete_router,
    ResourceKind.NAT: network.delete_nat,
    ResourceKind.FIREWALL_RULE: network.delete_firewall,
    ResourceKind.SERVICE_ACCOUNT: iam.delete_service_account,
    ResourceKind.BUCKET: storage.delete_bucket,
    ResourceKind.STATIC_ADDRESS: compute.delete_address,
    ResourceKind.INSTANCE_GROUP: compute.delete_instance_group,
    ResourceKind.INSTANCE: compute.delete_instance,
    ResourceKind.LOAD_BALANCER: compute.delete_load_balancer,
    ResourceKind.SCHEDULE_POLICY: compute.delete_schedule_policy,
}


class GCPProvider:
    def __init__(self, project_id: str, operation_timeout: int = 600):
        self.project_id = project_id
        self.operation_timeout = operation_timeout

    def read(
        self, cluster: str | None, kinds: Iterable[ResourceKind] | None = None
    ) -> RemoteSnapshot:
        try:
            return walker.read_snapshot(self.project_id, cluster, kinds)
        except exceptions.GoogleAPICallError as e:
            # Any read failure leaves state untouched; callers may simply retry
            raise TransientProviderError(
                f"reading project {self.project_id} failed: {e.message}"
            ) from e

    def describe(self, kind: ResourceKind, name: str) -> ResourceSpec | None:
        with translate_errors("describe", kind.value, name):
            return next((r for r in walker.read_kind(self.project_id, kind) if r.name == name), None)

    def _call(self, operation: str, handler: Handler, spec: ResourceSpec, *args: Any) -> None:
        logger.info(f"{operation} {spec.kind.value}/{spec.name}")
        with translate_errors(operation, spec.kind.value, spec.name):
            handler(self.project_id, spec, *args, self.operation_timeout)

    def create(self, spec: ResourceSpec) -> None:
        self._call("create", CREATE[spec.kind], spec)

    def update(self, desired: ResourceSpec, actual: ResourceSpec) -> None:
        handler = UPDATE.get(desired.kind)
        if handler is None:
            raise ProviderError(
                "no in-place update exists for this kind",
                kind=desired.kind.value,
                name=desired.name,
            )
        self._call("update", handler, desired, actual)

    def delete(self, spec: ResourceSpec) -> None:
        self._call("delete", DELETE[spec.kind], spec)
