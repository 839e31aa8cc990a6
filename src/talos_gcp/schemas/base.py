from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field

from ..core import CLUSTER_LABEL


class ResourceKind(str, Enum):
    NETWORK = "Network"
    SUBNET = "Subnet"
    ROUTER = "Router"
    NAT = "NAT"
    FIREWALL_RULE = "FirewallRule"
    SERVICE_ACCOUNT = "ServiceAccount"
    BUCKET = "Bucket"
    STATIC_ADDRESS = "StaticAddress"
    INSTANCE_GROUP = "InstanceGroup"
    INSTANCE = "Instance"
    LOAD_BALANCER = "LoadBalancer"
    SCHEDULE_POLICY = "SchedulePolicy"


# Forward dependency order; deletes walk it backwards.
KIND_ORDER: tuple[ResourceKind, ...] = (
    ResourceKind.NETWORK,
    ResourceKind.SUBNET,
    ResourceKind.ROUTER,
    ResourceKind.NAT,
    ResourceKind.FIREWALL_RULE,
    ResourceKind.SERVICE_ACCOUNT,
    ResourceKind.BUCKET,
    ResourceKind.STATIC_ADDRESS,
    ResourceKind.INSTANCE_GROUP,
    ResourceKind.INSTANCE,
    ResourceKind.LOAD_BALANCER,
    ResourceKind.SCHEDULE_POLICY,
)


class ResourceSpec(BaseModel):
    """
    Common shape of every manageable cloud object.

    Subclasses declare which of their fields may be changed in place
    (MUTABLE_FIELDS) and which force a delete-then-create when they differ
    (IMMUTABLE_FIELDS). Fields in neither set are observed state only and
    never take part in drift detection.
    """

    model_config = ConfigDict(frozen=True)

    kind: ClassVar[ResourceKind]
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ()
    IMMUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ()

    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = Field(default=(), exclude=True)

    @property
    def cluster(self) -> str | None:
        return self.labels.get(CLUSTER_LABEL)

    @property
    def key(self) -> tuple[ResourceKind, str]:
        return (self.kind, self.name)

    def fingerprint(self) -> dict[str, Any]:
        """Fields that take part in drift detection."""
        return {
            f: getattr(self, f) for f in (*self.IMMUTABLE_FIELDS, *self.MUTABLE_FIELDS)
        }

    def drift(self, actual: ResourceSpec) -> tuple[list[str], list[str]]:
        """
        Compares this (desired) spec with an observed one of the same name.

        Returns (mutable_fields_that_differ, immutable_fields_that_differ).
        """
        mutable = [f for f in self.MUTABLE_FIELDS if getattr(self, f) != getattr(actual, f)]
        immutable = [
            f for f in self.IMMUTABLE_FIELDS if getattr(self, f) != getattr(actual, f)
        ]
        return mutable, immutable

    def widened(self, actual: ResourceSpec) -> ResourceSpec | None:
        """
        An intermediate spec that still keeps what ``actual`` has and this
        spec drops, for updates that would pull something out from under
        resources converged later in the pass. None when nothing is dropped.
        """
        return None

    def as_record(self) -> dict[str, Any]:
        return {"kind": self.kind.value, **self.model_dump(mode="json")}


class RemoteSnapshot(BaseModel):
    """What the provider reported for one label scope at one point in time."""

    model_config = ConfigDict(frozen=True)

    scope: str | None = Field(description="Cluster name, or None for every managed cluster")
    resources: tuple[ResourceSpec, ...] = ()

    def of_kind(self, kind: ResourceKind) -> list[ResourceSpec]:
        return [r for r in self.resources if r.kind == kind]

    def get(self, kind: ResourceKind, name: str) -> ResourceSpec | None:
        return next((r for r in self.resources if r.kind == kind and r.name == name), None)

    def clusters(self) -> set[str]:
        return {r.cluster for r in self.resources if r.cluster}

    def for_cluster(self, cluster: str) -> list[ResourceSpec]:
        return [r for r in self.resources if r.cluster == cluster]

    @classmethod
    def build(cls, scope: str | None, resources: Iterable[ResourceSpec]) -> RemoteSnapshot:
        return cls(scope=scope, resources=tuple(resources))
