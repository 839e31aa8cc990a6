from datetime import datetime
from typing import ClassVar

from pydantic import Field

from .base import ResourceKind, ResourceSpec


class StaticAddressSpec(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.STATIC_ADDRESS
    IMMUTABLE_FIELDS = ("region", "address_type", "subnetwork")

    region: str
    address_type: str = Field(default="EXTERNAL", description="INTERNAL or EXTERNAL")
    subnetwork: str | None = None

    # Observed only
    address: str | None = None
    status: str | None = None


class InstanceGroupSpec(ResourceSpec):
    """Unmanaged instance group; membership is owned by the instances."""

    kind: ClassVar[ResourceKind] = ResourceKind.INSTANCE_GROUP
    IMMUTABLE_FIELDS = ("zone", "network")
    MUTABLE_FIELDS = ("named_ports",)

    zone: str
    network: str
    named_ports: dict[str, int] = Field(default_factory=dict)


class InstanceSpec(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.INSTANCE
    IMMUTABLE_FIELDS = (
        "zone",
        "machine_type",
        "disk_size_gb",
        "image",
        "subnetwork",
        "storage_subnetwork",
        "service_account",
        "pod_alias",
    )
    MUTABLE_FIELDS = ("labels", "tags", "instance_group")

    zone: str
    role: str = Field(description="control-plane, worker or bastion")
    pool: str
    index: int | None = None
    machine_type: str
    disk_size_gb: int
    image: str = Field(description="Image name, or family/<family> in another project")
    subnetwork: str
    storage_subnetwork: str | None = None
    service_account: str | None = None
    pod_alias: bool = False
    tags: list[str] = Field(default_factory=list)
    instance_group: str | None = None

    # Applied at creation, not compared
    user_data_file: str | None = Field(default=None, exclude=True)
    startup_script: str | None = Field(default=None, exclude=True)

    # Observed only
    status: str | None = None
    internal_ip: str | None = None
    created_at: datetime | None = None


class LoadBalancerSpec(ResourceSpec):
    """
    Regional passthrough TCP load balancer, realized as three GCP objects:
    a health check ``<name>-hc``, a backend service ``<name>-be`` and a
    forwarding rule ``<name>-rule``.
    """

    kind: ClassVar[ResourceKind] = ResourceKind.LOAD_BALANCER
    IMMUTABLE_FIELDS = (
        "region",
        "scheme",
        "ports",
        "health_check_port",
        "address",
        "network",
        "subnetwork",
    )
    MUTABLE_FIELDS = ("backends",)

    region: str
    zone: str = Field(default="", description="Zone of the backend instance groups")
    scheme: str = "INTERNAL"
    ports: list[int] = Field(default_factory=list)
    health_check_port: int
    address: str = Field(description="Name of the reserved StaticAddress")
    network: str
    subnetwork: str
    backends: list[str] = Field(default_factory=list, description="Instance group names")

    @property
    def health_check_name(self) -> str:
        return f"{self.name}-hc"

    @property
    def backend_service_name(self) -> str:
        return f"{self.name}-be"

    @property
    def forwarding_rule_name(self) -> str:
        return f"{self.name}-rule"


class SchedulePolicySpec(ResourceSpec):
    """Instance start/stop schedule and the instances it is attached to."""

    kind: ClassVar[ResourceKind] = ResourceKind.SCHEDULE_POLICY
    IMMUTABLE_FIELDS = ("region",)
    MUTABLE_FIELDS = ("start_cron", "stop_cron", "timezone", "instances")

    region: str
    zone: str
    start_cron: str
    stop_cron: str
    timezone: str
    instances: list[str] = Field(default_factory=list)
