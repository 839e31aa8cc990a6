from typing import ClassVar

from pydantic import Field

from .base import ResourceKind, ResourceSpec


class NetworkSpec(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.NETWORK
    IMMUTABLE_FIELDS = ("auto_create_subnetworks", "mtu")

    auto_create_subnetworks: bool = False
    mtu: int = 1460


class SubnetSpec(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.SUBNET
    IMMUTABLE_FIELDS = ("network", "region", "cidr_range")
    MUTABLE_FIELDS = ("secondary_ranges", "private_google_access")

    network: str
    region: str
    cidr_range: str
    secondary_ranges: dict[str, str] = Field(
        default_factory=dict, description="range name -> CIDR"
    )
    private_google_access: bool = True

    def widened(self, actual: ResourceSpec) -> "SubnetSpec | None":
        # Instances may still hold alias IPs from a range being removed
        dropped = {
            name: cidr
            for name, cidr in getattr(actual, "secondary_ranges", {}).items()
            if name not in self.secondary_ranges
        }
        if not dropped:
            return None
        return self.model_copy(update={"secondary_ranges": {**dropped, **self.secondary_ranges}})


class RouterSpec(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.ROUTER
    IMMUTABLE_FIELDS = ("network", "region")

    network: str
    region: str


class NatSpec(ResourceSpec):
    """Cloud NAT config. Lives inside its router and inherits its labels."""

    kind: ClassVar[ResourceKind] = ResourceKind.NAT
    IMMUTABLE_FIELDS = ("router", "region")

    router: str
    region: str


class FirewallRuleSpec(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.FIREWALL_RULE
    IMMUTABLE_FIELDS = ("network", "direction")
    MUTABLE_FIELDS = ("priority", "allowed", "source_ranges", "source_tags", "target_tags")

    network: str
    direction: str = "INGRESS"
    priority: int = 1000
    allowed: list[str] = Field(
        default_factory=list, description="protocol[:port,port] entries, e.g. tcp:22"
    )
    source_ranges: list[str] = Field(default_factory=list)
    source_tags: list[str] = Field(default_factory=list)
    target_tags: list[str] = Field(default_factory=list)
