from typing import ClassVar

from .base import ResourceKind, ResourceSpec


class BucketSpec(ResourceSpec):
    kind: ClassVar[ResourceKind] = ResourceKind.BUCKET
    IMMUTABLE_FIELDS = ("location",)
    MUTABLE_FIELDS = ("labels",)

    location: str
    storage_class: str = "STANDARD"
    uniform_access: bool = True
