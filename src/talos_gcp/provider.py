from collections.abc import Iterable
from typing import Protocol

from .schemas.base import RemoteSnapshot, ResourceKind, ResourceSpec


class Provider(Protocol):
    """
    The cloud control plane as seen by the reconciler.

    read() is strictly label-scoped: with a cluster name it returns only
    resources labeled with exactly that name; with None it returns every
    resource carrying any cluster label. Mutating calls raise the errors in
    talos_gcp.errors (TransientProviderError, ConflictError, ProviderError).
    """

    def read(
        self, cluster: str | None, kinds: Iterable[ResourceKind] | None = None
    ) -> RemoteSnapshot: ...

    def describe(self, kind: ResourceKind, name: str) -> ResourceSpec | None:
        """Looks a resource up by name regardless of its labels."""
        ...

    def create(self, spec: ResourceSpec) -> None: ...

    def update(self, desired: ResourceSpec, actual: ResourceSpec) -> None: ...

    def delete(self, spec: ResourceSpec) -> None: ...
