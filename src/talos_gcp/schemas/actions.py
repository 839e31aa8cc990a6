from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .base import ResourceKind, ResourceSpec


class ActionType(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"
    DELETE = "Delete"


@dataclass(frozen=True)
class ReconcileAction:
    """
    One step towards convergence. ``spec`` is the desired resource for
    Create/Update/Replace and the observed resource for Delete.
    """

    action: ActionType
    spec: ResourceSpec
    reason: str
    actual: ResourceSpec | None = None
    fields: tuple[str, ...] = ()

    @property
    def kind(self) -> ResourceKind:
        return self.spec.kind

    @property
    def name(self) -> str:
        return self.spec.name

    def describe(self) -> str:
        return f"{self.action.value} {self.kind.value}/{self.name} ({self.reason})"


@dataclass
class ActionFailure:
    action: ReconcileAction
    error: Exception

    def describe(self) -> str:
        return f"{self.action.describe()}: {self.error}"


@dataclass
class ReconcileReport:
    """Outcome of one reconcile pass."""

    cluster: str
    planned: list[ReconcileAction] = field(default_factory=list)
    applied: list[ReconcileAction] = field(default_factory=list)
    failed: list[ActionFailure] = field(default_factory=list)
    blocked: list[ReconcileAction] = field(default_factory=list)
    declined: list[ReconcileAction] = field(default_factory=list)
    # Held back by a deferred pass until finish()
    deferred: list[ReconcileAction] = field(default_factory=list)
    observed: list[ResourceSpec] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return not (self.failed or self.blocked or self.declined)

    @property
    def out_of_sync(self) -> list[str]:
        """kind/name of every resource this pass could not converge."""
        pending = [f.action for f in self.failed] + self.blocked + self.declined
        return sorted({f"{a.kind.value}/{a.name}" for a in pending})

    def extend(self, other: ReconcileReport) -> None:
        self.planned.extend(other.planned)
        self.applied.extend(other.applied)
        self.failed.extend(other.failed)
        self.blocked.extend(other.blocked)
        self.declined.extend(other.declined)
        self.deferred.extend(other.deferred)
        self.observed.extend(other.observed)

    def summary(self) -> str:
        counts: dict[str, int] = {}
        for action in self.applied:
            counts[action.action.value] = counts.get(action.action.value, 0) + 1
        done = ", ".join(f"{n} {k.lower()}d" for k, n in sorted(counts.items())) or "no changes"
        if self.converged:
            return f"{done}; in sync"
        return f"{done}; {len(self.out_of_sync)} resource(s) out of sync"
